import json
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional


MIN_NUMBER_DIGITS = 9


def json_log(event: str, **kwargs):
    """
    Emit an ASCII-only JSON log line so Windows consoles with legacy codepages don't crash
    when messages contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, **kwargs}
    line = json.dumps(payload, ensure_ascii=True, default=str)
    logging.getLogger("zapbot").info(line)


def normalize_sender(chat_id: Optional[str]) -> Optional[str]:
    """
    Convert WhatsApp chat IDs like '5511999998888@c.us' into the bare digit
    form used by the whitelist: '5511999998888'.

    - Keeps only the part before '@'
    - Drops '+', spaces, dashes, parentheses and any other non-digit
    - If input is None, empty, or has no digits, returns None
    """
    if not chat_id:
        return None
    s = str(chat_id).strip()
    if not s:
        return None
    local = s.split("@", 1)[0]
    digits = "".join(ch for ch in local if ch.isdigit())
    return digits or None


def normalize_numbers(values: Iterable[str]) -> List[str]:
    """
    Clean a whitelist: digits only, longer than 8 digits, no duplicates.
    First occurrence order is kept so the dashboard shows numbers as typed.
    """
    seen = set()
    out: List[str] = []
    for v in values or []:
        n = normalize_sender(v)
        if not n or len(n) < MIN_NUMBER_DIGITS or n in seen:
            continue
        seen.add(n)
        out.append(n)
    return out



def is_group_or_broadcast(chat_id: Optional[str]) -> bool:
    if not chat_id:
        return False
    s = str(chat_id)
    return s.endswith("@g.us") or s.endswith("@broadcast")
