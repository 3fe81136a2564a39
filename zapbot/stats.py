from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import PersistError, StatsLoadError
from .models import PRICE_PER_MILLION_TOKENS
from .storage import Storage
from .utils import json_log


HOURS = 24
# rough characters-per-token ratio for Gemini-style subword tokenizers
TOKENS_PER_CHAR = 0.25


def estimate_tokens(inbound_text: str, outbound_text: str) -> float:
    """Heuristic token count from character length. A cost proxy, not a tokenizer."""
    return (len(inbound_text or "") + len(outbound_text or "")) * TOKENS_PER_CHAR


@dataclass
class StatsSnapshot:
    messages_today: int
    active_users: int
    cost_estimate: float
    hourly_traffic: List[int]
    uptime_seconds: int

    def to_json(self) -> Dict[str, Any]:
        """Shape expected by the dashboard chart (`dashboard_update` event)."""
        return {
            "messagesToday": self.messages_today,
            "activeUsers": self.active_users,
            "costEstimate": self.cost_estimate,
            "hourlyTraffic": [
                {"hour": f"{h:02d}:00", "count": c} for h, c in enumerate(self.hourly_traffic)
            ],
            "uptime": self.uptime_seconds,
        }


@dataclass
class BotStats:
    messages_today: int = 0
    unique_senders: Set[str] = field(default_factory=set)
    hourly_traffic: List[int] = field(default_factory=lambda: [0] * HOURS)
    token_usage_estimate: float = 0.0
    start_time: datetime = field(default_factory=datetime.now)
    # local date the daily counters belong to
    day: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {
            "messagesToday": self.messages_today,
            "uniqueSenders": sorted(self.unique_senders),
            "hourlyTraffic": list(self.hourly_traffic),
            "tokenUsageEstimate": self.token_usage_estimate,
            "startTime": self.start_time.isoformat(),
            "day": self.day,
        }

    @staticmethod
    def from_json(d: Dict[str, Any], start_time: datetime) -> "BotStats":
        """
        Merge a persisted document over zeroed defaults. startTime is never
        restored: uptime always counts from this process's boot.
        Also accepts the older uniqueUsers/tokenUsageEst keys.
        """
        s = BotStats(start_time=start_time)
        s.messages_today = max(0, int(d.get("messagesToday", 0) or 0))
        senders = d.get("uniqueSenders", d.get("uniqueUsers", []))
        if not isinstance(senders, list):
            senders = []
        s.unique_senders = {str(x) for x in senders if x}
        s.hourly_traffic = _coerce_histogram(d.get("hourlyTraffic"))
        s.token_usage_estimate = max(0.0, float(d.get("tokenUsageEstimate", d.get("tokenUsageEst", 0)) or 0))
        s.day = str(d.get("day") or "")
        return s


def _coerce_histogram(raw: Any) -> List[int]:
    out = [0] * HOURS
    if not isinstance(raw, list):
        return out
    for i, v in enumerate(raw[:HOURS]):
        if isinstance(v, dict):
            v = v.get("count", 0)
        try:
            out[i] = max(0, int(v or 0))
        except (TypeError, ValueError):
            out[i] = 0
    return out


class StatsAccumulator:
    """
    Usage counters for the dashboard. Every mutation is flushed to disk right
    away; a failed flush is logged and the in-memory numbers stay authoritative.
    """

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = datetime.now,
                 price_per_million: float = PRICE_PER_MILLION_TOKENS):
        self.storage = storage
        self.clock = clock
        self.price_per_million = price_per_million
        now = self.clock()
        self.stats = BotStats(start_time=now, day=now.date().isoformat())

    def load(self) -> BotStats:
        now = self.clock()
        loaded: Optional[BotStats] = None
        try:
            data = self._read()
            if data is not None:
                loaded = BotStats.from_json(data, start_time=now)
        except StatsLoadError as e:
            json_log("stats_load_error", error=str(e))
        except (TypeError, ValueError) as e:
            json_log("stats_load_error", error=f"malformed stats document: {e}")
        if loaded is None:
            self.stats = BotStats(start_time=now, day=now.date().isoformat())
        else:
            self.stats = loaded
            if not self.stats.day:
                self.stats.day = now.date().isoformat()
            json_log("stats_loaded", messages_today=self.stats.messages_today,
                     unique_senders=len(self.stats.unique_senders))
        if self._roll_day(now):
            self.flush()
        return self.stats

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            data = self.storage.read_json(self.storage.stats_path)
        except (OSError, ValueError) as e:
            raise StatsLoadError(str(e)) from e
        if data is not None and not isinstance(data, dict):
            raise StatsLoadError("stats document is not a JSON object")
        return data

    def _roll_day(self, now: datetime) -> bool:
        """Reset the daily counters (count and histogram together) on a new local date."""
        today = now.date().isoformat()
        if self.stats.day == today:
            return False
        json_log("stats_day_rollover", previous=self.stats.day, today=today,
                 messages=self.stats.messages_today)
        self.stats.day = today
        self.stats.messages_today = 0
        self.stats.hourly_traffic = [0] * HOURS
        return True

    def record_inbound(self, sender_id: str, hour: Optional[int] = None) -> None:
        now = self.clock()
        if hour is None:
            hour = now.hour
        if not 0 <= hour < HOURS:
            raise ValueError(f"hour out of range: {hour}")
        self._roll_day(now)
        self.stats.messages_today += 1
        self.stats.unique_senders.add(sender_id)
        self.stats.hourly_traffic[hour] += 1
        self.flush()

    def record_token_usage(self, estimated_tokens: float) -> None:
        if estimated_tokens < 0:
            raise ValueError("token estimate must be non-negative")
        self.stats.token_usage_estimate += estimated_tokens
        self.flush()

    def snapshot(self) -> StatsSnapshot:
        now = self.clock()
        if self._roll_day(now):
            self.flush()
        s = self.stats
        return StatsSnapshot(
            messages_today=s.messages_today,
            active_users=len(s.unique_senders),
            cost_estimate=s.token_usage_estimate / 1_000_000 * self.price_per_million,
            hourly_traffic=list(s.hourly_traffic),
            uptime_seconds=max(0, int((now - s.start_time).total_seconds())),
        )

    def flush(self) -> bool:
        try:
            self.storage.write_json(self.storage.stats_path, self.stats.to_json())
            return True
        except PersistError as e:
            json_log("stats_persist_error", error=str(e))
            return False
