import asyncio
import os
from typing import Any, Callable, Dict, List, Optional, Sequence

import google.generativeai as genai

from .errors import EmptyResponse, TransportFailure
from .models import BotConfig, ChatTurn


HISTORY_LIMIT = 20


class ConversationMemory:
    """
    In-memory rolling chat history per chat_id.
    Stores the last 20 turns (user/bot combined); lost on restart.
    """

    def __init__(self, limit: int = HISTORY_LIMIT):
        self.limit = limit
        self._items: Dict[str, List[ChatTurn]] = {}

    def append(self, chat_id: str, role: str, content: str) -> None:
        if not chat_id:
            return
        items = self._items.setdefault(chat_id, [])
        items.append(ChatTurn(role=role, content=content))
        if len(items) > self.limit:
            del items[:-self.limit]

    def get(self, chat_id: Optional[str]) -> List[ChatTurn]:
        if not chat_id:
            return []
        return list(self._items.get(chat_id) or [])[-self.limit:]

    def clear(self) -> None:
        self._items.clear()


def build_history(history: Sequence[ChatTurn]) -> List[Dict[str, Any]]:
    """Map dashboard/chat turns to Gemini chat history, dropping system/log entries."""
    out: List[Dict[str, Any]] = []
    for turn in history:
        if turn.role == "system" or not turn.content:
            continue
        role = "user" if turn.role == "user" else "model"
        out.append({"role": role, "parts": [turn.content]})
    return out


def _response_text(resp: Any) -> str:
    text = ""
    try:
        text = resp.text or ""
    except Exception:
        # .text raises when the candidate has no simple text part (e.g. blocked)
        try:
            text = "".join(p.text for p in resp.candidates[0].content.parts)
        except Exception:
            text = ""
    return text.strip()


class GeminiResponder:
    """
    Turns an inbound message plus prior turns into a reply using the model,
    persona and temperature from the current BotConfig.
    """

    def __init__(self, api_key: Optional[str] = None, model_factory: Optional[Callable[..., Any]] = None):
        if api_key is None:
            api_key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")
        genai.configure(api_key=api_key)
        self._model_factory = model_factory or genai.GenerativeModel

    def generate_sync(self, history: Sequence[ChatTurn], new_message: str, config: BotConfig) -> str:
        try:
            model = self._model_factory(
                config.model,
                system_instruction=config.system_instruction or None,
                generation_config={"temperature": config.temperature},
            )
            chat = model.start_chat(history=build_history(history))
            resp = chat.send_message(new_message)
        except Exception as e:
            raise TransportFailure(str(e) or type(e).__name__) from e
        text = _response_text(resp)
        if not text:
            raise EmptyResponse()
        return text

    async def generate(self, history: Sequence[ChatTurn], new_message: str, config: BotConfig) -> str:
        """
        Blocking SDK call runs in a worker thread. No timeout: a hang only
        stalls this one message, not the queue or the stats.
        """
        return await asyncio.to_thread(self.generate_sync, list(history), new_message, config)
