import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .utils import normalize_numbers


# USD per 1M tokens, used for the dashboard cost estimate.
PRICE_PER_MILLION_TOKENS = 0.10

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0


class BotStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    QR_READY = "QR_READY"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class ModelType(str, Enum):
    FLASH = "gemini-2.5-flash"
    PRO = "gemini-3-pro-preview"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


# JSON (dashboard / disk) key -> attribute name
_CONFIG_KEYS = {
    "model": "model",
    "temperature": "temperature",
    "systemInstruction": "system_instruction",
    "isActive": "is_active",
    "allowedNumbers": "allowed_numbers",
    "onlyAllowed": "only_allowed",
}


@dataclass
class BotConfig:
    model: str = ModelType.FLASH.value
    temperature: float = 0.7
    system_instruction: str = "You are a helpful assistant. Reply briefly and naturally."
    is_active: bool = True
    # digits only, no @c.us
    allowed_numbers: List[str] = field(default_factory=list)
    # whitelist enforced by default
    only_allowed: bool = True

    @staticmethod
    def from_json(d: Dict[str, Any]) -> "BotConfig":
        """Merge a persisted/dashboard document over the defaults; known keys only."""
        c = BotConfig()
        for key, attr in _CONFIG_KEYS.items():
            if key in d:
                setattr(c, attr, d[key])
        c.normalize()
        return c

    def to_json(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in _CONFIG_KEYS.items()}

    def normalize(self) -> None:
        numbers = self.allowed_numbers
        if isinstance(numbers, str):
            numbers = numbers.replace("\n", ",").split(",")
        if not isinstance(numbers, (list, tuple, set)):
            numbers = []
        self.allowed_numbers = normalize_numbers(numbers)
        try:
            t = float(self.temperature)
        except (TypeError, ValueError):
            t = BotConfig.temperature
        self.temperature = min(TEMPERATURE_MAX, max(TEMPERATURE_MIN, t))
        if isinstance(self.model, ModelType):
            self.model = self.model.value
        self.system_instruction = str(self.system_instruction or "")
        self.is_active = bool(self.is_active)
        self.only_allowed = bool(self.only_allowed)

    def merged(self, changes: Dict[str, Any]) -> "BotConfig":
        """Shallow merge of JSON-keyed changes, returning a new normalized config."""
        c = dataclasses.replace(self, allowed_numbers=list(self.allowed_numbers))
        for key, value in changes.items():
            attr = _CONFIG_KEYS.get(key)
            if attr is not None:
                setattr(c, attr, value)
        c.normalize()
        return c


class ConfigUpdate(BaseModel):
    """Partial BotConfig sent by the dashboard. Unknown keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    model: Optional[ModelType] = None
    temperature: Optional[float] = None
    system_instruction: Optional[str] = Field(default=None, alias="systemInstruction")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    allowed_numbers: Optional[List[str]] = Field(default=None, alias="allowedNumbers")
    only_allowed: Optional[bool] = Field(default=None, alias="onlyAllowed")

    def changes(self) -> Dict[str, Any]:
        """JSON-keyed dict of the fields the client actually sent."""
        out: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None:
                continue
            alias = type(self).model_fields[name].alias or name
            out[alias] = value
        return out


@dataclass
class ChatTurn:
    role: str  # "user" | "bot" | "system"
    content: str


@dataclass
class IncomingMessage:
    """
    Inbound WhatsApp message as handed over by the transport.

    `chat` is the transport's reply handle; it must provide async
    `send_state_typing()`, `clear_state()` and `reply(text)`.
    """
    id: str
    chat_id: str
    body: str
    sender_name: Optional[str] = None
    is_status: bool = False
    timestamp: Optional[datetime] = None
    chat: Any = None


@dataclass
class QueueEntry:
    chat: Any
    response_text: str
    chat_id: str = ""
