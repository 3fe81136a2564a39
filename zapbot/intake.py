from typing import Callable

from .models import BotConfig, IncomingMessage
from .utils import is_group_or_broadcast, normalize_sender


class IntakeFilter:
    """
    Decides whether an inbound message may reach the AI. Pure predicate:
    reads the current config, never mutates anything.
    """

    def __init__(self, config: Callable[[], BotConfig]):
        self._config = config

    def accept(self, message: IncomingMessage) -> bool:
        if message.is_status or is_group_or_broadcast(message.chat_id):
            return False
        config = self._config()
        if not config.is_active:
            return False
        if config.only_allowed:
            sender = normalize_sender(message.chat_id)
            return sender is not None and sender in config.allowed_numbers
        return True
