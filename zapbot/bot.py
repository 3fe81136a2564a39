import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import ValidationError

from .broadcaster import EventBroadcaster
from .config_store import ConfigStore
from .delivery import DeliveryQueue
from .errors import AIError, DeliveryError
from .gemini import ConversationMemory, GeminiResponder
from .green_api import GreenAPIClient
from .intake import IntakeFilter
from .models import BotConfig, BotStatus, ChatTurn, ConfigUpdate, IncomingMessage, LogLevel, QueueEntry
from .session import WhatsAppSession
from .stats import StatsAccumulator, estimate_tokens
from .storage import Storage
from .utils import json_log, normalize_sender


PLAYGROUND_FALLBACK = "Sorry, I'm having technical trouble right now. (AI error)"


class ZapBot:
    """
    The responder pipeline: inbound message -> intake filter -> stats +
    broadcast -> Gemini -> delivery queue. Also serves the dashboard commands.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        stats: StatsAccumulator,
        broadcaster: EventBroadcaster,
        queue: Optional[DeliveryQueue] = None,
        responder: Optional[GeminiResponder] = None,
        session: Optional[WhatsAppSession] = None,
        memory: Optional[ConversationMemory] = None,
    ):
        self.config_store = config_store
        self.stats = stats
        self.broadcaster = broadcaster
        self.queue = queue or DeliveryQueue()
        self.queue.on_sent = self._on_delivered
        self.queue.on_failed = self._on_delivery_failed
        self.responder = responder
        self.memory = memory or ConversationMemory()
        self.filter = IntakeFilter(lambda: self.config_store.current)
        self.status = BotStatus.DISCONNECTED
        self.qr: Optional[str] = None
        self.session: Optional[WhatsAppSession] = None
        self._tasks: Set[asyncio.Task] = set()
        if session is not None:
            self.attach_session(session)

    @classmethod
    def from_env(cls) -> "ZapBot":
        storage = Storage.from_env()
        storage.ensure_layout()
        config_store = ConfigStore(storage)
        config_store.load()
        stats = StatsAccumulator(storage)
        stats.load()

        responder = None
        try:
            responder = GeminiResponder()
        except RuntimeError as e:
            # Filtering and stats keep running; accepted messages just get no reply.
            json_log("gemini_disabled", error=str(e))

        session = None
        client = GreenAPIClient.from_env()
        if client.configured:
            poll = os.getenv("GREEN_API_MODE", "poll").lower() != "webhook"
            session = WhatsAppSession(client, poll=poll)
        else:
            json_log("whatsapp_disabled", reason="green_api_credentials_missing")

        return cls(config_store, stats, EventBroadcaster(), responder=responder, session=session)

    @property
    def config(self) -> BotConfig:
        return self.config_store.current

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach_session(self, session: WhatsAppSession) -> None:
        self.session = session
        session.on("qr", self._on_qr)
        session.on("authenticated", self._on_authenticated)
        session.on("ready", self._on_ready)
        session.on("disconnected", self._on_disconnected)
        session.on("message", self._on_message)

    async def start(self) -> None:
        if self.responder is None:
            self.broadcaster.log(LogLevel.ERROR, "GEMINI_API_KEY not found: AI replies are disabled.")
        self.queue.start()
        await self.start_session()

    async def stop(self) -> None:
        await self.queue.stop()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.session is not None:
            try:
                await self.session.destroy()
            except Exception as e:
                json_log("session_destroy_error", error=str(e))

    async def start_session(self) -> None:
        if self.session is None:
            return
        self.set_status(BotStatus.CONNECTING)
        try:
            await self.session.initialize()
        except Exception as e:
            self.set_status(BotStatus.DISCONNECTED)
            self.broadcaster.log(LogLevel.ERROR, f"WhatsApp initialization failed: {e}")

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def set_status(self, status: BotStatus) -> None:
        self.status = status
        if status != BotStatus.QR_READY:
            self.qr = None
        self.broadcaster.publish("bot_status", status.value)

    def _on_qr(self, qr: str) -> None:
        json_log("qr_received")
        self.qr = qr
        self.broadcaster.publish("qr_code", qr)
        self.set_status(BotStatus.QR_READY)

    def _on_authenticated(self) -> None:
        self.broadcaster.log(LogLevel.INFO, "WhatsApp session authenticated.")

    def _on_ready(self) -> None:
        self.set_status(BotStatus.CONNECTED)
        self.broadcaster.log(LogLevel.SUCCESS, "WhatsApp connected!")

    def _on_disconnected(self, reason: str) -> None:
        self.set_status(BotStatus.DISCONNECTED)
        self.broadcaster.log(LogLevel.WARNING, f"Disconnected: {reason}")

    def _on_message(self, message: IncomingMessage) -> None:
        # Each inbound message runs on its own task so a slow AI call
        # never holds up polling, other messages or the delivery queue.
        task = asyncio.create_task(self._handle_safely(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_safely(self, message: IncomingMessage) -> None:
        try:
            await self.handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("message_handler_error", chat_id=message.chat_id, error=str(e))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def publish_stats(self) -> None:
        self.broadcaster.publish("dashboard_update", self.stats.snapshot().to_json())

    async def handle_message(self, message: IncomingMessage) -> Optional[str]:
        """Run one inbound message through the pipeline. Returns the enqueued reply, if any."""
        if not self.filter.accept(message):
            return None

        sender = normalize_sender(message.chat_id) or message.chat_id
        self.stats.record_inbound(sender)
        self.publish_stats()

        name = message.sender_name or sender
        preview = message.body[:20]
        self.broadcaster.log(LogLevel.INFO, f'Message from {name}: "{preview}..."')

        if self.responder is None:
            return None

        config = self.config
        history = self.memory.get(message.chat_id)
        try:
            reply = await self.responder.generate(history, message.body, config)
        except AIError as e:
            self.broadcaster.log(LogLevel.ERROR, f"AI error: {e}", chat_id=message.chat_id)
            return None

        self.stats.record_token_usage(estimate_tokens(message.body, reply))
        self.memory.append(message.chat_id, "user", message.body)
        self.memory.append(message.chat_id, "bot", reply)
        self.queue.enqueue(QueueEntry(chat=message.chat, response_text=reply, chat_id=message.chat_id))
        return reply

    def _on_delivered(self, entry: QueueEntry) -> None:
        self.broadcaster.log(LogLevel.SUCCESS, "Reply sent.", chat_id=entry.chat_id)

    def _on_delivery_failed(self, entry: QueueEntry, error: DeliveryError) -> None:
        self.broadcaster.log(LogLevel.ERROR, f"Failed to send reply: {error}", chat_id=entry.chat_id)

    # ------------------------------------------------------------------
    # Dashboard commands
    # ------------------------------------------------------------------

    def update_config(self, partial: Optional[Dict[str, Any]]) -> BotConfig:
        update = ConfigUpdate.model_validate(partial or {})
        config = self.config_store.update(update.changes())
        json_log("config_updated", allowed_numbers=len(config.allowed_numbers),
                 only_allowed=config.only_allowed, is_active=config.is_active)
        self.broadcaster.log(LogLevel.INFO, "Settings saved and applied.")
        return config

    async def restart_client(self) -> None:
        self.broadcaster.log(LogLevel.WARNING, "Restarting WhatsApp client...")
        if self.session is None:
            return
        try:
            await self.session.destroy()
        except Exception as e:
            json_log("session_destroy_error", error=str(e))
        await self.start_session()

    async def disconnect_session(self) -> None:
        if self.session is not None:
            try:
                # a successful logout emits `disconnected`, which sets the status
                await self.session.logout()
            except Exception as e:
                json_log("session_logout_error", error=str(e))
        if self.status != BotStatus.DISCONNECTED:
            self.set_status(BotStatus.DISCONNECTED)

    async def handle_command(self, name: Optional[str], data: Any = None) -> None:
        """Dispatch one command frame received from a dashboard observer."""
        if name == "update_config":
            try:
                self.update_config(data if isinstance(data, dict) else {})
            except ValidationError as e:
                self.broadcaster.log(LogLevel.ERROR, f"Invalid settings: {e.error_count()} field(s) rejected.")
        elif name == "restart_client":
            await self.restart_client()
        elif name == "disconnect_session":
            await self.disconnect_session()
        else:
            json_log("unknown_command", command=name)

    def initial_events(self) -> List[Dict[str, Any]]:
        """Full current snapshot sent once to an observer when it connects."""
        events = [
            {"event": "config_initial", "data": self.config.to_json()},
            {"event": "dashboard_update", "data": self.stats.snapshot().to_json()},
            {"event": "bot_status", "data": self.status.value},
        ]
        if self.status == BotStatus.QR_READY and self.qr:
            events.append({"event": "qr_code", "data": self.qr})
        return events

    async def playground_reply(self, history: Sequence[ChatTurn], message: str) -> Dict[str, Any]:
        """
        Dashboard chat tester: same model/persona as live replies, but no
        WhatsApp, no queue and no stats.
        """
        if self.responder is None:
            self.broadcaster.log(LogLevel.ERROR, "Playground: GEMINI_API_KEY not configured.")
            return {"reply": PLAYGROUND_FALLBACK, "error": "ai_disabled"}
        try:
            reply = await self.responder.generate(history, message, self.config)
        except AIError as e:
            self.broadcaster.log(LogLevel.ERROR, "Playground: failed to generate AI reply.")
            return {"reply": PLAYGROUND_FALLBACK, "error": str(e)}
        self.broadcaster.log(LogLevel.SUCCESS, "Playground: AI reply generated.")
        return {"reply": reply, "error": None}
