import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .green_api import GreenAPIClient
from .models import IncomingMessage
from .utils import json_log


EVENTS = ("qr", "ready", "authenticated", "disconnected", "message")

STATE_AUTHORIZED = "authorized"
STATE_NOT_AUTHORIZED = "notAuthorized"
STATE_STARTING = "starting"

QR_REFRESH_SECONDS = 20.0


class GreenAPIChat:
    """Reply handle for one inbound message: quotes it, shows typing in its chat."""

    def __init__(self, client: GreenAPIClient, chat_id: str, quoted_message_id: Optional[str] = None,
                 typing_time_ms: int = 10000):
        self.client = client
        self.chat_id = chat_id
        self.quoted_message_id = quoted_message_id
        self.typing_time_ms = typing_time_ms

    async def send_state_typing(self) -> None:
        await self.client.send_typing(self.chat_id, self.typing_time_ms)

    async def clear_state(self) -> None:
        # Green API drops the typing indicator on send or after typing_time_ms.
        return None

    async def reply(self, text: str) -> Dict[str, Any]:
        return await self.client.send_message(self.chat_id, text, quoted_message_id=self.quoted_message_id)


def _extract_text_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """
    Extract human text from common Green-API payload shapes.
    Handles:
      - textMessageData.textMessage (typeMessage == textMessage)
      - extendedTextMessageData.text (typeMessage == extendedTextMessage)
      - captions for image/file/document
    Fallback: None
    """
    md = payload.get("messageData") or {}
    if not md:
        return None

    t = (md.get("typeMessage") or "").lower()

    if t == "textmessage":
        tmd = md.get("textMessageData") or {}
        if tmd.get("textMessage"):
            return tmd.get("textMessage")

    # Extended text (links, quoted replies)
    if t in ("extendedtextmessage", "quotedmessage"):
        etd = md.get("extendedTextMessageData") or {}
        for k in ("text", "description", "title"):
            v = etd.get(k)
            if isinstance(v, str) and v.strip():
                return v

    for k in ("imageMessageData", "fileMessageData", "documentMessageData"):
        if k in md:
            cap = (md.get(k) or {}).get("caption")
            if isinstance(cap, str) and cap.strip():
                return cap

    return None


def parse_incoming(payload: Dict[str, Any], client: GreenAPIClient) -> Optional[IncomingMessage]:
    """Build an IncomingMessage from an incomingMessageReceived notification body."""
    if payload.get("typeWebhook") != "incomingMessageReceived":
        return None
    sender = payload.get("senderData") or {}
    chat_id = sender.get("chatId") or ""
    text = _extract_text_from_payload(payload)
    if not chat_id or not text:
        return None
    ts = payload.get("timestamp")
    when = None
    if isinstance(ts, (int, float)):
        when = datetime.fromtimestamp(ts, tz=timezone.utc)
    msg_id = payload.get("idMessage") or ""
    return IncomingMessage(
        id=msg_id,
        chat_id=chat_id,
        body=text,
        sender_name=sender.get("senderName") or sender.get("chatName"),
        is_status=chat_id == "status@broadcast",
        timestamp=when,
        chat=GreenAPIChat(client, chat_id, quoted_message_id=msg_id or None),
    )


class WhatsAppSession:
    """
    WhatsApp account session over Green API.

    Emits: qr(payload), authenticated(), ready(), disconnected(reason), message(IncomingMessage).
    Commands: initialize(), destroy(), logout().
    """

    def __init__(self, client: GreenAPIClient, poll: bool = True):
        self.client = client
        self.poll = poll
        self.info: Optional[Dict[str, Any]] = None
        self.state: Optional[str] = None
        self._handlers: Dict[str, List[Callable[..., Any]]] = {e: [] for e in EVENTS}
        self._task: Optional[asyncio.Task] = None
        self._last_qr_at = 0.0

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in self._handlers:
            raise ValueError(f"unknown session event: {event}")
        self._handlers[event].append(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                json_log("session_handler_error", event_name=event, error=str(e))

    async def initialize(self) -> None:
        if not self.client.configured:
            raise RuntimeError("GREEN_API_INSTANCE_ID / GREEN_API_API_TOKEN are not set")
        state = await self.client.get_state_instance()
        await self._apply_state(state)
        if self.poll and (self._task is None or self._task.done()):
            self._task = asyncio.create_task(self._poll_loop())

    async def destroy(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.info = None
        self.state = None

    async def logout(self) -> None:
        await self.client.logout()
        self.info = None
        self.state = STATE_NOT_AUTHORIZED
        await self._emit("disconnected", "LOGOUT")

    async def _apply_state(self, state: str) -> None:
        previous, self.state = self.state, state
        if state == STATE_AUTHORIZED:
            if previous == STATE_AUTHORIZED:
                return
            self.info = {"idInstance": self.client.id_instance, "state": state}
            await self._emit("authenticated")
            await self._emit("ready")
        elif state == STATE_NOT_AUTHORIZED:
            was_authorized = self.info is not None
            self.info = None
            if was_authorized:
                await self._emit("disconnected", state)
            await self._refresh_qr()
        elif state == STATE_STARTING:
            return
        else:
            self.info = None
            if previous != state:
                await self._emit("disconnected", state)

    async def _refresh_qr(self) -> None:
        qr = await self.client.get_qr()
        self._last_qr_at = time.monotonic()
        kind = qr.get("type")
        if kind == "qrCode":
            await self._emit("qr", qr.get("message") or "")
        elif kind == "alreadyLogged":
            await self._apply_state(STATE_AUTHORIZED)
        else:
            json_log("qr_error", message=qr.get("message"))

    async def dispatch(self, payload: Dict[str, Any]) -> bool:
        """Route one notification body (webhook or polled). Returns True when handled."""
        kind = payload.get("typeWebhook")
        if kind == "incomingMessageReceived":
            msg = parse_incoming(payload, self.client)
            if msg is None:
                return False
            await self._emit("message", msg)
            return True
        if kind == "stateInstanceChanged":
            await self._apply_state(payload.get("stateInstance") or "")
            return True
        return False

    async def _poll_loop(self) -> None:
        """
        Polls Green API ReceiveNotification and routes notifications through
        the same dispatcher as the /webhook. Refreshes the QR while unpaired.
        """
        while True:
            try:
                if self.state == STATE_NOT_AUTHORIZED and time.monotonic() - self._last_qr_at > QR_REFRESH_SECONDS:
                    await self._apply_state(await self.client.get_state_instance())
                data = await self.client.receive_notification()
                if not data:
                    await asyncio.sleep(0.5)
                    continue
                receipt_id = data.get("receiptId")
                body = data.get("body") or data
                await self.dispatch(body)
                if receipt_id is not None:
                    try:
                        await self.client.delete_notification(int(receipt_id))
                    except Exception as e:
                        json_log("delete_notification_error", error=str(e), receipt_id=receipt_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                json_log("receive_notification_error", error=str(e))
                await asyncio.sleep(2.0)
