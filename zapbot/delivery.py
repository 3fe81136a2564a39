import asyncio
import random
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional, Tuple

from .errors import DeliveryError
from .models import QueueEntry
from .utils import json_log


@dataclass(frozen=True)
class PacingPolicy:
    """
    Human-like timing for outbound replies, in seconds.
    read: pause before "typing" starts; typing: proportional to reply length,
    floored and capped; gap: pause between two drain cycles.
    """
    read_delay: Tuple[float, float] = (2.0, 5.0)
    typing_per_char: float = 0.05
    typing_min: float = 3.0
    typing_max: float = 10.0
    gap: Tuple[float, float] = (1.0, 3.0)

    def read(self, rng: random.Random) -> float:
        return rng.uniform(*self.read_delay)

    def typing(self, text: str) -> float:
        return max(self.typing_min, min(len(text) * self.typing_per_char, self.typing_max))

    def next_gap(self, rng: random.Random) -> float:
        return rng.uniform(*self.gap)


class DeliveryQueue:
    """
    FIFO of replies waiting to go out, drained by exactly one worker.

    A drain cycle takes the oldest entry, waits, shows "typing", waits in
    proportion to the reply length, sends, then clears "typing". Sends are
    at-most-once: a failed entry is logged and dropped, never re-enqueued.
    """

    def __init__(
        self,
        pacing: Optional[PacingPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_sent: Optional[Callable[[QueueEntry], None]] = None,
        on_failed: Optional[Callable[[QueueEntry, DeliveryError], None]] = None,
    ):
        self.pacing = pacing or PacingPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.on_sent = on_sent
        self.on_failed = on_failed
        self._pending: Deque[QueueEntry] = deque()
        self._busy = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def depth(self) -> int:
        return len(self._pending)

    @property
    def busy(self) -> bool:
        return self._busy

    def enqueue(self, entry: QueueEntry) -> None:
        self._pending.append(entry)
        json_log("delivery_enqueued", chat_id=entry.chat_id, queue_depth=len(self._pending))
        self._wake.set()

    async def drain(self) -> bool:
        """
        Run one drain cycle. Returns False without doing anything when another
        cycle is in flight or nothing is pending.
        """
        if self._busy or not self._pending:
            return False
        self._busy = True
        entry = self._pending.popleft()
        try:
            await self._sleep(self.pacing.read(self._rng))
            await self._best_effort(entry, "send_state_typing")
            await self._sleep(self.pacing.typing(entry.response_text))
            try:
                await entry.chat.reply(entry.response_text)
            except Exception as e:
                err = DeliveryError(str(e) or type(e).__name__)
                json_log("delivery_failed", chat_id=entry.chat_id, error=str(err))
                self._notify(self.on_failed, entry, err)
            else:
                json_log("delivery_sent", chat_id=entry.chat_id, chars=len(entry.response_text))
                self._notify(self.on_sent, entry)
            await self._best_effort(entry, "clear_state")
        finally:
            self._busy = False
            if self._pending:
                self._wake.set()
        return True

    async def _best_effort(self, entry: QueueEntry, action: str) -> None:
        try:
            await getattr(entry.chat, action)()
        except Exception as e:
            json_log("delivery_presence_error", chat_id=entry.chat_id, action=action, error=str(e))

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            json_log("delivery_callback_error", error=str(e))

    async def run(self) -> None:
        """Single consumer loop: drain while entries remain, pausing between cycles."""
        while True:
            await self._wake.wait()
            self._wake.clear()
            while True:
                try:
                    drained = await self.drain()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    json_log("delivery_worker_error", error=str(e))
                    drained = True
                if not drained:
                    break
                await self._sleep(self.pacing.next_gap(self._rng))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
