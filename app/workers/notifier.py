"""Per-budget change notification fan-out for server-sent events.

The ``ChangeNotifier`` is a process-wide registry created by the application factory and injected into the
routes through ``app.state``. Each subscriber owns a bounded queue; a subscriber whose queue is full is
dropped instead of blocking the broadcaster. Publishing never raises: the authoritative write has already
happened when a broadcast is attempted.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from app.core.models import ChangeEvent
from app.core.utils import get_logger

logger = get_logger("budget-sync.notifier")


@dataclass(frozen=True)
class ServerSentEvent:
    """One ``text/event-stream`` frame."""

    event: str
    data: dict = field(default_factory=dict)

    def encode(self) -> str:
        """Serialize as an SSE frame terminated by a blank line."""
        payload = json.dumps(self.data, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n"


HELLO = ServerSentEvent("hello", {"status": "connected"})
PING = ServerSentEvent("ping", {})


class Subscription:
    """A single long-lived listener on one budget's channel."""

    def __init__(self, budget_id: int, maxsize: int) -> None:
        """Create the bounded buffer and the cancellation flag."""
        self.budget_id = budget_id
        self.queue: asyncio.Queue[ServerSentEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = asyncio.Event()

    def deliver(self, message: ServerSentEvent) -> bool:
        """Buffer a message; returns False when the subscriber has fallen behind."""
        if self.closed.is_set():
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Cancel the subscription; its stream ends at the next wakeup."""
        self.closed.set()

    async def next_message(self, timeout: float) -> ServerSentEvent | None:
        """Wait for the next buffered message, or return None after ``timeout`` seconds or on close."""
        getter = asyncio.ensure_future(self.queue.get())
        closer = asyncio.ensure_future(self.closed.wait())
        try:
            await asyncio.wait({getter, closer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None


class ChangeNotifier:
    """Registry of budget subscribers with an explicit start/stop lifecycle."""

    def __init__(self, queue_size: int = 100, ping_interval: float = 30.0) -> None:
        """Configure buffer size and keepalive cadence."""
        self.queue_size = queue_size
        self.ping_interval = ping_interval
        self._subscribers: dict[int, set[Subscription]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        """Whether the notifier accepts subscriptions."""
        return self._running

    def start(self) -> None:
        """Begin accepting subscribers."""
        self._running = True
        logger.info("Change notifier started")

    def stop(self) -> None:
        """Close every subscription and stop accepting new ones."""
        self._running = False
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()
        logger.info("Change notifier stopped")

    def subscribe(self, budget_id: int) -> Subscription:
        """Register a listener for a budget and queue its ``hello`` event."""
        if not self._running:
            self.start()
        sub = Subscription(int(budget_id), self.queue_size)
        self._subscribers.setdefault(sub.budget_id, set()).add(sub)
        sub.deliver(HELLO)
        logger.info(f"Subscriber joined budget {sub.budget_id} ({self.subscriber_count(sub.budget_id)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove a listener; safe to call more than once."""
        sub.close()
        subs = self._subscribers.get(sub.budget_id)
        if not subs or sub not in subs:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.budget_id]
        logger.info(f"Subscriber left budget {sub.budget_id}")

    def subscriber_count(self, budget_id: int) -> int:
        """Number of live listeners on a budget."""
        return len(self._subscribers.get(int(budget_id), ()))

    def publish(self, event: ChangeEvent) -> int:
        """Fan an ``update`` event out to a budget's subscribers; returns how many received it."""
        try:
            return self._publish(event)
        except Exception:
            logger.warning(f"Broadcast failed for budget {event.budget_id}", exc_info=True)
            return 0

    def _publish(self, event: ChangeEvent) -> int:
        subs = self._subscribers.get(event.budget_id)
        if not subs:
            return 0
        message = ServerSentEvent("update", event.to_json(exclude_none=True))
        delivered = 0
        for sub in list(subs):
            if sub.deliver(message):
                delivered += 1
            else:
                logger.warning(f"Dropping slow subscriber on budget {event.budget_id}")
                self.unsubscribe(sub)
        return delivered

    async def stream(self, sub: Subscription) -> AsyncIterator[str]:
        """Encode a subscription as SSE frames, with a keepalive ``ping`` when idle."""
        try:
            while not sub.closed.is_set():
                message = await sub.next_message(self.ping_interval)
                if message is None:
                    if sub.closed.is_set():
                        break
                    message = PING
                yield message.encode()
        finally:
            self.unsubscribe(sub)
