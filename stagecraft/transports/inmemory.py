"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import BusMessage, RequestTimeoutError
from .base import BaseTransport, RequestHandler, channel_matches


class InMemoryTransport(BaseTransport[Tuple[str, BusMessage]]):
    """Simple in-process bus for unit tests.

    Every subscriber gets its own queue, so a message is fanned out to all
    matching subscriptions. Published messages are also kept per channel to
    back ``last_message``.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._history: Dict[str, Deque[BusMessage]] = defaultdict(
            lambda: deque(maxlen=history_size)
        )
        self._log: List[BusMessage] = []
        self._subscribers: List[Tuple[str, asyncio.Queue]] = []
        self._responders: List[Tuple[str, RequestHandler]] = []
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, message: BusMessage) -> None:
        """Publish message to every matching subscriber queue."""
        message = message.model_copy(update={"channel": channel})
        raw = (message.to_json(), message)
        async with self._lock:
            self._history[channel].append(message)
            self._log.append(message)
            for pattern, queue in self._subscribers:
                if channel_matches(pattern, channel):
                    queue.put_nowait(raw)

    async def subscribe(
        self, pattern: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, BusMessage], BusMessage]]:
        """Subscribe to messages on channels matching ``pattern``.

        Args:
            pattern: Channel name or glob pattern to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        queue: asyncio.Queue = asyncio.Queue()
        entry = (pattern, queue)
        self._subscribers.append(entry)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    try:
                        raw_message = await asyncio.wait_for(queue.get(), remaining)
                    except asyncio.TimeoutError:
                        break
                else:
                    raw_message = await queue.get()
                yield raw_message, raw_message[1]
        finally:
            self._subscribers.remove(entry)

    async def ack(self, raw_message: Tuple[str, BusMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def last_message(self, channel: str) -> Optional[BusMessage]:
        history = self._history.get(channel)
        return history[-1] if history else None

    async def serve(self, pattern: str, handler: RequestHandler) -> None:
        self._responders.append((pattern, handler))

    async def request(
        self, channel: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 1.0
    ) -> BusMessage:
        for pattern, handler in reversed(self._responders):
            if channel_matches(pattern, channel):
                break
        else:
            raise RequestTimeoutError(f"No responder for {channel}")

        reply_to = f"_inbox.{uuid.uuid4().hex}"
        message = BusMessage(channel=channel, payload=payload or {}, reply_to=reply_to)
        try:
            reply = await asyncio.wait_for(handler(message), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Request on {channel} timed out after {timeout}s") from e
        return BusMessage(channel=reply_to, payload=reply)

    def published(self, pattern: str = "*") -> List[BusMessage]:
        """Return every message published on channels matching ``pattern``, oldest first."""
        return [m for m in self._log if channel_matches(pattern, m.channel)]
