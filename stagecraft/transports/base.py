"""Base transport interface for the stagecraft message bus."""

from __future__ import annotations

import abc
import fnmatch
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from ..contracts import BusMessage

RawMessageT = TypeVar("RawMessageT")

RequestHandler = Callable[[BusMessage], Awaitable[Dict[str, Any]]]


def channel_matches(pattern: str, channel: str) -> bool:
    """Glob-style match used for pattern subscriptions (``*`` spans dots)."""
    return fnmatch.fnmatchcase(channel, pattern)


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for the orchestration bus.

    Besides plain publish/subscribe, a transport keeps the last message per
    channel durably (``last_message``) and supports request/response through
    ``serve``/``request``.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, channel: str, message: BusMessage) -> None:
        """Send a message to a channel."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, pattern: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, BusMessage]]:
        """Yield raw transport message and BusMessage pairs.

        Args:
            pattern: Channel name or glob pattern to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)

    @abc.abstractmethod
    async def last_message(self, channel: str) -> Optional[BusMessage]:
        """Return the most recent message published on ``channel``, if any."""
        raise NotImplementedError

    @abc.abstractmethod
    async def serve(self, pattern: str, handler: RequestHandler) -> None:
        """Answer requests on channels matching ``pattern`` with ``handler``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def request(
        self, channel: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 1.0
    ) -> BusMessage:
        """Send a request and wait for the reply.

        Raises:
            RequestTimeoutError: No reply arrived within ``timeout`` seconds.
        """
        raise NotImplementedError
