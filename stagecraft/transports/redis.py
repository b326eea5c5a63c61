"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import BusMessage, RequestTimeoutError
from .base import BaseTransport, RequestHandler

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed messaging.

    Each channel is backed by a capped stream (``stagecraft:stream:<channel>``)
    so the last message survives restarts; live delivery uses pattern pub/sub.
    Requests are published on ``stagecraft:rpc:<channel>`` and answered by
    pushing onto a per-request reply list.
    """

    prefix = "stagecraft"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        stream_maxlen: int = 10000,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.stream_maxlen = stream_maxlen
        self._redis: Optional[Any] = None
        self._responders: List[asyncio.Task] = []

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Stop responders and disconnect from Redis."""
        for task in self._responders:
            task.cancel()
        if self._responders:
            await asyncio.gather(*self._responders, return_exceptions=True)
        self._responders.clear()
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _stream(self, channel: str) -> str:
        return f"{self.prefix}:stream:{channel}"

    def _live(self, channel: str) -> str:
        return f"{self.prefix}:{channel}"

    def _rpc(self, channel: str) -> str:
        return f"{self.prefix}:rpc:{channel}"

    @staticmethod
    def _parse(message_json: str) -> Optional[BusMessage]:
        try:
            return BusMessage.from_json(message_json)
        except ValueError as e:
            logger.warning(f"Failed to parse message: {e}")
            return None

    async def publish(self, channel: str, message: BusMessage) -> None:
        """Append message to the channel stream and fan it out live."""
        client = await self._client()
        message = message.model_copy(update={"channel": channel})
        message_json = message.to_json()
        await client.xadd(
            self._stream(channel),
            {"data": message_json},
            maxlen=self.stream_maxlen,
            approximate=True,
        )
        await client.publish(self._live(channel), message_json)

    async def subscribe(
        self, pattern: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, BusMessage]]:
        """Subscribe to live messages on channels matching ``pattern``."""
        client = await self._client()
        pubsub = client.pubsub()
        await pubsub.psubscribe(self._live(pattern))
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        try:
            while True:
                if lifespan and start_time:
                    elapsed = loop.time() - start_time
                    if elapsed >= lifespan:
                        break

                raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if raw is None:
                    continue
                message_json = raw["data"]
                message = self._parse(message_json)
                if message is not None:
                    yield message_json, message
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def last_message(self, channel: str) -> Optional[BusMessage]:
        client = await self._client()
        entries = await client.xrevrange(self._stream(channel), count=1)
        if not entries:
            return None
        _, fields = entries[0]
        return self._parse(fields["data"])

    async def serve(self, pattern: str, handler: RequestHandler) -> None:
        client = await self._client()
        pubsub = client.pubsub()
        await pubsub.psubscribe(self._rpc(pattern))
        self._responders.append(
            asyncio.create_task(self._respond(client, pubsub, handler))
        )

    async def _respond(self, client: Any, pubsub: Any, handler: RequestHandler) -> None:
        try:
            while True:
                raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if raw is None:
                    continue
                request = self._parse(raw["data"])
                if request is None or not request.reply_to:
                    continue
                try:
                    reply: Dict[str, Any] = await handler(request)
                except Exception as e:
                    logger.error(f"Responder failed for {request.channel}: {e}")
                    reply = {"error": str(e)}
                await client.lpush(request.reply_to, json.dumps(reply, default=str))
                await client.expire(request.reply_to, 60)
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()

    async def request(
        self, channel: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 1.0
    ) -> BusMessage:
        client = await self._client()
        reply_to = f"{self.prefix}:inbox:{uuid.uuid4().hex}"
        message = BusMessage(channel=channel, payload=payload or {}, reply_to=reply_to)
        receivers = await client.publish(self._rpc(channel), message.to_json())
        if not receivers:
            raise RequestTimeoutError(f"No responder for {channel}")

        result = await client.blpop(reply_to, timeout=timeout)
        if not result:
            raise RequestTimeoutError(f"Request on {channel} timed out after {timeout}s")
        _, reply_json = result
        return BusMessage(channel=reply_to, payload=json.loads(reply_json))
