"""Progress channels: transport-independent delivery of sync progress events.

The sync loop only calls publish(); subscribers iterate subscribe(). Two
implementations:
- InMemoryProgressChannel: one asyncio.Queue per subscriber, single process.
- RedisProgressChannel: a Redis Stream per sync, for multi-worker setups.

Both replay the latest snapshot to a subscriber that joins late and end the
iteration after a terminal event. When a heartbeat interval is given,
subscribe() yields None whenever that interval passes without an event.
"""

from __future__ import annotations

import abc
import asyncio
import json
from collections import OrderedDict
from collections.abc import AsyncIterator

import redis.asyncio as aioredis
import structlog

from src.crmsync.sync.progress import ProgressEvent

logger = structlog.get_logger(__name__)


def format_sse(event: ProgressEvent) -> str:
    """Server-sent-event frame: "event: <type>" plus the JSON snapshot."""
    payload = event.state.model_dump(mode="json")
    if event.message:
        payload["message"] = event.message
    return f"event: {event.type.value}\ndata: {json.dumps(payload)}\n\n"


SSE_KEEPALIVE = ": keep-alive\n\n"


class ProgressChannel(abc.ABC):
    @abc.abstractmethod
    async def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to every current and future subscriber of its sync."""

    @abc.abstractmethod
    def subscribe(
        self, sync_id: str, heartbeat: float | None = None
    ) -> AsyncIterator[ProgressEvent | None]:
        """Iterate events for sync_id until a terminal event."""

    @abc.abstractmethod
    async def latest(self, sync_id: str) -> ProgressEvent | None:
        """Most recent event published for sync_id, if any."""


class InMemoryProgressChannel(ProgressChannel):
    """Per-subscriber asyncio queues; keeps the latest event of recent syncs.

    Args:
        retain: Number of syncs whose latest event is kept for late subscribers.
    """

    def __init__(self, retain: int = 100) -> None:
        self._latest: OrderedDict[str, ProgressEvent] = OrderedDict()
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}
        self._retain = retain

    async def publish(self, event: ProgressEvent) -> None:
        sync_id = event.state.sync_id
        self._latest[sync_id] = event
        self._latest.move_to_end(sync_id)
        while len(self._latest) > self._retain:
            self._latest.popitem(last=False)
        for queue in self._subscribers.get(sync_id, ()):
            queue.put_nowait(event)

    async def latest(self, sync_id: str) -> ProgressEvent | None:
        return self._latest.get(sync_id)

    def subscriber_count(self, sync_id: str) -> int:
        return len(self._subscribers.get(sync_id, ()))

    async def subscribe(
        self, sync_id: str, heartbeat: float | None = None
    ) -> AsyncIterator[ProgressEvent | None]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._subscribers.setdefault(sync_id, set()).add(queue)
        current = self._latest.get(sync_id)
        if current is not None:
            queue.put_nowait(current)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield event
                if event.terminal:
                    return
        finally:
            subscribers = self._subscribers.get(sync_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[sync_id]


class RedisProgressChannel(ProgressChannel):
    """Progress events on a Redis Stream per sync.

    Stream key pattern: sync:progress:{sync_id}. Streams are trimmed to
    maxlen entries and expire ttl seconds after the last publish.

    Args:
        redis: Async Redis client created with decode_responses=True.
        maxlen: Approximate stream length cap.
        ttl: Seconds a stream lives after its last event.
    """

    def __init__(self, redis: aioredis.Redis, maxlen: int = 1000, ttl: int = 3600) -> None:
        self._redis = redis
        self._maxlen = maxlen
        self._ttl = ttl

    @staticmethod
    def _stream_key(sync_id: str) -> str:
        return f"sync:progress:{sync_id}"

    async def publish(self, event: ProgressEvent) -> None:
        key = self._stream_key(event.state.sync_id)
        message_id = await self._redis.xadd(
            key,
            {"event": event.model_dump_json()},
            maxlen=self._maxlen,
            approximate=True,
        )
        await self._redis.expire(key, self._ttl)
        logger.debug("progress.published", stream=key, event_type=event.type.value, message_id=message_id)

    async def latest(self, sync_id: str) -> ProgressEvent | None:
        entries = await self._redis.xrevrange(self._stream_key(sync_id), count=1)
        if not entries:
            return None
        _message_id, fields = entries[0]
        return ProgressEvent.model_validate_json(fields["event"])

    async def subscribe(
        self, sync_id: str, heartbeat: float | None = None
    ) -> AsyncIterator[ProgressEvent | None]:
        key = self._stream_key(sync_id)
        last_id = "0-0"
        entries = await self._redis.xrevrange(key, count=1)
        if entries:
            last_id, fields = entries[0]
            event = ProgressEvent.model_validate_json(fields["event"])
            yield event
            if event.terminal:
                return

        block = int(heartbeat * 1000) if heartbeat else 0
        while True:
            response = await self._redis.xread({key: last_id}, count=100, block=block)
            if not response:
                yield None
                continue
            for _stream, messages in response:
                for message_id, fields in messages:
                    last_id = message_id
                    event = ProgressEvent.model_validate_json(fields["event"])
                    yield event
                    if event.terminal:
                        return
