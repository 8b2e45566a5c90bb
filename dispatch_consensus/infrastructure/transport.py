"""
Broadcast transport contract.

The agent only needs two things from the ledger network: a way to submit a
named update and an ordered stream of events whose names match a topic
filter. Concrete transports live in ``memory_ledger`` and ``redis_ledger``.
"""

import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..errors import SubscriptionError

logger = structlog.get_logger()

SEND_UPDATE = "SendUpdate"


class BroadcastEvent(BaseModel):
    """
    A chaincode event as delivered to subscribers.

    ``source_topic`` is the event name the topic filter was matched
    against; ``payload`` is opaque text owned by whoever emitted it.
    """
    model_config = ConfigDict(frozen=True)

    payload: str
    source_topic: str
    block_number: int = 0
    entry_hash: str = ""
    previous_hash: Optional[str] = None
    tx_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_stream_data(self) -> dict:
        """Convert to Redis Stream compatible dict (all string values)."""
        return {
            "payload": self.payload,
            "source_topic": self.source_topic,
            "block_number": str(self.block_number),
            "entry_hash": self.entry_hash,
            "previous_hash": self.previous_hash or "",
            "tx_id": self.tx_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_stream_data(cls, data: dict) -> "BroadcastEvent":
        """Parse from Redis Stream data."""
        return cls(
            payload=data["payload"],
            source_topic=data["source_topic"],
            block_number=int(data.get("block_number", 0)),
            entry_hash=data.get("entry_hash", ""),
            previous_hash=data.get("previous_hash") or None,
            tx_id=data.get("tx_id") or str(uuid.uuid4()),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.utcnow(),
        )


def compile_topic_filter(topic_filter: str) -> re.Pattern:
    """Compile a topic filter, raising SubscriptionError if it is not a valid pattern."""
    if not topic_filter:
        raise SubscriptionError("topic filter must not be empty", topic_filter)
    try:
        return re.compile(topic_filter)
    except re.error as e:
        raise SubscriptionError(f"invalid topic filter {topic_filter!r}: {e}", topic_filter) from e


class Subscription:
    """
    Handle plus ordered event stream for one registered topic filter.

    Transports push events with ``deliver`` and end the stream with
    ``close``; the agent consumes with ``next_event``.
    """

    def __init__(self, topic_filter: str):
        self.topic_filter = topic_filter
        self.pattern = compile_topic_filter(topic_filter)
        self.subscription_id = f"sub-{uuid.uuid4().hex[:8]}"
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._error: Optional[Exception] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    def matches(self, topic: str) -> bool:
        return self.pattern.search(topic) is not None

    def deliver(self, event: BroadcastEvent) -> bool:
        """Queue ``event`` if the subscription is open and the topic matches."""
        if self._closed or not self.matches(event.source_topic):
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # sentinel wakes a blocked reader
        self._queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        """End the stream because the transport broke; readers get the error."""
        if self._closed:
            return
        self._error = error
        self.close()

    def pending(self) -> int:
        return self._queue.qsize()

    async def next_event(self, timeout: Optional[float] = None) -> Optional[BroadcastEvent]:
        """
        Wait for the next event in delivery order.

        Returns None once the stream is closed and drained. Raises
        asyncio.TimeoutError if ``timeout`` elapses first, and
        SubscriptionError if the transport failed the stream.
        """
        if self._closed and self._queue.empty():
            return self._end_of_stream()
        if timeout is None:
            event = await self._queue.get()
        else:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        if event is None:
            # keep the sentinel for any later reader
            self._queue.put_nowait(None)
            return self._end_of_stream()
        return event

    def _end_of_stream(self) -> None:
        if self._error is not None:
            raise SubscriptionError(
                f"event stream for {self.topic_filter!r} failed: {self._error}",
                self.topic_filter,
            ) from self._error
        return None

    def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        return self

    async def __anext__(self) -> BroadcastEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class BroadcastTransport(ABC):
    """Abstract ledger transport used by the dispatch agent."""

    @abstractmethod
    async def subscribe(self, topic_filter: str) -> Subscription:
        """Register interest in events whose name matches ``topic_filter``."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Release a subscription. Must be safe to call more than once."""

    @abstractmethod
    async def broadcast(self, function_name: str, args: Sequence[str]) -> bytes:
        """Submit a named update; raises BroadcastError on failure."""

    @asynccontextmanager
    async def subscription(self, topic_filter: str) -> AsyncIterator[Subscription]:
        """Subscribe for the duration of the block, releasing on every exit path."""
        sub = await self.subscribe(topic_filter)
        try:
            yield sub
        finally:
            await self.unsubscribe(sub)
            logger.debug(
                "transport.subscription_released",
                subscription_id=sub.subscription_id,
                topic_filter=topic_filter,
            )
