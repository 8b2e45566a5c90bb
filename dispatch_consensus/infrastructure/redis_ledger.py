"""
Redis Streams ledger transport for agents running in separate processes.

Each submitted transaction is appended to a single stream with its hash
chain fields; the chain head (hash, height, per-org round counters) lives in
a Redis hash updated in the same MULTI/EXEC as the append, so concurrent
agents cannot fork the chain. Subscriptions run a reader task doing
blocking XREAD from the position the stream had at subscribe time.
"""

import asyncio
import os
import uuid
from typing import Optional, Sequence

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, WatchError

from ..errors import BroadcastError, LedgerConnectionError, SubscriptionError
from .chaincode import compute_entry_hash, invoke
from .transport import BroadcastEvent, BroadcastTransport, Subscription

logger = structlog.get_logger()

DEFAULT_STREAM = "dispatch:ledger"


class RedisLedger(BroadcastTransport):
    """
    Ledger transport on Redis Streams for one org.

    Supports:
    - Hash-chained appends with optimistic locking on the chain head
    - Topic-filtered subscriptions fed by background XREAD loops
    - Idempotent unsubscribe
    """

    def __init__(
        self,
        org: str,
        url: Optional[str] = None,
        stream: str = DEFAULT_STREAM,
        max_stream_length: int = 100_000,
        block_ms: int = 1000,
        max_append_attempts: int = 5,
    ):
        """
        Initialize Redis ledger.

        Args:
            org: Identity transactions are submitted under
            url: Redis connection URL (default: from REDIS_URL env var)
            stream: Stream holding the ledger entries
            max_stream_length: Approximate cap on retained entries
            block_ms: XREAD block timeout for subscription readers
            max_append_attempts: Head contention retries before giving up
        """
        self.org = org
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.stream = stream
        self.head_key = f"{stream}:head"
        self.max_stream_length = max_stream_length
        self.block_ms = block_ms
        self.max_append_attempts = max_append_attempts
        self._client: Optional[redis.Redis] = None
        self._readers: dict[str, asyncio.Task] = {}

    @property
    def client(self) -> redis.Redis:
        """Get Redis client, raising if not connected."""
        if self._client is None:
            raise RuntimeError("RedisLedger not connected. Call connect() first.")
        return self._client

    async def connect(self) -> "RedisLedger":
        """
        Connect to Redis.

        Returns:
            Self for chaining

        Raises:
            LedgerConnectionError: Redis is unreachable or rejected the ping
        """
        client = redis.from_url(self.url, decode_responses=True)
        try:
            await client.ping()
        except RedisError as e:
            await client.close()
            logger.error("redis_ledger.connect_failed", url=self.url, org=self.org, error=str(e))
            raise LedgerConnectionError(f"cannot reach ledger at {self.url}: {e}", self.url) from e
        self._client = client
        logger.info("redis_ledger.connected", url=self.url, org=self.org, stream=self.stream)
        return self

    async def disconnect(self) -> None:
        """Stop all readers and close the Redis connection."""
        for task in list(self._readers.values()):
            task.cancel()
        for task in list(self._readers.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._readers.clear()
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("redis_ledger.disconnected", org=self.org)

    async def __aenter__(self) -> "RedisLedger":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Broadcasting
    # -------------------------------------------------------------------------

    async def broadcast(self, function_name: str, args: Sequence[str]) -> bytes:
        """
        Append a transaction to the ledger stream.

        Returns:
            Transaction id as bytes

        Raises:
            BroadcastError: chaincode rejection, Redis failure, or the chain
                head kept changing for ``max_append_attempts`` tries
        """
        round_key = f"round:{self.org}"
        try:
            for attempt in range(1, self.max_append_attempts + 1):
                async with self.client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(self.head_key)
                        head = await pipe.hgetall(self.head_key)

                        previous_hash = head.get("hash") or None
                        block_number = int(head.get("height", 0))
                        round_number = int(head.get(round_key, 0))

                        source_topic, payload = invoke(self.org, function_name, args, round_number)
                        tx_id = uuid.uuid4().hex
                        entry_hash = compute_entry_hash(
                            block_number, source_topic, payload, tx_id, previous_hash
                        )
                        event = BroadcastEvent(
                            payload=payload,
                            source_topic=source_topic,
                            block_number=block_number,
                            entry_hash=entry_hash,
                            previous_hash=previous_hash,
                            tx_id=tx_id,
                        )

                        pipe.multi()
                        pipe.xadd(
                            self.stream,
                            event.to_stream_data(),
                            maxlen=self.max_stream_length,
                            approximate=True,
                        )
                        pipe.hset(
                            self.head_key,
                            mapping={
                                "hash": entry_hash,
                                "height": block_number + 1,
                                round_key: round_number + 1,
                            },
                        )
                        await pipe.execute()
                    except WatchError:
                        logger.debug(
                            "redis_ledger.head_contention",
                            org=self.org,
                            attempt=attempt,
                        )
                        continue

                logger.debug(
                    "redis_ledger.appended",
                    org=self.org,
                    block_number=block_number,
                    source_topic=source_topic,
                )
                return tx_id.encode("utf-8")
        except RedisError as e:
            raise BroadcastError(f"failed to submit {function_name}: {e}", function_name) from e

        raise BroadcastError(
            f"chain head contention persisted for {self.max_append_attempts} attempts",
            function_name,
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, topic_filter: str) -> Subscription:
        """
        Register a subscription starting after the current last entry.

        Raises:
            SubscriptionError: invalid filter or Redis failure
        """
        sub = Subscription(topic_filter)
        try:
            last = await self.client.xrevrange(self.stream, count=1)
        except RedisError as e:
            raise SubscriptionError(f"failed to read stream position: {e}", topic_filter) from e
        start_id = last[0][0] if last else "0-0"

        self._readers[sub.subscription_id] = asyncio.create_task(self._read_loop(sub, start_id))
        logger.info(
            "redis_ledger.subscribed",
            org=self.org,
            subscription_id=sub.subscription_id,
            topic_filter=topic_filter,
            start_id=start_id,
        )
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        task = self._readers.pop(subscription.subscription_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info(
                "redis_ledger.unsubscribed",
                org=self.org,
                subscription_id=subscription.subscription_id,
            )
        subscription.close()

    async def _read_loop(self, sub: Subscription, last_id: str) -> None:
        while not sub.closed:
            try:
                messages = await self.client.xread(
                    {self.stream: last_id},
                    count=100,
                    block=self.block_ms,
                )
            except RedisError as e:
                logger.error(
                    "redis_ledger.read_failed",
                    subscription_id=sub.subscription_id,
                    error=str(e),
                )
                sub.fail(e)
                return

            for _stream_name, stream_messages in messages or []:
                for msg_id, data in stream_messages:
                    last_id = msg_id
                    try:
                        event = BroadcastEvent.from_stream_data(data)
                    except (KeyError, ValueError) as e:
                        logger.error(
                            "redis_ledger.parse_error",
                            message_id=msg_id,
                            error=str(e),
                        )
                        continue
                    sub.deliver(event)

    async def verify_chain(self) -> bool:
        """
        Walk the retained stream and recompute every entry hash.

        Trimmed history is not checked; the first retained entry anchors
        the walk.

        Raises:
            LedgerConnectionError: the stream could not be read
        """
        try:
            entries = await self.client.xrange(self.stream)
        except RedisError as e:
            raise LedgerConnectionError(f"failed to read {self.stream}: {e}", self.url) from e
        if not entries:
            return True
        first = BroadcastEvent.from_stream_data(entries[0][1])
        previous_hash = first.previous_hash
        for offset, (_msg_id, data) in enumerate(entries):
            event = BroadcastEvent.from_stream_data(data)
            if event.block_number != first.block_number + offset or event.previous_hash != previous_hash:
                return False
            expected = compute_entry_hash(
                event.block_number,
                event.source_topic,
                event.payload,
                event.tx_id,
                event.previous_hash,
            )
            if expected != event.entry_hash:
                return False
            previous_hash = event.entry_hash
        return True


async def create_redis_ledger(
    org: str,
    url: Optional[str] = None,
    stream: str = DEFAULT_STREAM,
) -> RedisLedger:
    """Create and connect a Redis ledger transport."""
    ledger = RedisLedger(org=org, url=url, stream=stream)
    await ledger.connect()
    return ledger
