"""
In-process hash-chained ledger.

Backs the local multi-agent simulation and the test-suite. Every submitted
transaction becomes one entry in a single totally ordered chain and is
fanned out to every open subscription whose topic filter matches.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import structlog

from ..errors import BroadcastError, SubscriptionError
from .chaincode import compute_entry_hash, invoke
from .transport import BroadcastEvent, BroadcastTransport, Subscription

logger = structlog.get_logger()


@dataclass
class LedgerEntry:
    """A single ledger entry (immutable record)."""
    block_number: int
    tx_id: str
    submitted_by: str
    function_name: str
    args: tuple[str, ...]
    source_topic: str
    payload: str
    entry_hash: str
    previous_hash: Optional[str]
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_event(self) -> BroadcastEvent:
        return BroadcastEvent(
            payload=self.payload,
            source_topic=self.source_topic,
            block_number=self.block_number,
            entry_hash=self.entry_hash,
            previous_hash=self.previous_hash,
            tx_id=self.tx_id,
            timestamp=self.created_at,
        )


class InMemoryLedger:
    """
    Shared ledger for agents running in one process.

    Agents do not use the ledger directly; each connects through
    ``gateway(org)`` which submits transactions under that org's identity.

    Args:
        fail_after: Number of successful submissions after which every
            further submission raises BroadcastError (fault injection)
    """

    def __init__(self, fail_after: Optional[int] = None):
        self.fail_after = fail_after
        self._entries: list[LedgerEntry] = []
        self._subscriptions: dict[str, Subscription] = {}
        self._rounds: dict[str, int] = defaultdict(int)
        self._closed = False

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    @property
    def height(self) -> int:
        return len(self._entries)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def gateway(self, org: str) -> "LedgerGateway":
        return LedgerGateway(self, org)

    def submit(self, org: str, function_name: str, args: Sequence[str]) -> LedgerEntry:
        """Append a transaction and notify matching subscribers."""
        if self._closed:
            raise BroadcastError("ledger is closed", function_name)
        if self.fail_after is not None and len(self._entries) >= self.fail_after:
            raise BroadcastError(
                f"endorsement failed for {function_name} after {self.fail_after} transactions",
                function_name,
            )

        source_topic, payload = invoke(org, function_name, args, self._rounds[org])
        self._rounds[org] += 1

        previous_hash = self._entries[-1].entry_hash if self._entries else None
        block_number = len(self._entries)
        tx_id = uuid.uuid4().hex
        entry = LedgerEntry(
            block_number=block_number,
            tx_id=tx_id,
            submitted_by=org,
            function_name=function_name,
            args=tuple(args),
            source_topic=source_topic,
            payload=payload,
            entry_hash=compute_entry_hash(block_number, source_topic, payload, tx_id, previous_hash),
            previous_hash=previous_hash,
        )
        self._entries.append(entry)

        event = entry.to_event()
        delivered = sum(1 for sub in list(self._subscriptions.values()) if sub.deliver(event))
        logger.debug(
            "memory_ledger.appended",
            block_number=block_number,
            source_topic=source_topic,
            delivered=delivered,
        )
        return entry

    def register(self, topic_filter: str) -> Subscription:
        if self._closed:
            raise SubscriptionError("ledger is closed", topic_filter)
        sub = Subscription(topic_filter)
        self._subscriptions[sub.subscription_id] = sub
        logger.debug(
            "memory_ledger.subscribed",
            subscription_id=sub.subscription_id,
            topic_filter=topic_filter,
        )
        return sub

    def unregister(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)
        subscription.close()

    def verify_chain(self) -> bool:
        """Recompute every hash; False if any entry was altered or unlinked."""
        previous_hash = None
        for index, entry in enumerate(self._entries):
            if entry.block_number != index or entry.previous_hash != previous_hash:
                return False
            expected = compute_entry_hash(
                entry.block_number,
                entry.source_topic,
                entry.payload,
                entry.tx_id,
                entry.previous_hash,
            )
            if expected != entry.entry_hash:
                return False
            previous_hash = entry.entry_hash
        return True

    def close(self) -> None:
        """End every open stream; later submissions fail."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            sub.close()
        self._subscriptions.clear()


class LedgerGateway(BroadcastTransport):
    """BroadcastTransport bound to one org on an InMemoryLedger."""

    def __init__(self, ledger: InMemoryLedger, org: str):
        self.ledger = ledger
        self.org = org

    async def subscribe(self, topic_filter: str) -> Subscription:
        return self.ledger.register(topic_filter)

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.ledger.unregister(subscription)

    async def broadcast(self, function_name: str, args: Sequence[str]) -> bytes:
        entry = self.ledger.submit(self.org, function_name, args)
        return entry.tx_id.encode("utf-8")
