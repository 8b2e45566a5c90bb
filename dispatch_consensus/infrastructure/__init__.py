# Ledger transports
from .transport import BroadcastEvent, BroadcastTransport, Subscription, SEND_UPDATE
from .memory_ledger import InMemoryLedger, LedgerEntry, LedgerGateway
from .redis_ledger import RedisLedger, create_redis_ledger

__all__ = [
    "BroadcastEvent",
    "BroadcastTransport",
    "Subscription",
    "SEND_UPDATE",
    "InMemoryLedger",
    "LedgerEntry",
    "LedgerGateway",
    "RedisLedger",
    "create_redis_ledger",
]
