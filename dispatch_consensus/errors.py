"""
Exception hierarchy for the dispatch consensus agent.

Transport failures are fatal for a session: the dual-variable recursion
cannot resume without a confirmed publish. Payload problems are local and
only surface as exceptions under the ``abort`` missing-field policy.
"""

from typing import Optional


class DispatchError(Exception):
    """Base class for all agent errors."""


class TransportError(DispatchError):
    """The broadcast transport failed."""


class SubscriptionError(TransportError):
    """Registering or releasing an event subscription failed."""

    def __init__(self, message: str, topic_filter: Optional[str] = None):
        super().__init__(message)
        self.topic_filter = topic_filter


class BroadcastError(TransportError):
    """Submitting an update to the ledger failed."""

    def __init__(self, message: str, function_name: Optional[str] = None):
        super().__init__(message)
        self.function_name = function_name


class PayloadError(DispatchError):
    """A broadcast payload lacked a required field."""

    def __init__(self, message: str, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class OperatorAbort(DispatchError):
    """The operator asked to leave the application."""


class LedgerConnectionError(TransportError):
    """The ledger backend could not be reached."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url
