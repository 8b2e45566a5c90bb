"""Shared pytest fixtures and configuration."""

import pytest

from dispatch_consensus.config import AgentSettings
from dispatch_consensus.infrastructure.memory_ledger import InMemoryLedger


@pytest.fixture
def ledger():
    """Fresh in-memory ledger."""
    ledger = InMemoryLedger()
    yield ledger
    ledger.close()


@pytest.fixture
def agent_settings():
    """Settings for Org1 listening to Org2, with a short liveness timeout."""
    return AgentSettings(
        agent_id="Org1",
        topic_filter="^Org2SendUpdate$",
        receive_timeout=1.0,
        _env_file=None,
    )


@pytest.fixture
def peer_payload():
    """Payload of the peer's opening broadcast at price 1.6."""
    return "Org=Org2, Iteration=0, Lambda=1.6, Mismatch=0, end"


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as requiring external services (Redis, etc.)"
    )


def _redis_available():
    """Check if Redis is available."""
    import socket
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(('localhost', 6379))
        sock.close()
        return result == 0
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):
    """Skip integration tests if Redis is not available."""
    if _redis_available():
        return
    skip_integration = pytest.mark.skip(reason="Redis not available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
