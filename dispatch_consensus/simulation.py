"""
Local multi-agent dispatch session.

Runs several agents in one event loop over a shared InMemoryLedger. Agent
``i`` listens to the events of agent ``i + 1`` (a ring), which for two
agents is the usual pairwise exchange.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from .agents.dispatch_agent import DispatchAgent, SessionReport
from .config import AgentSettings
from .consensus.updater import EconomicModel
from .infrastructure.chaincode import event_name_for
from .infrastructure.memory_ledger import InMemoryLedger, LedgerGateway
from .infrastructure.transport import SEND_UPDATE, Subscription

logger = structlog.get_logger()


@dataclass
class SimulationConfig:
    """Configuration for a local multi-agent session."""
    initial_generations: Sequence[float] = (0.0, 5.0)
    org_prefix: str = "Org"
    receive_timeout: float = 2.0
    max_iterations: int = 1000
    model: EconomicModel = field(default_factory=EconomicModel)


@dataclass
class SimulationResult:
    reports: list[SessionReport]
    ledger_height: int
    chain_valid: bool

    @property
    def all_converged(self) -> bool:
        return all(r.converged for r in self.reports)


def ring_settings(config: SimulationConfig) -> list[AgentSettings]:
    """One AgentSettings per agent, each subscribed to its ring successor."""
    count = len(config.initial_generations)
    if count < 2:
        raise ValueError("a dispatch session needs at least two agents")

    orgs = [f"{config.org_prefix}{i + 1}" for i in range(count)]
    settings = []
    for i, generation in enumerate(config.initial_generations):
        peer = orgs[(i + 1) % count]
        settings.append(
            AgentSettings(
                agent_id=orgs[i],
                topic_filter=f"^{event_name_for(peer, SEND_UPDATE)}$",
                slope=config.model.slope,
                capacity=config.model.capacity,
                initial_generation=generation,
                mismatch_tolerance=config.model.mismatch_tolerance,
                price_tolerance=config.model.price_tolerance,
                min_step_size=config.model.min_step_size,
                receive_timeout=config.receive_timeout,
                max_iterations=config.max_iterations,
            )
        )
    return settings


async def run_simulation(
    config: Optional[SimulationConfig] = None,
    ledger: Optional[InMemoryLedger] = None,
) -> SimulationResult:
    """
    Run every agent to a terminal outcome.

    All agents subscribe before any of them publishes its initial update,
    so no opening broadcast is missed.
    """
    config = config or SimulationConfig()
    ledger = ledger or InMemoryLedger()

    all_settings = ring_settings(config)
    ready = _SubscribeBarrier(len(all_settings))
    agents = [
        DispatchAgent(
            _SynchronizedGateway(ledger, s.agent_id, ready),
            settings=s,
            model=config.model,
            auto_confirm=True,
        )
        for s in all_settings
    ]
    logger.info("simulation.started", agents=[a.agent_id for a in agents])

    tasks = [asyncio.create_task(agent.run()) for agent in agents]
    try:
        reports = await asyncio.gather(*tasks)
    finally:
        # one agent failing must not leave the others blocked on the ledger
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        ledger.close()

    result = SimulationResult(
        reports=list(reports),
        ledger_height=ledger.height,
        chain_valid=ledger.verify_chain(),
    )
    logger.info(
        "simulation.finished",
        converged=result.all_converged,
        ledger_height=result.ledger_height,
        chain_valid=result.chain_valid,
    )
    return result


class _SubscribeBarrier:
    """Releases waiters once ``parties`` subscriptions exist."""

    def __init__(self, parties: int):
        self.parties = parties
        self._arrived = 0
        self._ready = asyncio.Event()

    async def arrive(self) -> None:
        self._arrived += 1
        if self._arrived >= self.parties:
            self._ready.set()
        await self._ready.wait()


class _SynchronizedGateway(LedgerGateway):
    """Gateway whose subscribe() returns only when every agent has subscribed."""

    def __init__(self, ledger: InMemoryLedger, org: str, barrier: _SubscribeBarrier):
        super().__init__(ledger, org)
        self.barrier = barrier

    async def subscribe(self, topic_filter: str) -> Subscription:
        sub = await super().subscribe(topic_filter)
        await self.barrier.arrive()
        return sub
