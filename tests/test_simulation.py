"""Tests for the in-process multi-agent session."""

import pytest

from dispatch_consensus.agents.dispatch_agent import SessionOutcome
from dispatch_consensus.errors import BroadcastError
from dispatch_consensus.infrastructure.memory_ledger import InMemoryLedger
from dispatch_consensus.simulation import SimulationConfig, ring_settings, run_simulation

TERMINAL = {
    SessionOutcome.CONVERGED,
    SessionOutcome.TIMED_OUT,
    SessionOutcome.STREAM_CLOSED,
    SessionOutcome.ITERATION_LIMIT,
}


class TestRingSettings:

    def test_two_agents_listen_to_each_other(self):
        first, second = ring_settings(SimulationConfig(initial_generations=(0.0, 5.0)))

        assert first.agent_id == "Org1"
        assert first.topic_filter == "^Org2SendUpdate$"
        assert second.agent_id == "Org2"
        assert second.topic_filter == "^Org1SendUpdate$"
        assert second.initial_generation == 5.0

    def test_ring_of_three(self):
        settings = ring_settings(SimulationConfig(initial_generations=(0.0, 1.0, 2.0), org_prefix="Plant"))
        assert [s.topic_filter for s in settings] == [
            "^Plant2SendUpdate$",
            "^Plant3SendUpdate$",
            "^Plant1SendUpdate$",
        ]

    @pytest.mark.parametrize("generations", [(), (1.0,)])
    def test_needs_two_agents(self, generations):
        with pytest.raises(ValueError, match="at least two"):
            ring_settings(SimulationConfig(initial_generations=generations))


class TestRunSimulation:

    @pytest.mark.asyncio
    async def test_agreeing_agents_converge_in_one_round(self):
        ledger = InMemoryLedger()
        result = await run_simulation(
            SimulationConfig(initial_generations=(0.0, 0.0), receive_timeout=0.5),
            ledger=ledger,
        )

        assert result.all_converged
        assert [r.iterations for r in result.reports] == [1, 1]
        # initial plus final update from each agent
        assert result.ledger_height == 4
        assert result.chain_valid
        assert ledger.subscription_count == 0

    @pytest.mark.asyncio
    async def test_ring_of_three_agreeing_agents(self):
        result = await run_simulation(
            SimulationConfig(initial_generations=(0.0, 0.0, 0.0), receive_timeout=0.5)
        )

        assert result.all_converged
        assert result.ledger_height == 6

    @pytest.mark.asyncio
    async def test_default_session_terminates(self):
        result = await run_simulation(
            SimulationConfig(receive_timeout=0.2, max_iterations=500)
        )

        assert len(result.reports) == 2
        for report in result.reports:
            assert report.outcome in TERMINAL
            assert 0.0 <= report.generation <= 8.0
            assert report.iterations <= 500
        assert result.ledger_height > 2
        assert result.chain_valid

    @pytest.mark.asyncio
    async def test_broadcast_failure_propagates(self):
        ledger = InMemoryLedger(fail_after=1)
        with pytest.raises(BroadcastError):
            await run_simulation(SimulationConfig(receive_timeout=0.2), ledger=ledger)
