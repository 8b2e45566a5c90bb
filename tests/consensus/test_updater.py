"""Tests for the consensus update rule."""

import pytest

from dispatch_consensus.consensus.updater import (
    DEFAULT_MODEL,
    EconomicModel,
    UpdateResult,
    consensus_update,
    step_size,
)


class TestStepSize:
    """Tests for the diminishing step size."""

    def test_first_iteration_is_full_step(self):
        assert step_size(1) == 1.0

    def test_diminishes_with_iteration(self):
        assert step_size(4) == pytest.approx(0.25)
        assert step_size(50) == pytest.approx(0.02)

    @pytest.mark.parametrize("iteration", [100, 101, 250, 10_000, 10**9])
    def test_floor_applies_from_iteration_100(self, iteration):
        """Step size is exactly the floor once 1/k drops to it."""
        assert step_size(iteration) == 0.01

    def test_custom_floor(self):
        model = EconomicModel(min_step_size=0.1)
        assert step_size(5, model) == pytest.approx(0.2)
        assert step_size(20, model) == 0.1

    def test_iteration_zero_rejected(self):
        with pytest.raises(ValueError, match="iteration"):
            step_size(0)


class TestConsensusUpdate:
    """Tests for consensus_update."""

    def test_first_iteration_scenario(self):
        """Zero start meeting a peer at price 1.6."""
        result = consensus_update(
            local_price=0.0,
            peer_price=1.6,
            local_mismatch=0.0,
            peer_mismatch=0.0,
            generation=0.0,
            iteration=1,
        )

        assert isinstance(result, UpdateResult)
        assert result.price == pytest.approx(0.8)
        assert result.generation == pytest.approx(0.5)
        assert result.mismatch == pytest.approx(-0.5)
        assert result.terminate is False

    def test_symmetric_equal_start_converges_immediately(self):
        """Two agents already agreeing with zero mismatch stop on round one."""
        price = 4.9
        generation = price / DEFAULT_MODEL.slope

        result = consensus_update(price, price, 0.0, 0.0, generation, 1)

        assert result.terminate is True
        assert result.price == pytest.approx(price)
        assert result.mismatch == pytest.approx(0.0)

    def test_zero_start_converges_immediately(self):
        result = consensus_update(0.0, 0.0, 0.0, 0.0, 0.0, 1)
        assert result == UpdateResult(0.0, 0.0, 0.0, True)

    def test_mismatch_drives_price(self):
        """Local mismatch enters the price with the step size as weight."""
        result = consensus_update(2.0, 2.0, 1.0, 0.0, 1.25, 2)
        # 0.5*2 + 0.5*2 + 0.5*1
        assert result.price == pytest.approx(2.5)

    @pytest.mark.parametrize(
        "local_price,peer_price,local_mismatch",
        [
            (1e9, 1e9, 1e9),
            (-1e9, -1e9, -1e9),
            (100.0, 50.0, 3.0),
            (-5.0, -3.0, 0.0),
            (0.0, 0.0, -1e6),
        ],
    )
    def test_generation_stays_within_capacity(self, local_price, peer_price, local_mismatch):
        result = consensus_update(local_price, peer_price, local_mismatch, 0.0, 4.0, 1)
        assert 0.0 <= result.generation <= 8.0

    def test_generation_clamped_to_capacity(self):
        result = consensus_update(100.0, 100.0, 0.0, 0.0, 8.0, 3)
        assert result.generation == 8.0

    def test_generation_clamped_to_zero(self):
        result = consensus_update(-10.0, -10.0, 0.0, 0.0, 0.0, 3)
        assert result.generation == 0.0

    def test_both_conditions_needed_to_terminate(self):
        """A mismatch zero-crossing alone is not convergence."""
        # price jumps by 1.0 while mismatch lands on zero
        result = consensus_update(0.0, 2.0, 0.0, 1.25, 0.0, 1)
        assert abs(result.mismatch) < 0.01
        assert result.terminate is False

    def test_termination_is_idempotent(self):
        """Feeding a terminating result back with the same peer values terminates again."""
        peer_price, peer_mismatch = 4.0, 0.004
        generation = 2.5
        local_price, local_mismatch = 4.0, 0.0

        first = consensus_update(local_price, peer_price, local_mismatch, peer_mismatch, generation, 120)
        assert first.terminate is True

        second = consensus_update(
            first.price, peer_price, first.mismatch, peer_mismatch, first.generation, 121
        )
        assert second.terminate is True

    def test_deterministic(self):
        args = (1.3, 2.7, 0.4, -0.2, 1.1, 7)
        assert consensus_update(*args) == consensus_update(*args)

    def test_custom_model(self):
        model = EconomicModel(slope=2.0, capacity=3.0)
        result = consensus_update(0.0, 4.0, 0.0, 0.0, 0.0, 1, model=model)
        assert result.price == pytest.approx(2.0)
        assert result.generation == pytest.approx(1.0)
        assert result.mismatch == pytest.approx(-1.0)


class TestEconomicModel:
    """Tests for EconomicModel validation."""

    def test_defaults(self):
        model = EconomicModel()
        assert model.slope == 1.6
        assert model.capacity == 8.0
        assert model.mismatch_tolerance == 0.01
        assert model.price_tolerance == 0.01
        assert model.min_step_size == 0.01

    def test_price_for_generation(self):
        assert DEFAULT_MODEL.price_for(0.0) == 0.0
        assert DEFAULT_MODEL.price_for(5.0) == pytest.approx(8.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"slope": 0.0},
            {"slope": -1.6},
            {"capacity": -1.0},
            {"mismatch_tolerance": 0.0},
            {"price_tolerance": -0.01},
            {"min_step_size": 0.0},
            {"min_step_size": 1.5},
            {"averaging_weight": 1.0},
        ],
    )
    def test_invalid_parameters_rejected(self, kwargs):
        with pytest.raises(ValueError):
            EconomicModel(**kwargs)
