"""
Dual-decomposition consensus update.

One call advances the local fixed-point iteration by folding in a single
peer sample: the price signal is averaged with the peer's and nudged by the
local mismatch (a subgradient step on the dual variable), generation
follows the price through the marginal-cost slope, and the mismatch tracks
the change in committed generation.
"""

from dataclasses import dataclass
from typing import NamedTuple


@dataclass(frozen=True)
class EconomicModel:
    """Parameters of the generator cost model and the stopping rule."""
    slope: float = 1.6  # marginal-cost slope, $/MWh per MW
    capacity: float = 8.0  # MW
    mismatch_tolerance: float = 0.01
    price_tolerance: float = 0.01
    min_step_size: float = 0.01
    averaging_weight: float = 0.5

    def __post_init__(self):
        if self.slope <= 0:
            raise ValueError(f"slope must be positive, got {self.slope}")
        if self.capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {self.capacity}")
        if self.mismatch_tolerance <= 0 or self.price_tolerance <= 0:
            raise ValueError("convergence tolerances must be positive")
        if not 0 < self.min_step_size <= 1:
            raise ValueError(f"min_step_size must be in (0, 1], got {self.min_step_size}")
        if not 0 < self.averaging_weight < 1:
            raise ValueError(f"averaging_weight must be in (0, 1), got {self.averaging_weight}")

    def clamp_generation(self, generation: float) -> float:
        return min(max(generation, 0.0), self.capacity)

    def price_for(self, generation: float) -> float:
        """Marginal price at which this generator produces ``generation``."""
        return self.slope * generation


DEFAULT_MODEL = EconomicModel()


class UpdateResult(NamedTuple):
    price: float
    mismatch: float
    generation: float
    terminate: bool


def step_size(iteration: int, model: EconomicModel = DEFAULT_MODEL) -> float:
    """Diminishing step ``1/k``, floored at ``model.min_step_size``."""
    if iteration < 1:
        raise ValueError(f"iteration must be >= 1, got {iteration}")
    return max(1.0 / iteration, model.min_step_size)


def consensus_update(
    local_price: float,
    peer_price: float,
    local_mismatch: float,
    peer_mismatch: float,
    generation: float,
    iteration: int,
    model: EconomicModel = DEFAULT_MODEL,
) -> UpdateResult:
    """
    Compute one round of the price/mismatch recursion.

    Args:
        local_price: This agent's current price signal
        peer_price: Price signal read from the peer broadcast
        local_mismatch: This agent's current supply/demand mismatch
        peer_mismatch: Mismatch read from the peer broadcast
        generation: Generation committed in the previous round
        iteration: Number of peer samples processed so far, including this one
        model: Cost model and stopping thresholds

    Returns:
        UpdateResult with the new price, mismatch, generation and whether
        both mismatch and price movement are inside tolerance
    """
    eta = step_size(iteration, model)
    w = model.averaging_weight

    new_price = w * local_price + (1 - w) * peer_price + eta * local_mismatch
    new_generation = model.clamp_generation(new_price / model.slope)
    new_mismatch = w * local_mismatch + (1 - w) * peer_mismatch + generation - new_generation

    terminate = (
        abs(new_mismatch) < model.mismatch_tolerance
        and abs(new_price - local_price) < model.price_tolerance
    )

    return UpdateResult(new_price, new_mismatch, new_generation, terminate)
