"""Configuration for dispatch consensus agents."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from .consensus.updater import EconomicModel


class MissingFieldPolicy(str, Enum):
    """What the agent does with an event lacking Lambda or Mismatch."""
    ZERO = "zero"  # use the 0 fallback
    SKIP = "skip"  # ignore the event
    ABORT = "abort"  # end the session with PayloadError


class AgentSettings(BaseSettings):
    """Settings for one agent in a dispatch session.

    Every field can be overridden with a ``DISPATCH_`` prefixed environment
    variable or in a ``.env`` file, e.g. ``DISPATCH_AGENT_ID=Org2``.
    """

    # Identity and topics
    agent_id: str = "Org1"
    topic_filter: str = "^Org2SendUpdate$"  # regex searched in peer event names
    ignore_own_events: bool = True

    # Ledger transport
    redis_url: str = "redis://localhost:6379"
    ledger_stream: str = "dispatch:ledger"

    # Economic model
    slope: float = Field(1.6, gt=0)
    capacity: float = Field(8.0, ge=0)
    initial_generation: float = Field(0.0, ge=0)

    # Stopping rule
    mismatch_tolerance: float = Field(0.01, gt=0)
    price_tolerance: float = Field(0.01, gt=0)
    min_step_size: float = Field(0.01, gt=0, le=1)

    # Liveness safeguards (None = wait forever / no cap)
    receive_timeout: Optional[float] = Field(None, gt=0)
    max_iterations: Optional[int] = Field(None, ge=1)

    missing_field_policy: MissingFieldPolicy = MissingFieldPolicy.ZERO

    model_config = {
        "env_prefix": "DISPATCH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def check_initial_generation(self) -> "AgentSettings":
        if self.initial_generation > self.capacity:
            raise ValueError(
                f"initial_generation {self.initial_generation} exceeds capacity {self.capacity}"
            )
        return self

    def to_economic_model(self) -> EconomicModel:
        return EconomicModel(
            slope=self.slope,
            capacity=self.capacity,
            mismatch_tolerance=self.mismatch_tolerance,
            price_tolerance=self.price_tolerance,
            min_step_size=self.min_step_size,
        )


@lru_cache
def get_agent_settings() -> AgentSettings:
    """Get cached agent settings instance."""
    return AgentSettings()
