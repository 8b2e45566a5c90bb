"""
Dispatch consensus agent.

Drives one participant through a consensus session:

    IDLE -> AWAITING_CONFIRMATION -> RUNNING -> TERMINATED

While RUNNING the agent is strictly sequential. It blocks on the next peer
event, folds it into local state with one consensus update, publishes the
new (lambda, mismatch) pair and only then reads the next event. A failed
publish ends the session: the next round must not be computed from a round
the peers never saw.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from ..config import AgentSettings, MissingFieldPolicy, get_agent_settings
from ..consensus.payload import extract_update, format_number
from ..consensus.updater import EconomicModel, UpdateResult, consensus_update
from ..errors import BroadcastError, OperatorAbort, PayloadError
from ..infrastructure.transport import SEND_UPDATE, BroadcastEvent, BroadcastTransport, Subscription
from .operator import OperatorPrompt

logger = structlog.get_logger()

START_QUESTION = "Solve energy management problem with consensus-based algorithm?"


class AgentPhase(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    TERMINATED = "terminated"


class SessionOutcome(str, Enum):
    """Why a session reached TERMINATED."""
    CONVERGED = "converged"
    DECLINED = "declined"
    ABANDONED = "abandoned"
    STREAM_CLOSED = "stream_closed"
    TIMED_OUT = "timed_out"
    ITERATION_LIMIT = "iteration_limit"
    ABORTED = "aborted"


@dataclass
class LocalState:
    """Generation and coordination variables owned by one agent."""
    generation: float
    price: float
    mismatch: float
    iteration: int = 0

    @classmethod
    def initial(cls, model: EconomicModel, generation: float = 0.0) -> "LocalState":
        generation = model.clamp_generation(generation)
        return cls(generation=generation, price=model.price_for(generation), mismatch=0.0)


class SessionReport(BaseModel):
    """Final figures of a session, as computed (never canned)."""
    agent_id: str
    outcome: SessionOutcome
    iterations: int
    generation: float
    price: float
    mismatch: float
    elapsed_seconds: Optional[float] = None
    broadcasts: int = 0
    skipped_events: int = 0
    unpublished: bool = False  # final state never reached the ledger

    @property
    def converged(self) -> bool:
        return self.outcome == SessionOutcome.CONVERGED

    def summary_lines(self) -> list[str]:
        if self.outcome in (SessionOutcome.DECLINED, SessionOutcome.ABANDONED):
            return [f"Solving process was not started ({self.outcome.value})."]
        lines = [
            f"Solving process ends at iteration {self.iterations} ({self.outcome.value}).",
            f"The optimal power generation is {self.generation:.4f} MW.",
            f"The electricity price is ${self.price:.4f}/MWh.",
            f"The power mismatch is {self.mismatch:.4f}.",
        ]
        if self.unpublished:
            lines.append(f"Iteration {self.iterations} was computed but never published to peers.")
        if self.elapsed_seconds is not None:
            lines.append(f"The solving is completed in {self.elapsed_seconds:.3f}s.")
        return lines


class DispatchAgent:
    """
    One participant in the price/mismatch consensus.

    Usage:
        agent = DispatchAgent(transport, settings=AgentSettings(agent_id="Org1"))
        report = await agent.run()
    """

    def __init__(
        self,
        transport: BroadcastTransport,
        settings: Optional[AgentSettings] = None,
        model: Optional[EconomicModel] = None,
        operator: Optional[OperatorPrompt] = None,
        auto_confirm: bool = False,
    ):
        """
        Initialize the agent.

        Args:
            transport: Ledger transport to publish on and subscribe to
            settings: Agent settings (default: from environment)
            model: Economic model (default: built from settings)
            operator: Prompt used for the start confirmation
            auto_confirm: Start without asking the operator
        """
        self.transport = transport
        self.settings = settings or get_agent_settings()
        self.model = model or self.settings.to_economic_model()
        self.operator = operator
        self.auto_confirm = auto_confirm

        self._phase = AgentPhase.IDLE
        self._state = LocalState.initial(self.model, self.settings.initial_generation)
        self._started_at: Optional[float] = None
        self._broadcasts = 0
        self._skipped = 0
        self._published_iteration: Optional[int] = None
        self._report: Optional[SessionReport] = None
        self._log = logger.bind(agent_id=self.settings.agent_id)

    @property
    def agent_id(self) -> str:
        return self.settings.agent_id

    @property
    def phase(self) -> AgentPhase:
        return self._phase

    @property
    def state(self) -> LocalState:
        return self._state

    @property
    def report(self) -> Optional[SessionReport]:
        return self._report

    async def run(self) -> SessionReport:
        """
        Run one session to a terminal outcome.

        Raises:
            RuntimeError: the agent already ran
            TransportError: subscribe/publish failed (session aborted)
            PayloadError: missing field under the abort policy
        """
        if self._phase != AgentPhase.IDLE:
            raise RuntimeError(f"agent {self.agent_id} already ran (phase {self._phase.value})")

        self._phase = AgentPhase.AWAITING_CONFIRMATION
        try:
            confirmed = await self._confirm_start()
        except OperatorAbort:
            return self._finish(SessionOutcome.ABANDONED)
        if not confirmed:
            return self._finish(SessionOutcome.DECLINED)

        self._phase = AgentPhase.RUNNING
        outcome = SessionOutcome.ABORTED
        try:
            async with self.transport.subscription(self.settings.topic_filter) as stream:
                self._started_at = time.monotonic()
                self._log.info("dispatch_agent.started", topic_filter=self.settings.topic_filter)
                await self._broadcast_state()
                outcome = await self._consume(stream)
        except Exception as e:
            self._log.error("dispatch_agent.aborted", error=str(e), iteration=self._state.iteration)
            raise
        finally:
            self._finish(outcome)

        return self._report

    async def _confirm_start(self) -> bool:
        if self.auto_confirm:
            return True
        operator = self.operator or OperatorPrompt()
        return await asyncio.to_thread(operator.confirm, START_QUESTION)

    async def _consume(self, stream: Subscription) -> SessionOutcome:
        max_iterations = self.settings.max_iterations
        while True:
            if max_iterations is not None and self._state.iteration >= max_iterations:
                self._log.warning("dispatch_agent.iteration_limit", max_iterations=max_iterations)
                return SessionOutcome.ITERATION_LIMIT

            try:
                event = await stream.next_event(timeout=self.settings.receive_timeout)
            except asyncio.TimeoutError:
                self._log.warning(
                    "dispatch_agent.receive_timeout",
                    timeout=self.settings.receive_timeout,
                    iteration=self._state.iteration,
                )
                return SessionOutcome.TIMED_OUT

            if event is None:
                self._log.warning("dispatch_agent.stream_closed", iteration=self._state.iteration)
                return SessionOutcome.STREAM_CLOSED

            result = self.process_event(event)
            if result is None:
                continue

            await self._broadcast_state()
            if result.terminate:
                return SessionOutcome.CONVERGED

    def process_event(self, event: BroadcastEvent) -> Optional[UpdateResult]:
        """
        Fold one peer event into local state.

        Returns the update result, or None when the event was skipped.
        """
        update = extract_update(event.payload)

        if self.settings.ignore_own_events and update.source == self.agent_id:
            self._skipped += 1
            return None

        if update.missing:
            self._log.warning(
                "dispatch_agent.missing_fields",
                missing=list(update.missing),
                source_topic=event.source_topic,
                block_number=event.block_number,
                policy=self.settings.missing_field_policy.value,
            )
            if self.settings.missing_field_policy == MissingFieldPolicy.SKIP:
                self._skipped += 1
                return None
            if self.settings.missing_field_policy == MissingFieldPolicy.ABORT:
                raise PayloadError(
                    f"event {event.source_topic}#{event.block_number} lacks {', '.join(update.missing)}",
                    update.missing,
                )

        iteration = self._state.iteration + 1
        result = consensus_update(
            local_price=self._state.price,
            peer_price=update.price,
            local_mismatch=self._state.mismatch,
            peer_mismatch=update.mismatch,
            generation=self._state.generation,
            iteration=iteration,
            model=self.model,
        )
        self._state = LocalState(
            generation=result.generation,
            price=result.price,
            mismatch=result.mismatch,
            iteration=iteration,
        )
        self._log.debug(
            "dispatch_agent.updated",
            iteration=iteration,
            peer_price=update.price,
            peer_mismatch=update.mismatch,
            price=result.price,
            mismatch=result.mismatch,
            generation=result.generation,
            terminate=result.terminate,
        )
        return result

    async def _broadcast_state(self) -> None:
        args = [format_number(self._state.price), format_number(self._state.mismatch)]
        try:
            await self.transport.broadcast(SEND_UPDATE, args)
        except BroadcastError as e:
            self._log.error("dispatch_agent.broadcast_failed", error=str(e), iteration=self._state.iteration)
            raise
        self._broadcasts += 1
        self._published_iteration = self._state.iteration
        self._log.debug("dispatch_agent.broadcast", iteration=self._state.iteration, args=args)

    def _finish(self, outcome: SessionOutcome) -> SessionReport:
        self._phase = AgentPhase.TERMINATED
        elapsed = None
        unpublished = False
        if self._started_at is not None:
            elapsed = time.monotonic() - self._started_at
            unpublished = self._published_iteration != self._state.iteration
        self._report = SessionReport(
            agent_id=self.agent_id,
            outcome=outcome,
            iterations=self._state.iteration,
            generation=self._state.generation,
            price=self._state.price,
            mismatch=self._state.mismatch,
            elapsed_seconds=elapsed,
            broadcasts=self._broadcasts,
            skipped_events=self._skipped,
            unpublished=unpublished,
        )
        self._log.info(
            "dispatch_agent.terminated",
            outcome=outcome.value,
            iterations=self._state.iteration,
            generation=self._state.generation,
            price=self._state.price,
            mismatch=self._state.mismatch,
            elapsed_seconds=elapsed,
        )
        return self._report
