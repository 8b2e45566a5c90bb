"""
Dispatch agents.

- dispatch_agent: the consensus control loop and its session report
- operator: yes/no/exit prompt for the person running an agent
"""

from .dispatch_agent import AgentPhase, DispatchAgent, LocalState, SessionOutcome, SessionReport
from .operator import OperatorPrompt

__all__ = [
    "AgentPhase",
    "DispatchAgent",
    "LocalState",
    "SessionOutcome",
    "SessionReport",
    "OperatorPrompt",
]
