"""
Line-oriented operator prompt.

Answers are compared after stripping the trailing newline and surrounding
whitespace. ``exit`` at any prompt abandons the application.
"""

from typing import Callable, Optional

import structlog
from rich.console import Console

from ..errors import OperatorAbort

logger = structlog.get_logger()

YES_ANSWERS = frozenset({"Y", "y", "Yes", "yes"})
NO_ANSWERS = frozenset({"N", "n", "No", "no"})
EXIT_ANSWERS = frozenset({"Exit", "exit", "EXIT"})


def is_yes(answer: str) -> bool:
    return answer in YES_ANSWERS


def is_no(answer: str) -> bool:
    return answer in NO_ANSWERS


def is_exit(answer: str) -> bool:
    return answer in EXIT_ANSWERS


class OperatorPrompt:
    """
    Yes/no questions for the person running the agent.

    Args:
        console: Rich console to prompt on (default: a new Console)
        read_line: Replacement for console input, mainly for tests
        max_attempts: Re-prompts before giving up; None = ask forever
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        read_line: Optional[Callable[[str], str]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.console = console or Console()
        self._read_line = read_line or self.console.input
        self.max_attempts = max_attempts

    def read_answer(self, prompt: str) -> str:
        """Read one normalized line; raises OperatorAbort on exit."""
        try:
            answer = self._read_line(prompt)
        except EOFError as e:
            raise OperatorAbort("input closed") from e
        answer = answer.replace("\n", "").strip()
        if is_exit(answer):
            logger.info("operator.exit_requested")
            raise OperatorAbort("operator requested exit")
        return answer

    def confirm(self, question: str) -> bool:
        """Ask until the answer is yes or no."""
        attempts = 0
        while True:
            answer = self.read_answer(f"-> {question} [y/n] ")
            if is_yes(answer):
                return True
            if is_no(answer):
                return False
            attempts += 1
            logger.debug("operator.unrecognized_answer", answer=answer, attempts=attempts)
            if self.max_attempts is not None and attempts >= self.max_attempts:
                raise OperatorAbort(f"no valid answer after {attempts} attempts")
            self.console.print("Wrong input")
