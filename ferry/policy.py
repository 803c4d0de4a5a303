"""What to do when a document fails, and the prompts that ask the operator."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional

from .errors import (
    AbortRequested,
    ErrorCategory,
    ErrorRecord,
    ErrorTracker,
    NonInteractiveAbort,
)

logger = logging.getLogger(__name__)

InputFunc = Callable[[str], str]


class PolicyAction(str, Enum):
    CONTINUE = "continue"
    RETRY = "retry"


_ANSWERS = {
    "c": PolicyAction.CONTINUE,
    "continue": PolicyAction.CONTINUE,
    "r": PolicyAction.RETRY,
    "retry": PolicyAction.RETRY,
}


class ErrorPolicy:
    """Decides whether a run goes on after a document fails.

    Failures are logged and counted. Below the tracker thresholds the run
    simply moves to the next document. Once a threshold is reached an
    interactive run asks the operator, while a non-interactive run stops.
    """

    def __init__(self, *, interactive: bool, input_func: InputFunc = input) -> None:
        self.interactive = interactive
        self.input_func = input_func
        self.records: List[ErrorRecord] = []
        self.tracker = ErrorTracker()

    def record_success(self) -> None:
        self.tracker.reset_consecutive()

    def handle_error(
        self,
        category: ErrorCategory,
        message: str,
        details: Optional[str] = None,
    ) -> PolicyAction:
        self.records.append(ErrorRecord(category=category, message=message, details=details))
        consecutive, total, threshold = self.tracker.register(category)
        logger.error(message)

        if not threshold:
            return PolicyAction.CONTINUE

        if not self.interactive:
            raise NonInteractiveAbort(
                f"Stopping after {total} failed documents ({consecutive} in a row)."
            )

        if consecutive >= self.tracker.CONSECUTIVE_LIMIT:
            question = f"{consecutive} documents failed in a row."
        else:
            question = f"{total} documents have failed so far."
        while True:
            answer = self.input_func(
                f"{question} [c]ontinue, [r]etry the last one, or [a]bort? "
            ).strip().lower()
            if answer in _ANSWERS:
                return _ANSWERS[answer]
            if answer in {"a", "abort"}:
                raise AbortRequested("Abort requested by user.")
            print("Please answer c, r or a.")


def prompt_to_continue(prompt: str, input_func: InputFunc = input) -> bool:
    """Ask whether to process the next item.

    Empty input or "y" means yes, "n" means skip it; anything else aborts.
    """

    answer = input_func(f"{prompt} ([Y]es/[n]o/[e]xit) ").strip().lower()
    if answer in {"", "y", "yes"}:
        return True
    if answer in {"n", "no"}:
        return False
    raise AbortRequested("Abort requested by user.")
