"""Retry/skip/abort decisions for a failed stage.

The executor asks a DecisionProvider what to do every time a stage attempt
fails. Providers:

- TerminalDecisionProvider: numbered prompt for an operator at a terminal
- FixedPolicyDecisionProvider: retry N times, then skip (or abort if critical)
- AbortDecisionProvider: always abort
"""

import logging
from enum import Enum
from typing import Callable, Protocol

from .stages import StageConfig

logger = logging.getLogger(__name__)


class Decision(Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class DecisionProvider(Protocol):
    def decide(self, stage: StageConfig, error: str, attempt: int) -> Decision:
        """Choose what happens after ``attempt`` of ``stage`` failed with ``error``."""
        ...


class TerminalDecisionProvider:
    """Ask the operator on stdin.

    Skip is not offered for a critical stage; invalid answers re-ask.
    End of input counts as abort.
    """

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ):
        self._input = input_fn
        self._output = output_fn

    def decide(self, stage: StageConfig, error: str, attempt: int) -> Decision:
        out = self._output
        out("")
        out("=" * 60)
        out(f"Stage failed: {stage.display_name} (attempt {attempt})")
        out("-" * 60)
        out(f"  Error: {error}")
        out("-" * 60)
        out("What would you like to do?")
        out("  [1] Retry - Try this stage again")
        if stage.skippable:
            out("  [2] Skip  - Skip this stage and continue (stage is optional)")
        else:
            out("  [2] Skip  - Not available (stage is critical)")
        out("  [3] Abort - Stop the workflow")
        out("=" * 60)

        choices = {"1": Decision.RETRY, "3": Decision.ABORT}
        if stage.skippable:
            choices["2"] = Decision.SKIP
        prompt = f"Choose an option [{'/'.join(sorted(choices))}]: "

        while True:
            try:
                answer = self._input(prompt).strip()
            except EOFError:
                logger.warning("No operator input available, aborting %s", stage.name)
                return Decision.ABORT

            if answer in choices:
                return choices[answer]
            if answer == "2":
                out("Cannot skip a critical stage. Choose retry or abort.")
            else:
                out(f"Invalid choice '{answer}'.")


class FixedPolicyDecisionProvider:
    """Retry each failed stage ``retries`` times, then give up on it.

    Giving up means skip for an optional stage and abort for a critical one.
    """

    def __init__(self, retries: int = 2):
        self.retries = retries

    def decide(self, stage: StageConfig, error: str, attempt: int) -> Decision:
        if attempt <= self.retries:
            return Decision.RETRY
        return Decision.SKIP if stage.skippable else Decision.ABORT


class AbortDecisionProvider:
    def decide(self, stage: StageConfig, error: str, attempt: int) -> Decision:
        return Decision.ABORT
