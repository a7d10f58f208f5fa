"""Workflow stages and the contract for the agents that run them.

The workflow is a fixed sequence:

    analysis -> implementation -> review -> fixes

Only implementation is critical: when it fails the operator may retry or
abort, never skip. The other stages can be skipped and the workflow moves on.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import PipelineStage
from .models import RepositoryConfig, Task


@dataclass(frozen=True)
class StageConfig:
    """Static description of one workflow stage."""
    name: str
    display_name: str
    pipeline_stage: PipelineStage
    critical: bool = False

    @property
    def skippable(self) -> bool:
        return not self.critical


STAGE_CONFIGS: dict[str, StageConfig] = {
    "analysis": StageConfig("analysis", "AI Analysis", "analyzing"),
    "implementation": StageConfig("implementation", "Implementation", "implementing", critical=True),
    "review": StageConfig("review", "Code Review", "codex_reviewing"),
    "fixes": StageConfig("fixes", "Review Fixes", "claude_fixing"),
}

# Execution order
WORKFLOW_STAGES: list[str] = ["analysis", "implementation", "review", "fixes"]


def get_stage_config(name: str) -> StageConfig:
    try:
        return STAGE_CONFIGS[name]
    except KeyError:
        raise ValueError(
            f"Unknown stage '{name}' (expected one of: {', '.join(WORKFLOW_STAGES)})"
        ) from None


@dataclass
class StageResult:
    """What an AgentRunner reports back for one attempt."""
    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "StageResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, **data: Any) -> "StageResult":
        return cls(success=False, error=error, data=data)


@dataclass
class StageContext:
    """Everything a stage runner needs to do its work."""
    task: Task
    repo_config: RepositoryConfig
    attempt: int = 1
    analysis: dict[str, Any] | None = None  # Output of the analysis stage, if it ran
    rerun: bool = False
    previous: dict[str, StageResult] = field(default_factory=dict)

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def branch(self) -> str:
        return f"task-{self.task.id}"


class AgentRunner(Protocol):
    """Executes one stage for a task. Blocks until the external agent finishes."""

    def run(self, context: StageContext) -> StageResult:
        ...
