"""Domain models for pipeline state, queues and tracking records.

Every persisted record is a dataclass with ``from_dict``/``to_dict`` so the
stores can keep plain JSON on disk and hand typed copies to callers.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from .config import TERMINAL_STATUSES, PipelineStage, PipelineStatus


def iso_timestamp(seconds: float) -> str:
    """Format epoch seconds as a UTC ISO-8601 string with millisecond precision."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat(timespec="milliseconds")


def iso_from_ms(ms: int) -> str:
    """Format epoch milliseconds as a UTC ISO-8601 string (exact inverse of iso_to_ms)."""
    return iso_timestamp(ms / 1000)


def iso_to_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds (naive means UTC)."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return round(dt.timestamp() * 1000)


def _known_kwargs(cls, data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split ``data`` into constructor kwargs for ``cls`` and leftover keys."""
    names = {f.name for f in fields(cls)}
    known = {k: v for k, v in data.items() if k in names}
    unknown = {k: v for k, v in data.items() if k not in names}
    return known, unknown


@dataclass
class Task:
    """An external work item as handed to the orchestrator."""

    id: str
    name: str = ""
    description: str = ""
    url: str | None = None
    repository: str | None = None  # Repository hint detected upstream

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a Task from a raw tracker payload (accepts title/text_content aliases)."""
        return cls(
            id=str(data["id"]),
            name=data.get("name") or data.get("title") or "",
            description=data.get("description") or data.get("text_content") or "",
            url=data.get("url"),
            repository=data.get("repository"),
        )


@dataclass
class RepositoryConfig:
    """Repository the pipeline works against."""

    owner: str
    repo: str
    path: str | None = None
    base_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StageEntry:
    """One stage the pipeline has entered. Re-entering updates this entry."""

    name: str
    stage: PipelineStage
    status: PipelineStatus
    started_at: str
    completed_at: str | None = None
    duration: int | None = None  # milliseconds
    error: str | None = None
    branch: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageEntry":
        kwargs, unknown = _known_kwargs(cls, data)
        kwargs["extra"] = {**kwargs.get("extra", {}), **unknown}
        return cls(**kwargs)

    def merge(self, result: dict[str, Any]) -> None:
        """Merge stage result fields; unknown keys land in ``extra``."""
        for key, value in result.items():
            if key == "extra" and isinstance(value, dict):
                self.extra.update(value)
            elif key in _STAGE_ENTRY_FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_STAGE_ENTRY_FIELDS = {f.name for f in fields(StageEntry)} - {"extra"}


@dataclass
class PipelineErrorRecord:
    """Append-only audit record of something that went wrong."""

    stage: str
    error: str
    timestamp: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineErrorRecord":
        return cls(stage=data["stage"], error=data["error"], timestamp=data["timestamp"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineMetadata:
    """Cross-stage artifacts. Unknown keys are kept in ``extra``."""

    repository: str | None = None
    branch: str | None = None
    branches: list[str] = field(default_factory=list)
    analysis_file: str | None = None
    analysis_fallback: bool = False
    pr_number: int | None = None
    review_iterations: int = 0
    max_review_iterations: int = 3
    agent_execution: dict[str, dict[str, Any] | None] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineMetadata":
        kwargs, unknown = _known_kwargs(cls, data)
        kwargs["extra"] = {**kwargs.get("extra", {}), **unknown}
        return cls(**kwargs)

    def merge(self, updates: dict[str, Any]) -> None:
        """Shallow merge: each key replaces the previous value wholesale."""
        for key, value in updates.items():
            if key == "extra" and isinstance(value, dict):
                self.extra.update(value)
            elif key in _METADATA_FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_METADATA_FIELDS = {f.name for f in fields(PipelineMetadata)} - {"extra"}


@dataclass
class PipelineData:
    """Full lifecycle record for one task."""

    task_id: str
    task_name: str
    current_stage: PipelineStage
    status: PipelineStatus
    created_at: str
    updated_at: str
    last_updated_at: int  # epoch ms, sole input to staleness detection
    completed_at: str | None = None
    failed_at: str | None = None
    total_duration: int | None = None  # milliseconds
    stages: list[StageEntry] = field(default_factory=list)
    metadata: PipelineMetadata = field(default_factory=PipelineMetadata)
    errors: list[PipelineErrorRecord] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineData":
        kwargs, _ = _known_kwargs(cls, data)
        kwargs["stages"] = [StageEntry.from_dict(s) for s in data.get("stages", [])]
        kwargs["metadata"] = PipelineMetadata.from_dict(data.get("metadata") or {})
        kwargs["errors"] = [PipelineErrorRecord.from_dict(e) for e in data.get("errors", [])]
        if kwargs.get("last_updated_at") is None:
            # Records written before last_updated_at existed
            kwargs["last_updated_at"] = iso_to_ms(data.get("updated_at") or data["created_at"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def find_stage(self, stage: str) -> StageEntry | None:
        for entry in self.stages:
            if entry.stage == stage:
                return entry
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class PipelineSummary:
    """Derived, read-only view of a pipeline."""

    task_id: str
    task_name: str
    current_stage: str
    status: str
    progress: int  # percent
    duration: int  # milliseconds
    review_iterations: int
    has_errors: bool


@dataclass
class QueuedTask:
    """A task parked for manual processing. Never mutated after enqueue."""

    id: str
    title: str
    description: str
    queued_at: str
    branch: str
    commit_message: str
    pr_title: str
    pr_body: str
    url: str | None = None
    repo_path: str | None = None
    owner: str | None = None
    repo: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedTask":
        kwargs, _ = _known_kwargs(cls, data)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessedTask:
    """Cache entry for a task already seen upstream. Write-once per id."""

    id: str
    title: str
    description: str
    detected_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessedTask":
        kwargs, _ = _known_kwargs(cls, data)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingEntry:
    """A PR branch started for a task, waiting for its pull request to appear."""

    task_id: str
    task_name: str
    branch: str
    started_at: str
    owner: str | None = None
    repo: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackingEntry":
        kwargs, _ = _known_kwargs(cls, data)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewEntry:
    """An active review/fix cycle on a task's pull request."""

    task_id: str
    task_name: str
    branch: str
    pr_number: int
    pr_url: str
    stage: str  # Review sub-state, independent of the pipeline's current_stage
    iteration: int
    max_iterations: int
    started_at: str
    last_commit_sha: str | None = None
    repository: str = "default"
    owner: str | None = None
    repo: str | None = None
    repo_path: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewEntry":
        kwargs, _ = _known_kwargs(cls, data)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def has_iterations_left(self) -> bool:
        return self.iteration < self.max_iterations
