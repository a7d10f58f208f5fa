"""Configuration loading and constants for taskrelay."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml

from .errors import RepoConfigError


# ---------------------------------------------------------------------------
# Pipeline vocabulary
# ---------------------------------------------------------------------------

PipelineStage = Literal[
    "detected",
    "analyzing",
    "analyzed",
    "implementing",
    "implemented",
    "codex_reviewing",
    "codex_reviewed",
    "claude_fixing",
    "claude_fixed",
    "merging",
    "merged",
    "pr_creating",
    "completed",
    "failed",
]

# Canonical order; later stages never precede earlier ones in a normal run
PIPELINE_STAGES: list[PipelineStage] = [
    "detected",
    "analyzing",
    "analyzed",
    "implementing",
    "implemented",
    "codex_reviewing",
    "codex_reviewed",
    "claude_fixing",
    "claude_fixed",
    "merging",
    "merged",
    "pr_creating",
    "completed",
    "failed",
]

PipelineStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]

TERMINAL_STATUSES: list[PipelineStatus] = ["completed", "failed"]

# Denominator for progress reporting
TOTAL_PROGRESS_STAGES = 10


# ---------------------------------------------------------------------------
# Defaults (overridable in config.yaml)
# ---------------------------------------------------------------------------

DEFAULT_PIPELINE_CONFIG = {
    "stale_timeout_minutes": 30,
    "max_stage_attempts": 5,
    "max_review_iterations": 3,
    "skip_stages": [],
    "cleanup_days": 7,
}

DEFAULT_NOTIFICATIONS_CONFIG = {
    "webhook_url": None,
    "timeout_seconds": 10,
}

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0

STATE_DIR_NAME = ".taskrelay"


def find_project_root(start: Path | None = None) -> Path:
    """Find the project root by walking up from ``start`` to find .git.

    Falls back to ``start`` (or the current directory) when no repository is found.
    """
    origin = (start or Path.cwd()).resolve()
    current = origin

    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent

    return origin


def get_state_dir() -> Path:
    """Get the .taskrelay directory.

    Can be overridden via TASKRELAY_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("TASKRELAY_DIR")
    if env_override:
        return Path(env_override)
    return find_project_root() / STATE_DIR_NAME


def get_config_path() -> Path:
    """Get path to config.yaml."""
    return get_state_dir() / "config.yaml"


def get_pipeline_path() -> Path:
    return get_state_dir() / "state" / "pipeline-state.json"


def get_queue_path() -> Path:
    return get_state_dir() / "state" / "task-queue.json"


def get_cache_path() -> Path:
    return get_state_dir() / "cache" / "processed-tasks.json"


def get_processed_comments_path() -> Path:
    return get_state_dir() / "cache" / "processed-comments.json"


def get_pr_tracking_path() -> Path:
    return get_state_dir() / "tracking" / "pr-tracking.json"


def get_review_tracking_path() -> Path:
    return get_state_dir() / "tracking" / "review-tracking.json"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_state_dir() / "logs"


def get_task_logs_dir() -> Path:
    """Get the per-task audit log directory, creating it if needed."""
    logs_dir = get_logs_dir() / "tasks"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def load_config() -> dict[str, Any]:
    """Load config.yaml. A missing file means all defaults."""
    config_path = get_config_path()

    if not config_path.exists():
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(config).__name__}")

    return config


def get_pipeline_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Get pipeline settings merged over the defaults."""
    if config is None:
        config = load_config()
    result = DEFAULT_PIPELINE_CONFIG.copy()
    result.update(config.get("pipeline") or {})
    return result


def get_notifications_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Get notification settings merged over the defaults."""
    if config is None:
        config = load_config()
    result = DEFAULT_NOTIFICATIONS_CONFIG.copy()
    result.update(config.get("notifications") or {})
    return result


def get_stale_timeout_ms(config: dict[str, Any] | None = None) -> int:
    """Inactivity threshold after which an in-progress pipeline counts as stale."""
    minutes = get_pipeline_config(config)["stale_timeout_minutes"]
    return int(float(minutes) * 60 * 1000)


def get_max_stage_attempts(config: dict[str, Any] | None = None) -> int:
    return int(get_pipeline_config(config)["max_stage_attempts"])


def get_max_review_iterations(config: dict[str, Any] | None = None) -> int:
    return int(get_pipeline_config(config)["max_review_iterations"])


def get_skip_stages(config: dict[str, Any] | None = None) -> list[str]:
    return list(get_pipeline_config(config)["skip_stages"] or [])


def get_cleanup_ms(config: dict[str, Any] | None = None) -> int:
    days = get_pipeline_config(config)["cleanup_days"]
    return int(float(days) * 24 * 60 * 60 * 1000)


def resolve_repo_config(config: dict[str, Any] | None = None):
    """Resolve the active repository configuration.

    Reads ``repository:`` directly, or ``projects:`` with ``active_project:``
    when several repositories are configured.

    Returns:
        RepositoryConfig for the active repository

    Raises:
        RepoConfigError: if nothing usable is configured
    """
    from .models import RepositoryConfig

    if config is None:
        try:
            config = load_config()
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise RepoConfigError(f"Could not load {get_config_path()}: {e}") from e

    repo_data = config.get("repository")
    source = "repository"

    if not repo_data:
        projects = config.get("projects") or {}
        active = config.get("active_project")
        if not projects:
            raise RepoConfigError(
                f"No repository configured. Add a 'repository' section to {get_config_path()}"
            )
        if not active:
            raise RepoConfigError("Multiple projects configured but 'active_project' is not set")
        if active not in projects:
            raise RepoConfigError(
                f"Active project '{active}' not found (known: {', '.join(sorted(projects))})"
            )
        repo_data = projects[active]
        source = f"projects.{active}"

    if not isinstance(repo_data, dict):
        raise RepoConfigError(f"'{source}' must be a mapping")

    missing = [key for key in ("owner", "repo") if not repo_data.get(key)]
    if missing:
        raise RepoConfigError(f"'{source}' is missing required field(s): {', '.join(missing)}")

    return RepositoryConfig(
        owner=repo_data["owner"],
        repo=repo_data["repo"],
        path=repo_data.get("path"),
        base_branch=repo_data.get("base_branch", "main"),
    )
