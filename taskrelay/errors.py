"""taskrelay exceptions."""


class TaskRelayError(Exception):
    """Base exception for all taskrelay errors"""

    pass


class StoreError(TaskRelayError):
    """Raised when a durable store cannot be read, written or queried"""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class StoreReadError(StoreError):
    """Raised when a store file is unreadable or holds invalid JSON"""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to read store file {path}: {reason}", path=path)
        self.reason = reason


class StoreWriteError(StoreError):
    """Raised when a store file cannot be written"""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to write store file {path}: {reason}", path=path)
        self.reason = reason


class StoreLockTimeout(StoreError):
    """Raised when the exclusive lock for a store file is not acquired in time"""

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock {path}", path=path)
        self.timeout = timeout


class PipelineNotFoundError(StoreError):
    """Raised when a mutating pipeline call names an unknown task"""

    def __init__(self, task_id: str):
        super().__init__(f"Pipeline not found for task: {task_id}")
        self.task_id = task_id


class PipelineExistsError(StoreError):
    """Raised when init is called for a task whose pipeline is still in progress"""

    def __init__(self, task_id: str):
        super().__init__(f"Pipeline already in progress for task: {task_id}")
        self.task_id = task_id


class PipelineFinishedError(StoreError):
    """Raised on a second terminal transition of the same pipeline"""

    def __init__(self, task_id: str, status: str):
        super().__init__(f"Pipeline for task {task_id} is already {status}")
        self.task_id = task_id
        self.status = status


class RepoConfigError(TaskRelayError):
    """Raised when the active repository configuration is missing or invalid"""

    pass


class WorkflowAbortedError(TaskRelayError):
    """Raised to unwind the workflow when a stage is aborted"""

    def __init__(self, stage: str, error: str, message: str | None = None):
        super().__init__(message or f"Workflow aborted at stage '{stage}': {error}")
        self.stage = stage
        self.error = error


class RetryLimitExceededError(WorkflowAbortedError):
    """Raised when a stage has been attempted the maximum number of times"""

    def __init__(self, stage: str, attempts: int, error: str):
        super().__init__(
            stage,
            error,
            message=f"Stage '{stage}' failed after {attempts} attempts: {error}",
        )
        self.attempts = attempts


class StagePreconditionError(TaskRelayError):
    """Raised when a single-stage rerun is requested for a task that is not ready"""

    def __init__(self, task_id: str, reason: str):
        super().__init__(f"Cannot rerun stage for task {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class ReviewIterationLimitError(TaskRelayError):
    """Raised when a review cycle would exceed its iteration bound"""

    def __init__(self, task_id: str, max_iterations: int):
        super().__init__(
            f"Review cycle for task {task_id} reached its limit of {max_iterations} iterations"
        )
        self.task_id = task_id
        self.max_iterations = max_iterations
