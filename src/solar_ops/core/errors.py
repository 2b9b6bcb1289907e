"""Error taxonomy shared by the board, the stage handlers and the API client."""


class ConsoleError(Exception):
    """Base class for all console errors."""


class ValidationError(ConsoleError):
    """Raised for problems detected locally, before any network call."""


class TaskNotFoundError(ValidationError):
    """Raised when a task id is not part of the board's current task list."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class WorkTypeConfigError(ConsoleError):
    """Raised when the work-type configuration cannot be loaded."""


class RepositoryError(ConsoleError):
    """Raised when a remote call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(RepositoryError):
    """Missing, expired or rejected credentials."""


class NotFoundError(RepositoryError):
    """The task or customer no longer exists on the server."""


class ConflictError(RepositoryError):
    """The server's state disagrees with the state the client assumed."""


class ServerValidationError(RepositoryError):
    """The server rejected the payload."""


class NetworkError(RepositoryError):
    """Transport failure or timeout."""
