"""Custom exception classes for the schedule engine."""


class SchedulerError(Exception):
    """Base exception for the schedule engine."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(SchedulerError):
    """Raised when schedule input fails validation."""
    pass


class ResourceNotFoundError(SchedulerError):
    """Raised when a requested resource is not found."""
    pass


class RecurrenceError(SchedulerError):
    """Raised when a cron expression or timezone cannot be evaluated.

    Every cron expression handled here is synthesized by the engine itself,
    so this signals a programming error and is never retried.
    """

    def __init__(self, message: str, expression: str | None = None):
        self.expression = expression
        super().__init__(message)


class QueueError(SchedulerError):
    """Raised when the schedule queue backend fails."""
    pass


class QueueTimeoutError(QueueError, TimeoutError):
    """Raised when a queue operation exceeds its time budget."""
    pass


class ActionNotFoundError(SchedulerError):
    """Raised when an action name has no registered handler."""
    pass



class ActionTimeoutError(SchedulerError, TimeoutError):
    """Raised when an action handler runs past its time budget."""

    def __init__(self, message: str, action: str | None = None):
        self.action = action
        super().__init__(message)
