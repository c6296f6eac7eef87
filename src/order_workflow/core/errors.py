"""Error taxonomy for workflow operations."""


class WorkflowError(Exception):
    """Base class for all workflow errors."""


class ValidationError(WorkflowError):
    """A required field is missing or malformed."""


class InvalidAssignee(WorkflowError):
    """The chosen worker is not eligible for the task's stage."""


class IllegalTransition(WorkflowError):
    """The status change is not permitted from the current state."""


class NotFound(WorkflowError):
    """The task no longer exists."""


class NoEligibleWorker(WorkflowError):
    """Automatic assignment found no candidate for the stage."""


class CollaboratorUnavailable(WorkflowError):
    """The persistence collaborator failed."""


class PermissionDenied(WorkflowError):
    """The actor's role does not allow the operation."""


class ProgressionFailed(WorkflowError):
    """The status change committed but the stage hand-off did not."""

    def __init__(self, message: str, task=None):
        super().__init__(message)
        self.task = task
