from typing import Dict, List, Optional


class DirectoryError(Exception):
    """Base exception for directory access errors."""
    pass


class ValidationError(DirectoryError):
    """Raised when a required identity or search criterion is missing or malformed."""
    pass


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory or the scripting runtime cannot be reached in time."""
    pass


class ExecutionTimeout(DirectoryUnavailable, TimeoutError):
    """Raised when a pooled script execution exceeds its timeout."""
    pass


class NotFound(DirectoryError):
    """Raised when an object or identity does not resolve."""
    pass


class Conflict(DirectoryError):
    """Raised when a mutation precondition does not hold (collision, non-empty container)."""
    pass


class ContainerNotEmpty(Conflict):
    """Raised when deleting a container that still has children."""

    def __init__(self, distinguished_name: str, child_dn: Optional[str] = None):
        self.distinguished_name = distinguished_name
        self.child_dn = child_dn
        message = f"Container '{distinguished_name}' is not empty"
        if child_dn:
            message += f" (found child '{child_dn}')"
        super().__init__(message)


class DirectoryOperationError(DirectoryError):
    """Raised when the directory rejects an operation for a reason outside the other categories."""
    pass


class PartialFailure(DirectoryError):
    """
    Raised when the primary step of a multi-step mutation succeeded but one or
    more secondary steps did not.

    Attributes:
        operation: Name of the logical operation (e.g. 'reset_password')
        completed_steps: Steps that were applied
        failed_steps: Mapping of failed step name to error text
    """

    def __init__(
        self,
        operation: str,
        completed_steps: List[str],
        failed_steps: Dict[str, str],
        target_dn: Optional[str] = None,
    ):
        self.operation = operation
        self.completed_steps = list(completed_steps)
        self.failed_steps = dict(failed_steps)
        self.target_dn = target_dn
        failed = ", ".join(f"{step}: {error}" for step, error in self.failed_steps.items())
        super().__init__(
            f"{operation} partially applied (completed: {', '.join(self.completed_steps)}; failed: {failed})"
        )
