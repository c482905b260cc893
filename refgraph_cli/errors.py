"""Exception hierarchy shared by the traversal engine, jobs and adapters."""

from __future__ import annotations


class RefgraphError(Exception):
    """Base class for every error raised by refgraph."""


class UserError(RefgraphError):
    """Condition the operator can fix (stale workspace, dynamic external reference, ...).

    Aborts only the transition of the node being visited. The traversal reports it and
    consults the exceptional-condition policy before moving on.
    """

    condition = "USER_ERROR"


class BuildFailedError(UserError):
    """Build validation failed. The auxiliary identifier has already been rolled back."""

    condition = "BUILD_FAILED"


class AbortError(RefgraphError):
    """A policy decided that the whole run must stop."""


class InvariantViolation(RefgraphError):
    """Internal inconsistency. Never handled by the core."""


class UpdateNeededError(RefgraphError):
    """The backend refused to publish a commit because the workspace is behind."""

    condition = "UPDATE_NEEDED"


class BackendError(RefgraphError):
    """A backend command failed unexpectedly."""

    condition = "BACKEND_ERROR"

    def __init__(self, message: str, returncode: int = 1, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
