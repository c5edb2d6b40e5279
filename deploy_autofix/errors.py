"""Error taxonomy for deploy-autofix.

Classification never raises: a report that cannot be classified degrades to
an UNKNOWN classification instead.
"""

from __future__ import annotations


class AutofixError(Exception):
    """Base class for remediation errors."""


class RepositoryAccessError(AutofixError):
    """Reading from or writing to the source repository failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ContentConflictError(RepositoryAccessError):
    """A conditional file write lost the race against another writer."""


class MergeConflictError(AutofixError):
    """The pull request could not be merged. The PR is left open."""


class SignatureVerificationFailure(AutofixError):
    """A webhook payload carried a missing or invalid HMAC signature."""


class DeploymentUnreachable(AutofixError):
    """The deployed service refused the health probe connection."""


class UnknownFixKindError(AutofixError, ValueError):
    """A fix strategy name is not part of the fixed catalog."""

    def __init__(self, name: str):
        super().__init__(f"Unknown fix kind: {name}")
        self.name = name


class LeaseUnavailable(AutofixError):
    """Another remediation run holds the repository lease."""

    def __init__(self, resource: str, held_by: str | None = None):
        super().__init__(f"Lease on {resource} held by {held_by or 'another run'}")
        self.resource = resource
        self.held_by = held_by


class InvalidTransition(AutofixError):
    """A deployment target was asked to move to a state it cannot reach."""


class PlatformAPIError(AutofixError):
    """The deployment platform API rejected or failed a request."""


class StageFailure(AutofixError):
    """A pipeline stage timed out or failed after its retry budget."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Stage {stage} failed: {cause!r}")
        self.stage = stage
        self.cause = cause


class DatabaseError(AutofixError):
    """The PostgREST backend rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
