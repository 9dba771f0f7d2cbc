"""
Typed errors raised by the resolution executor and service layer.
"""

from typing import Optional

from .models import ScheduleSnapshot


class SchedulingError(Exception):
    """Base class for engine errors."""


class UnknownConflictError(SchedulingError):
    """A referenced conflict or history entry does not exist in the snapshot."""


class ResolutionError(SchedulingError):
    """A resolution could not be applied."""


class ResolutionConflictError(ResolutionError):
    """
    The assignment set changed since the resolution was proposed.
    Recover by re-detecting and re-proposing against the current snapshot.
    """

    def __init__(self, message: str, expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class ResolutionValidationError(ResolutionError):
    """Applying the resolution would not fix its conflict or would create a worse one."""

    def __init__(self, message: str, conflict_id: Optional[str] = None):
        super().__init__(message)
        self.conflict_id = conflict_id


class BulkResolutionError(ResolutionError):
    """A batch was rejected as a whole; `snapshot` is the untouched input."""

    def __init__(self, message: str, failed_conflict_id: str,
                 snapshot: ScheduleSnapshot, cause: Optional[Exception] = None):
        super().__init__(message)
        self.failed_conflict_id = failed_conflict_id
        self.snapshot = snapshot
        self.cause = cause
