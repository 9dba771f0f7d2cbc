"""
Installation Conflict Engine package.
Scheduling conflict detection and resolution for field installation teams.
"""

__version__ = "0.1.0"

from .engine import SchedulingEngine
from .service import ConflictService
from .errors import (
    SchedulingError, ResolutionError, ResolutionConflictError,
    ResolutionValidationError, BulkResolutionError, UnknownConflictError
)

__all__ = [
    "SchedulingEngine",
    "ConflictService",
    "SchedulingError",
    "ResolutionError",
    "ResolutionConflictError",
    "ResolutionValidationError",
    "BulkResolutionError",
    "UnknownConflictError",
]
