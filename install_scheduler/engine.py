"""
Engine facade: detection, proposal, execution and analytics over one snapshot.
Holds configuration and collaborators only; no snapshot state is kept between calls.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .analytics import summarize
from .detector import ConflictDetector
from .distance import GeoDistanceEstimator, TravelEstimate
from .errors import UnknownConflictError
from .executor import ResolutionExecutor
from .models import (
    ConflictAnalytics, ConflictResolution, ConflictResolutionHistory, DateRange,
    ScheduleSnapshot, SchedulingConflict
)
from .resolver import ResolutionEngine
from .schemas import AppConfig, ResolutionSelection, SkippedConflict
from .util.time_utils import utc_now


logger = logging.getLogger(__name__)


class SchedulingEngine:
    """Stateless entry point for the conflict detection and resolution pipeline."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        precomputed_distances: Optional[Dict[Tuple[str, str], TravelEstimate]] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config or AppConfig()
        self.estimator = GeoDistanceEstimator(self.config, precomputed_distances)
        self.detector = ConflictDetector(self.config, self.estimator, clock=clock)
        self.resolver = ResolutionEngine(self.config, self.detector)
        self.executor = ResolutionExecutor(self.config, self.detector, self.resolver, clock=clock)

    def detect_conflicts(self, snapshot: ScheduleSnapshot, date_range: DateRange) -> List[SchedulingConflict]:
        """Detect conflicts and mark the ones with a safe automatic fix."""
        raw = self.detector.detect(snapshot, date_range)
        conflicts = self.resolver.classify(raw, snapshot, date_range)
        logger.info(f"{snapshot.organization_id}/{snapshot.project_id} v{snapshot.version}: "
                    f"{len(conflicts)} conflicts, {sum(c.auto_resolvable for c in conflicts)} auto-resolvable")
        return conflicts

    def find_conflict(self, snapshot: ScheduleSnapshot, date_range: DateRange,
                      conflict_id: str) -> SchedulingConflict:
        for conflict in self.detect_conflicts(snapshot, date_range):
            if conflict.id == conflict_id:
                return conflict
        raise UnknownConflictError(f"Conflict {conflict_id} not present in snapshot v{snapshot.version}")

    def propose_resolutions(self, conflict: SchedulingConflict, snapshot: ScheduleSnapshot,
                            date_range: DateRange) -> List[ConflictResolution]:
        return self.resolver.propose(conflict, snapshot, date_range)

    def apply_resolution(self, conflict: SchedulingConflict, resolution: ConflictResolution,
                         snapshot: ScheduleSnapshot, date_range: DateRange,
                         applied_by: str = "system") -> Tuple[ScheduleSnapshot, ConflictResolutionHistory]:
        return self.executor.apply_resolution(conflict, resolution, snapshot, date_range, applied_by)

    def apply_bulk(self, selections: List[ResolutionSelection], snapshot: ScheduleSnapshot,
                   date_range: DateRange,
                   applied_by: str = "system") -> Tuple[ScheduleSnapshot, List[ConflictResolutionHistory]]:
        return self.executor.apply_bulk(selections, snapshot, date_range, applied_by)

    def auto_resolve_all(
        self,
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        conflicts: Optional[List[SchedulingConflict]] = None,
        applied_by: str = "auto-resolver"
    ) -> Tuple[ScheduleSnapshot, List[ConflictResolutionHistory], List[SkippedConflict]]:
        """Detect (unless conflicts are given) and apply every safe automatic fix in one batch."""
        if conflicts is None:
            conflicts = self.detect_conflicts(snapshot, date_range)
        return self.executor.auto_resolve_all(conflicts, snapshot, date_range, applied_by)

    def revert(self, history: ConflictResolutionHistory, snapshot: ScheduleSnapshot,
               applied_by: str = "system") -> Tuple[ScheduleSnapshot, ConflictResolutionHistory]:
        return self.executor.revert(history, snapshot, applied_by)

    def summarize(self, conflicts: List[SchedulingConflict],
                  history: List[ConflictResolutionHistory]) -> ConflictAnalytics:
        return summarize(conflicts, history)
