"""
Applies chosen resolutions to a snapshot and records resolution history.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Set, Tuple

from .changes import apply_changes, revert_changes
from .detector import ConflictDetector
from .errors import (
    BulkResolutionError, ResolutionConflictError, ResolutionError, ResolutionValidationError
)
from .models import (
    ConflictResolution, ConflictResolutionHistory, DateRange, ResolutionMetrics,
    ResolutionOutcome, ScheduleSnapshot, SchedulingConflict
)
from .resolver import ResolutionEngine
from .schemas import AppConfig, ResolutionSelection, SkippedConflict
from .util.time_utils import to_utc, utc_now


logger = logging.getLogger(__name__)


class ResolutionExecutor:
    """
    Executes resolutions against versioned snapshots.

    Snapshots are never mutated: every successful application returns a new
    snapshot with the version bumped by one.
    """

    def __init__(
        self,
        config: AppConfig,
        detector: ConflictDetector,
        resolver: Optional[ResolutionEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config
        self.detector = detector
        self.resolver = resolver or ResolutionEngine(config, detector)
        self.clock = clock

    def apply_resolution(
        self,
        conflict: SchedulingConflict,
        resolution: ConflictResolution,
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        applied_by: str = "system"
    ) -> Tuple[ScheduleSnapshot, ConflictResolutionHistory]:
        """
        Apply one resolution.

        Raises:
            ResolutionConflictError: The snapshot moved on since the resolution was proposed

        Returns:
            (new snapshot, history entry). On a validation failure the input
            snapshot is returned unchanged with a failed history entry.
        """
        try:
            new_snapshot = self._apply_checked(conflict, resolution, snapshot, date_range)
        except ResolutionValidationError as e:
            logger.warning(f"Resolution {resolution.id} rejected: {e}")
            return snapshot, self._history(conflict, resolution, snapshot, ResolutionOutcome.FAILED,
                                           applied_by, notes=str(e))

        entry = self._history(conflict, resolution, snapshot, ResolutionOutcome.SUCCESSFUL, applied_by)
        logger.info(f"Applied {resolution.action.value} for {conflict.id} "
                    f"(v{snapshot.version} -> v{new_snapshot.version})")
        return new_snapshot, entry

    def apply_bulk(
        self,
        selections: List[ResolutionSelection],
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        applied_by: str = "system"
    ) -> Tuple[ScheduleSnapshot, List[ConflictResolutionHistory]]:
        """
        Apply several resolutions atomically.

        Every resolution must have been proposed against `snapshot`. The
        batch is applied on a working copy; if any step fails nothing is
        kept and BulkResolutionError carries the untouched input snapshot.
        """
        for selection in selections:
            self._check_version(selection.resolution, snapshot)

        working = snapshot
        entries = []
        for selection in selections:
            conflict, resolution = selection.conflict, selection.resolution
            # later steps build on earlier ones, so only the original base is pinned
            pinned = resolution.model_copy(update={"base_version": working.version})
            try:
                working = self._apply_checked(conflict, pinned, working, date_range)
            except ResolutionError as e:
                logger.warning(f"Bulk apply aborted at {conflict.id}: {e}")
                raise BulkResolutionError(
                    f"Resolution {resolution.id} for {conflict.id} failed: {e}",
                    failed_conflict_id=conflict.id,
                    snapshot=snapshot,
                    cause=e,
                ) from e
            entries.append(self._history(conflict, resolution, snapshot,
                                         ResolutionOutcome.SUCCESSFUL, applied_by))

        # One version step per batch
        result = snapshot.with_assignments(working.assignments)
        logger.info(f"Applied {len(entries)} resolutions in bulk (v{snapshot.version} -> v{result.version})")
        return result, entries

    def auto_resolve_all(
        self,
        conflicts: List[SchedulingConflict],
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        applied_by: str = "auto-resolver"
    ) -> Tuple[ScheduleSnapshot, List[ConflictResolutionHistory], List[SkippedConflict]]:
        """
        Resolve every auto-resolvable conflict with its best candidate.

        Conflicts are handled highest severity first. A conflict whose best
        candidate touches an assignment already claimed by an earlier one is
        skipped rather than re-planned. Never raises for individual conflicts.
        """
        skipped: List[SkippedConflict] = []
        selections: List[ResolutionSelection] = []
        claimed: Set[str] = set()
        ctx = self.resolver.build_context(snapshot, date_range)

        ordered = sorted(conflicts, key=lambda c: (-c.severity.rank, c.id))
        for conflict in ordered:
            if not conflict.auto_resolvable:
                skipped.append(SkippedConflict(conflict_id=conflict.id, reason="requires manual review"))
                continue
            candidates = self.resolver.propose(conflict, snapshot, date_range, ctx)
            if not candidates:
                skipped.append(SkippedConflict(conflict_id=conflict.id, reason="no safe resolution available"))
                continue
            best = candidates[0]
            overlap = claimed.intersection(best.touched_assignment_ids)
            if overlap:
                skipped.append(SkippedConflict(
                    conflict_id=conflict.id,
                    reason=f"assignments already changed in this run: {', '.join(sorted(overlap))}",
                ))
                continue
            claimed.update(best.touched_assignment_ids)
            selections.append(ResolutionSelection(conflict=conflict, resolution=best))

        while selections:
            try:
                result, entries = self.apply_bulk(selections, snapshot, date_range, applied_by)
            except BulkResolutionError as e:
                selections = [s for s in selections if s.conflict.id != e.failed_conflict_id]
                skipped.append(SkippedConflict(conflict_id=e.failed_conflict_id, reason=str(e.cause or e)))
                continue
            logger.info(f"Auto-resolved {len(entries)} conflicts, skipped {len(skipped)}")
            return result, entries, skipped

        logger.info(f"Auto-resolution made no changes, skipped {len(skipped)}")
        return snapshot, [], skipped

    def revert(
        self,
        history: ConflictResolutionHistory,
        snapshot: ScheduleSnapshot,
        applied_by: str = "system"
    ) -> Tuple[ScheduleSnapshot, ConflictResolutionHistory]:
        """
        Undo a successful resolution.

        Raises:
            ResolutionError: The history entry was not a successful application
            ResolutionConflictError: The touched assignments changed since
        """
        if history.outcome != ResolutionOutcome.SUCCESSFUL:
            raise ResolutionError(f"Only successful resolutions can be reverted ({history.id} is {history.outcome.value})")

        reverted = revert_changes(snapshot.assignments, history.resolution.changes)
        new_snapshot = snapshot.with_assignments(reverted)
        entry = self._history(history.conflict, history.resolution, snapshot, ResolutionOutcome.REVERTED,
                              applied_by, notes=f"Reverts {history.id}")
        logger.info(f"Reverted {history.id} (v{snapshot.version} -> v{new_snapshot.version})")
        return new_snapshot, entry

    def _check_version(self, resolution: ConflictResolution, snapshot: ScheduleSnapshot) -> None:
        if resolution.base_version != snapshot.version:
            raise ResolutionConflictError(
                f"Resolution {resolution.id} was proposed against v{resolution.base_version}, "
                f"snapshot is at v{snapshot.version}",
                expected_version=resolution.base_version,
                actual_version=snapshot.version,
            )

    def _apply_checked(
        self,
        conflict: SchedulingConflict,
        resolution: ConflictResolution,
        snapshot: ScheduleSnapshot,
        date_range: DateRange
    ) -> ScheduleSnapshot:
        """Apply changes and confirm the conflict is gone without a worse one appearing."""
        if resolution.conflict_id != conflict.id:
            raise ResolutionValidationError(
                f"Resolution {resolution.id} belongs to {resolution.conflict_id}, not {conflict.id}",
                conflict_id=conflict.id,
            )
        self._check_version(resolution, snapshot)

        ctx = self.resolver.build_context(snapshot, date_range)
        impact, new_conflicts = self.resolver.assess(conflict, resolution.changes, ctx)
        if not impact.resolves_conflict:
            raise ResolutionValidationError(f"{conflict.id} would still be present", conflict_id=conflict.id)
        worse = [c for c in new_conflicts if c.severity.rank >= conflict.severity.rank]
        if worse:
            raise ResolutionValidationError(
                f"Would introduce {', '.join(c.id for c in worse)}", conflict_id=conflict.id
            )
        return snapshot.with_assignments(apply_changes(snapshot.assignments, resolution.changes))

    def _history(
        self,
        conflict: SchedulingConflict,
        resolution: ConflictResolution,
        snapshot: ScheduleSnapshot,
        outcome: ResolutionOutcome,
        applied_by: str,
        notes: Optional[str] = None
    ) -> ConflictResolutionHistory:
        now = self.clock()
        elapsed = max(0.0, (to_utc(now) - to_utc(conflict.detected_at)).total_seconds() / 60.0)
        members = set()
        for change in resolution.changes:
            members.update(m for m in (change.from_team_member_id, change.to_team_member_id) if m)
        return ConflictResolutionHistory(
            id=str(uuid.uuid4()),
            organization_id=snapshot.organization_id,
            project_id=snapshot.project_id,
            conflict=conflict,
            resolution=resolution,
            outcome=outcome,
            metrics=ResolutionMetrics(
                time_to_resolve=round(elapsed, 2),
                affected_team_members=len(members) or len(conflict.affected_team_members),
                affected_assignments=len(resolution.touched_assignment_ids),
                travel_km_delta=resolution.impact.travel_km_delta if resolution.impact else 0.0,
            ),
            applied_by=applied_by,
            applied_at=now,
            notes=notes,
        )
