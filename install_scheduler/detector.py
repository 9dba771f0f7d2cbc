"""
Conflict detection for installation schedules.
Runs a fixed battery of checks (overlap, capacity, travel, availability,
skills, deadlines) over one snapshot and unions the results.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from .availability import AvailabilityIndex
from .distance import GeoDistanceEstimator
from .models import (
    Assignment, ConflictType, DateRange, Installation, ScheduleSnapshot,
    SchedulingConflict, Severity
)
from .schemas import AppConfig
from .util.time_utils import at, minutes_between, overlap_minutes, utc_now


logger = logging.getLogger(__name__)

_TYPE_ORDER = {t: i for i, t in enumerate(ConflictType)}


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for i in ids:
        seen.setdefault(i, None)
    return list(seen)


class ConflictDetector:
    """
    Deterministic conflict detector.

    Given an identical snapshot and date range, `detect` returns the same
    conflicts (ids included; only `detected_at` follows the clock).
    """

    def __init__(
        self,
        config: AppConfig,
        estimator: Optional[GeoDistanceEstimator] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config
        self.estimator = estimator or GeoDistanceEstimator(config)
        self.clock = clock

    def detect(
        self,
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        members: Optional[Set[str]] = None,
        days: Optional[Set[date]] = None
    ) -> List[SchedulingConflict]:
        """
        Detect all conflicts in the snapshot.

        Args:
            snapshot: Point-in-time assignments, installations and team members
            date_range: Calendar days to evaluate
            members: Optional restriction to these team members
            days: Optional restriction to these days

        Returns:
            Conflicts sorted by type then id
        """
        installations = snapshot.installation_map()
        usable = [a for a in snapshot.assignments if self._has_installation(a, installations)]
        index = AvailabilityIndex(snapshot.with_assignments(usable), date_range, self.config)
        detected_at = self.clock()

        member_days = [
            (m, d) for m, d in index.member_days()
            if (members is None or m in members) and (days is None or d in days)
        ]

        conflicts: List[SchedulingConflict] = []
        conflicts.extend(self._check_time_overlap(index, member_days, installations))
        conflicts.extend(self._check_capacity(index, member_days, installations))
        conflicts.extend(self._check_travel_distance(index, member_days, installations))
        conflicts.extend(self._check_availability(index, member_days, installations))
        if self.config.detection.check_specializations:
            conflicts.extend(self._check_specializations(index, member_days, installations))
        if self.config.detection.check_deadlines:
            conflicts.extend(self._check_deadlines(index, member_days, installations))

        for conflict in conflicts:
            conflict.detected_at = detected_at

        conflicts.sort(key=lambda c: (_TYPE_ORDER[c.type], c.id))
        logger.debug(f"Detected {len(conflicts)} conflicts across {len(member_days)} member-days")
        return conflicts

    def _has_installation(self, assignment: Assignment, installations: Dict[str, Installation]) -> bool:
        if assignment.installation_id in installations:
            return True
        logger.warning(f"Assignment {assignment.id} references unknown installation "
                       f"{assignment.installation_id}; skipped")
        return False

    def _check_time_overlap(self, index, member_days, installations) -> List[SchedulingConflict]:
        """Flag every pair of a member's assignments whose windows overlap."""
        conflicts = []
        ratio_threshold = self.config.detection.overlap_critical_ratio

        for member_id, day in member_days:
            # visits from the previous day that run past midnight
            carried = [a for a in index.assignments_for(member_id, day - timedelta(days=1))
                       if a.end > at(day, time.min)]
            carried_ids = {a.id for a in carried}
            items = carried + index.assignments_for(member_id, day)
            for i, first in enumerate(items):
                for second in items[i + 1:]:
                    if second.start >= first.end:
                        break  # sorted by start; nothing later can overlap
                    if second.id in carried_ids:
                        continue  # reported on the previous day
                    overlap = overlap_minutes(first.start, first.end, second.start, second.end)
                    shorter = min(first.duration_minutes, second.duration_minutes)
                    severity = Severity.CRITICAL if overlap / shorter >= ratio_threshold else Severity.HIGH
                    conflicts.append(SchedulingConflict(
                        id=f"time_overlap:{member_id}:{first.id}+{second.id}",
                        type=ConflictType.TIME_OVERLAP,
                        severity=severity,
                        affected_jobs=_unique([first.installation_id, second.installation_id]),
                        affected_team_members=[member_id],
                        affected_assignments=[first.id, second.id],
                        description=(f"Team member {self._name(index, member_id)} is double-booked: "
                                     f"{first.id} and {second.id} overlap by {overlap:.0f} min"),
                        suggested_resolution="Reassign or reschedule one of the overlapping assignments",
                        day=day,
                    ))
        return conflicts

    def _check_capacity(self, index, member_days, installations) -> List[SchedulingConflict]:
        """One conflict per member/day whose job count exceeds the daily maximum."""
        conflicts = []
        for member_id, day in member_days:
            items = index.assignments_for(member_id, day)
            limit = index.max_jobs(member_id)
            if len(items) <= limit:
                continue
            conflicts.append(SchedulingConflict(
                id=f"capacity_exceeded:{member_id}:{day.isoformat()}",
                type=ConflictType.CAPACITY_EXCEEDED,
                severity=Severity.MEDIUM,
                affected_jobs=_unique(a.installation_id for a in items),
                affected_team_members=[member_id],
                affected_assignments=[a.id for a in items],
                description=(f"Team member {self._name(index, member_id)} exceeds daily capacity "
                             f"on {day.isoformat()} ({len(items)}/{limit})"),
                suggested_resolution=f"Reassign {len(items) - limit} job(s) to team members with free capacity",
                day=day,
            ))
        return conflicts

    def _check_travel_distance(self, index, member_days, installations) -> List[SchedulingConflict]:
        """Check consecutive same-day legs against the travel limit and the gap between jobs."""
        conflicts = []
        for member_id, day in member_days:
            member = index.members[member_id]
            limit_km = self.config.detection.max_travel_km
            if member.travel_radius_km is not None:
                limit_km = min(limit_km, member.travel_radius_km)

            items = index.assignments_for(member_id, day)
            # overlapping visits are reported as time_overlap; the next leg leaves from whichever ends last
            stops: List[Assignment] = []
            for a in items:
                if stops and a.start < stops[-1].end:
                    if a.end > stops[-1].end:
                        stops[-1] = a
                    continue
                stops.append(a)
            for first, second in zip(stops, stops[1:]):
                gap = minutes_between(first.end, second.start)
                leg = self.estimator.between(
                    installations[first.installation_id], installations[second.installation_id]
                )
                if leg is None:
                    continue

                infeasible = leg.minutes > gap
                if not infeasible and leg.distance_km <= limit_km:
                    continue

                if infeasible:
                    detail = f"needs {leg.minutes:.0f} min of travel but only {gap:.0f} min between jobs"
                else:
                    detail = f"travel of {leg.distance_km:.1f} km exceeds limit of {limit_km:.0f} km"
                conflicts.append(SchedulingConflict(
                    id=f"travel_distance:{member_id}:{first.id}+{second.id}",
                    type=ConflictType.TRAVEL_DISTANCE,
                    severity=Severity.HIGH if infeasible else Severity.MEDIUM,
                    affected_jobs=_unique([first.installation_id, second.installation_id]),
                    affected_team_members=[member_id],
                    affected_assignments=[first.id, second.id],
                    description=f"Team member {self._name(index, member_id)}: {first.id} -> {second.id} {detail}",
                    suggested_resolution=("Reschedule one leg or reassign it to a closer team member"
                                          if infeasible else
                                          "Reassign one leg to a team member closer to the job"),
                    day=day,
                ))
        return conflicts

    def _check_availability(self, index, member_days, installations) -> List[SchedulingConflict]:
        """Assignments outside working hours or inside declared unavailability."""
        conflicts = []
        for member_id, day in member_days:
            for a in index.assignments_for(member_id, day):
                reasons = []
                if not index.within_working_hours(member_id, a.start, a.end):
                    reasons.append("outside working hours")
                for window in index.unavailable_windows(member_id, a.start, a.end):
                    reasons.append(f"unavailable ({window.reason or 'declared'})")
                if not reasons:
                    continue
                conflicts.append(SchedulingConflict(
                    id=f"unavailable_team:{member_id}:{a.id}",
                    type=ConflictType.UNAVAILABLE_TEAM,
                    severity=Severity.HIGH,
                    affected_jobs=[a.installation_id],
                    affected_team_members=[member_id],
                    affected_assignments=[a.id],
                    description=(f"Team member {self._name(index, member_id)} is assigned to {a.id} "
                                 f"while {'; '.join(reasons)}"),
                    suggested_resolution="Reassign to an available team member with matching skills",
                    day=day,
                ))
        return conflicts

    def _check_specializations(self, index, member_days, installations) -> List[SchedulingConflict]:
        """Installations requiring skills the assigned member lacks."""
        conflicts = []
        for member_id, day in member_days:
            skills = set(index.members[member_id].skills)
            for a in index.assignments_for(member_id, day):
                missing = sorted(set(installations[a.installation_id].required_skills) - skills)
                if not missing:
                    continue
                conflicts.append(SchedulingConflict(
                    id=f"missing_specialization:{member_id}:{a.id}",
                    type=ConflictType.MISSING_SPECIALIZATION,
                    severity=Severity.HIGH,
                    affected_jobs=[a.installation_id],
                    affected_team_members=[member_id],
                    affected_assignments=[a.id],
                    description=(f"Team member {self._name(index, member_id)} lacks required skills "
                                 f"for {a.installation_id}: {', '.join(missing)}"),
                    suggested_resolution=f"Reassign to a team member skilled in {', '.join(missing)}",
                    day=day,
                ))
        return conflicts

    def _check_deadlines(self, index, member_days, installations) -> List[SchedulingConflict]:
        """Assignments finishing after their installation's deadline (one per assignment)."""
        by_assignment: Dict[str, Assignment] = {}
        members_of: Dict[str, List[str]] = {}
        for member_id, day in member_days:
            for a in index.assignments_for(member_id, day):
                by_assignment[a.id] = a
                members_of.setdefault(a.id, []).append(member_id)

        conflicts = []
        for assignment_id in sorted(by_assignment):
            a = by_assignment[assignment_id]
            deadline = installations[a.installation_id].deadline
            if deadline is None or a.end <= deadline:
                continue
            conflicts.append(SchedulingConflict(
                id=f"deadline_conflict:{a.id}",
                type=ConflictType.DEADLINE_CONFLICT,
                severity=Severity.CRITICAL,
                affected_jobs=[a.installation_id],
                affected_team_members=sorted(members_of[a.id]),
                affected_assignments=[a.id],
                description=f"Assignment {a.id} ends after the deadline of {deadline.isoformat()}",
                suggested_resolution="Move the assignment to an earlier slot",
                day=a.day,
            ))
        return conflicts

    @staticmethod
    def _name(index: AvailabilityIndex, member_id: str) -> str:
        return index.members[member_id].name or member_id
