"""
Per-team-member availability and capacity lookup for a date range.
"""

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import (
    Assignment, DateRange, ScheduleSnapshot, TeamMember, UnavailabilityWindow
)
from .schemas import AppConfig
from .util.time_utils import at


logger = logging.getLogger(__name__)


class AvailabilityIndex:
    """
    Precomputed commitments and daily job counts per team member.

    Only active assignments starting inside the date range are indexed.
    Assignments naming unknown team members are ignored for that member.
    """

    def __init__(self, snapshot: ScheduleSnapshot, date_range: DateRange, config: AppConfig):
        self.config = config
        self.date_range = date_range
        self.members: Dict[str, TeamMember] = snapshot.member_map()
        self._by_member_day: Dict[Tuple[str, date], List[Assignment]] = defaultdict(list)

        unknown: Set[str] = set()
        for assignment in snapshot.assignments:
            if not assignment.is_active or not date_range.contains(assignment.day):
                continue
            for member_id in assignment.team_member_ids:
                if member_id not in self.members:
                    unknown.add(member_id)
                    continue
                self._by_member_day[(member_id, assignment.day)].append(assignment)

        for commitments in self._by_member_day.values():
            commitments.sort(key=lambda a: (a.start, a.id))

        if unknown:
            logger.warning(f"Assignments reference unknown team members: {', '.join(sorted(unknown))}")

    # Lookups
    def member_days(self) -> List[Tuple[str, date]]:
        """All (member, day) pairs with at least one commitment, sorted."""
        return sorted(k for k, v in self._by_member_day.items() if v)

    def assignments_for(self, member_id: str, day: date) -> List[Assignment]:
        return list(self._by_member_day.get((member_id, day), []))

    def job_count(self, member_id: str, day: date, ignore: Iterable[str] = ()) -> int:
        skip = set(ignore)
        return sum(1 for a in self._by_member_day.get((member_id, day), []) if a.id not in skip)

    def max_jobs(self, member_id: str) -> int:
        member = self.members[member_id]
        return member.max_jobs_per_day or self.config.detection.default_max_jobs_per_day

    # Availability checks
    def within_working_hours(self, member_id: str, start: datetime, end: datetime) -> bool:
        hours = self.members[member_id].working_hours
        if start.weekday() not in hours.days:
            return False
        return at(start.date(), hours.start) <= start and end <= at(start.date(), hours.end)

    def unavailable_windows(self, member_id: str, start: datetime, end: datetime) -> List[UnavailabilityWindow]:
        return [w for w in self.members[member_id].unavailability if w.overlaps(start, end)]

    def is_available(self, member_id: str, start: datetime, end: datetime) -> bool:
        """Working hours cover the window and no declared unavailability intersects it."""
        if member_id not in self.members:
            return False
        return (self.within_working_hours(member_id, start, end)
                and not self.unavailable_windows(member_id, start, end))

    def is_free(self, member_id: str, start: datetime, end: datetime, ignore: Iterable[str] = ()) -> bool:
        """No existing commitment overlaps the half-open window [start, end)."""
        skip = set(ignore)
        for a in self._by_member_day.get((member_id, start.date()), []):
            if a.id in skip:
                continue
            if a.start < end and start < a.end:
                return False
        return True

    def can_take(self, member_id: str, assignments: List[Assignment],
                 ignore: Iterable[str] = ()) -> bool:
        """
        True when the member could absorb all given assignments: available,
        free, no mutual overlap, and within daily capacity.
        """
        if member_id not in self.members:
            return False
        skip = set(ignore) | {a.id for a in assignments}
        per_day: Dict[date, int] = defaultdict(int)
        ordered = sorted(assignments, key=lambda a: (a.start, a.id))
        for i, a in enumerate(ordered):
            if member_id in a.team_member_ids:
                return False
            if not self.is_available(member_id, a.start, a.end):
                return False
            if not self.is_free(member_id, a.start, a.end, ignore=skip):
                return False
            if i > 0 and ordered[i - 1].end > a.start:
                return False
            per_day[a.day] += 1
        for day, extra in per_day.items():
            if self.job_count(member_id, day, ignore=skip) + extra > self.max_jobs(member_id):
                return False
        return True

    def working_bounds(self, member_id: str, day: date) -> Optional[Tuple[datetime, datetime]]:
        """Working window for a member on a day, or None on days off."""
        member = self.members.get(member_id)
        if member is None or day.weekday() not in member.working_hours.days:
            return None
        return at(day, member.working_hours.start), at(day, member.working_hours.end)
