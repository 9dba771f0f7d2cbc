"""
Candidate resolution generation, impact assessment and ranking.
Each conflict type has a generator; every candidate is applied
hypothetically and re-checked with the detector before it is offered.
"""

import itertools
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from .availability import AvailabilityIndex
from .changes import apply_changes
from .detector import ConflictDetector
from .models import (
    Assignment, ChangeKind, ConflictResolution, ConflictType, DateRange,
    Installation, ProposedChange, ResolutionAction, ResolutionImpact,
    ScheduleSnapshot, SchedulingConflict, Severity, TeamMember
)
from .schemas import AppConfig
from .util.time_utils import minutes_between


logger = logging.getLogger(__name__)


@dataclass
class CandidateDraft:
    """A candidate before impact assessment."""
    action: ResolutionAction
    description: str
    changes: List[ProposedChange]
    base_score: float
    target_team_member_id: Optional[str] = None


@dataclass
class ResolutionContext:
    """Everything candidate generation needs from one snapshot."""
    snapshot: ScheduleSnapshot
    date_range: DateRange
    index: AvailabilityIndex
    installations: Dict[str, Installation]
    members: Dict[str, TeamMember]
    assignments: Dict[str, Assignment]
    baseline_cache: Dict[Tuple[FrozenSet[str], FrozenSet[date]], List[SchedulingConflict]] = field(default_factory=dict)


class ResolutionEngine:
    """Proposes and ranks resolutions for detected conflicts."""

    def __init__(self, config: AppConfig, detector: ConflictDetector):
        self.config = config
        self.detector = detector
        self.estimator = detector.estimator
        self._generators = {
            ConflictType.TIME_OVERLAP: self._for_time_overlap,
            ConflictType.CAPACITY_EXCEEDED: self._for_capacity,
            ConflictType.TRAVEL_DISTANCE: self._for_travel,
            ConflictType.UNAVAILABLE_TEAM: self._for_unavailable,
            ConflictType.MISSING_SPECIALIZATION: self._for_missing_specialization,
            ConflictType.DEADLINE_CONFLICT: self._for_deadline,
        }

    def build_context(self, snapshot: ScheduleSnapshot, date_range: DateRange) -> ResolutionContext:
        return ResolutionContext(
            snapshot=snapshot,
            date_range=date_range,
            index=AvailabilityIndex(snapshot, date_range, self.config),
            installations=snapshot.installation_map(),
            members=snapshot.member_map(),
            assignments=snapshot.assignment_map(),
        )

    def propose(
        self,
        conflict: SchedulingConflict,
        snapshot: ScheduleSnapshot,
        date_range: DateRange,
        context: Optional[ResolutionContext] = None
    ) -> List[ConflictResolution]:
        """
        Generate, assess and rank candidate resolutions for one conflict.

        Returns:
            Surviving candidates ordered best-first: lowest disruption score,
            then fewest assignments touched, then smallest team member id.
            Empty when the conflict needs a human decision.
        """
        ctx = context or self.build_context(snapshot, date_range)
        if any(a not in ctx.assignments for a in conflict.affected_assignments):
            logger.warning(f"Conflict {conflict.id} references assignments missing from snapshot "
                           f"v{snapshot.version}; nothing to propose")
            return []

        drafts = self._generators[conflict.type](conflict, ctx)
        drafts.sort(key=lambda d: (d.base_score, len(d.changes), d.target_team_member_id or "",
                                   self._draft_key(d)))
        limit = self.config.resolution.max_candidates_per_conflict

        resolutions = []
        assessed = 0
        for draft in drafts:
            if len(resolutions) >= limit:
                break
            assessed += 1
            try:
                impact, new_conflicts = self.assess(conflict, draft.changes, ctx)
            except Exception as e:
                # covers stale changes as well as detector failures on the hypothetical state
                logger.warning(f"Discarding candidate for {conflict.id}: impact check failed: {e}")
                continue

            if not impact.resolves_conflict:
                logger.debug(f"Discarding {draft.description}: does not resolve {conflict.id}")
                continue
            if any(c.severity.rank >= conflict.severity.rank for c in new_conflicts):
                logger.debug(f"Discarding {draft.description}: introduces "
                             f"{[c.id for c in new_conflicts]}")
                continue

            score = draft.base_score + self.config.resolution.km_weight * impact.travel_km_delta
            resolutions.append(ConflictResolution(
                id=f"{conflict.id}/{draft.action.value}/{self._draft_key(draft)}",
                conflict_id=conflict.id,
                action=draft.action,
                description=draft.description,
                changes=draft.changes,
                disruption_score=round(score, 6),
                target_team_member_id=draft.target_team_member_id,
                impact=impact,
                base_version=snapshot.version,
            ))

        resolutions.sort(key=lambda r: (r.disruption_score, r.impact.assignments_touched,
                                        r.target_team_member_id or "", r.id))
        logger.info(f"Conflict {conflict.id}: {len(resolutions)}/{assessed} candidates survived impact checks")
        return resolutions

    def assess(
        self,
        conflict: SchedulingConflict,
        changes: List[ProposedChange],
        ctx: ResolutionContext
    ) -> Tuple[ResolutionImpact, List[SchedulingConflict]]:
        """
        Apply changes hypothetically and re-run detection on the affected
        team members and days.

        Returns:
            (impact, conflicts present after but not before, or worse than before)
        """
        before_list = ctx.snapshot.assignments
        after_list = apply_changes(before_list, changes)
        after_snapshot = ctx.snapshot.with_assignments(after_list)
        after_map = {a.id: a for a in after_list}

        touched = {c.assignment_id for c in changes}
        scope_members: Set[str] = set(conflict.affected_team_members)
        scope_days: Set[date] = {conflict.day} if conflict.day else set()
        for source in (ctx.assignments, after_map):
            for assignment_id in touched | set(conflict.affected_assignments):
                a = source.get(assignment_id)
                if a is not None:
                    scope_members.update(a.team_member_ids)
                    scope_days.add(a.day)

        key = (frozenset(scope_members), frozenset(scope_days))
        if key not in ctx.baseline_cache:
            ctx.baseline_cache[key] = self.detector.detect(
                ctx.snapshot, ctx.date_range, members=scope_members, days=scope_days
            )
        before = ctx.baseline_cache[key]
        after = self.detector.detect(after_snapshot, ctx.date_range, members=scope_members, days=scope_days)

        before_rank = {c.signature(): c.severity.rank for c in before}
        new_conflicts = [
            c for c in after
            if c.signature() not in before_rank or c.severity.rank > before_rank[c.signature()]
        ]
        # a same-signature conflict of lower severity counts as resolved (e.g. infeasible -> long travel)
        after_rank = {c.signature(): c.severity.rank for c in after}
        resolves = after_rank.get(conflict.signature(), 0) < conflict.severity.rank

        km_before, min_before = self._route_totals(ctx.snapshot, ctx, scope_members, scope_days)
        km_after, min_after = self._route_totals(after_snapshot, ctx, scope_members, scope_days)

        changed_members: Set[str] = set()
        for change in changes:
            changed_members.update(m for m in (change.from_team_member_id, change.to_team_member_id) if m)
            a = after_map.get(change.assignment_id) or ctx.assignments.get(change.assignment_id)
            if a is not None:
                changed_members.update(a.team_member_ids)

        impact = ResolutionImpact(
            assignments_touched=len(touched),
            team_members_affected=len(changed_members),
            travel_km_delta=round(km_after - km_before, 3),
            travel_minutes_delta=round(min_after - min_before, 1),
            introduces_new_conflict=bool(new_conflicts),
            new_conflict_count=len(new_conflicts),
            resolves_conflict=resolves,
        )
        return impact, new_conflicts

    def classify(
        self,
        conflicts: List[SchedulingConflict],
        snapshot: ScheduleSnapshot,
        date_range: DateRange
    ) -> List[SchedulingConflict]:
        """Return copies of the conflicts with `auto_resolvable` decided from surviving candidates."""
        ctx = self.build_context(snapshot, date_range)
        classified = []
        for conflict in conflicts:
            flag = False
            if conflict.type != ConflictType.DEADLINE_CONFLICT and not (
                    conflict.type == ConflictType.TRAVEL_DISTANCE and conflict.severity == Severity.HIGH):
                reassignments = [r for r in self.propose(conflict, snapshot, date_range, ctx)
                                 if r.action == ResolutionAction.REASSIGN]
                if conflict.type in (ConflictType.CAPACITY_EXCEEDED, ConflictType.TRAVEL_DISTANCE):
                    flag = bool(reassignments)
                else:
                    # needs a target with zero side effects
                    flag = any(r.impact.new_conflict_count == 0 for r in reassignments)
            classified.append(conflict.model_copy(update={"auto_resolvable": flag}))
        return classified

    # Candidate generators
    def _for_time_overlap(self, conflict, ctx) -> List[CandidateDraft]:
        first, second = self._ordered(conflict, ctx)
        member_id = conflict.affected_team_members[0]
        drafts = []
        drafts.extend(self._reassign_drafts([first], member_id, ctx, require_skills=False))
        drafts.extend(self._reassign_drafts([second], member_id, ctx, require_skills=False))

        travel = self._leg_minutes(first, second, ctx)
        buffer = self.config.resolution.travel_buffer_minutes
        new_start = first.end + timedelta(minutes=math.ceil(travel) + buffer)
        draft = self._shift_draft(second, new_start, ctx, "after the overlapping visit")
        if draft:
            drafts.append(draft)

        kept_minutes = int(minutes_between(first.start, second.start))
        if kept_minutes >= self.config.resolution.min_visit_minutes:
            drafts.append(self._reduce_scope_draft(first, kept_minutes))
            split = self._split_draft(first, second, kept_minutes, ctx)
            if split:
                drafts.append(split)
        return drafts

    def _for_capacity(self, conflict, ctx) -> List[CandidateDraft]:
        member_id = conflict.affected_team_members[0]
        items = [ctx.assignments[i] for i in conflict.affected_assignments]
        excess = len(items) - ctx.index.max_jobs(member_id)
        if excess <= 0:
            return []
        drafts = []
        combos = itertools.combinations(items, excess)
        for combo in itertools.islice(combos, self.config.resolution.max_candidates_per_conflict * 4):
            drafts.extend(self._reassign_drafts(list(combo), member_id, ctx, require_skills=False))
        return drafts

    def _for_travel(self, conflict, ctx) -> List[CandidateDraft]:
        first, second = self._ordered(conflict, ctx)
        member_id = conflict.affected_team_members[0]
        drafts = []
        drafts.extend(self._reassign_drafts([first], member_id, ctx, require_skills=False))
        drafts.extend(self._reassign_drafts([second], member_id, ctx, require_skills=False))

        if conflict.severity == Severity.HIGH:
            needed = (math.ceil(self._leg_minutes(first, second, ctx))
                      + self.config.resolution.travel_buffer_minutes
                      - int(minutes_between(first.end, second.start)))
            if needed > 0:
                for a, delta, label in ((second, needed, "later"), (first, -needed, "earlier")):
                    draft = self._shift_draft(a, a.start + timedelta(minutes=delta), ctx,
                                              f"{label} to leave room for travel")
                    if draft:
                        drafts.append(draft)
        return drafts

    def _for_unavailable(self, conflict, ctx) -> List[CandidateDraft]:
        a = ctx.assignments[conflict.affected_assignments[0]]
        return self._reassign_drafts([a], conflict.affected_team_members[0], ctx, require_skills=True)

    def _for_missing_specialization(self, conflict, ctx) -> List[CandidateDraft]:
        a = ctx.assignments[conflict.affected_assignments[0]]
        return self._reassign_drafts([a], conflict.affected_team_members[0], ctx, require_skills=True)

    def _for_deadline(self, conflict, ctx) -> List[CandidateDraft]:
        a = ctx.assignments[conflict.affected_assignments[0]]
        deadline = ctx.installations[a.installation_id].deadline
        if deadline is None:
            return []
        new_start = deadline - timedelta(minutes=a.duration_minutes)
        draft = self._shift_draft(a, new_start, ctx, "to finish before the deadline")
        return [draft] if draft else []

    # Draft builders
    def _reassign_drafts(
        self,
        moved: List[Assignment],
        source_id: str,
        ctx: ResolutionContext,
        require_skills: bool
    ) -> List[CandidateDraft]:
        """One draft per team member able to absorb all `moved` assignments."""
        source = ctx.members.get(source_id)
        drafts = []
        for target_id in sorted(ctx.members):
            if target_id == source_id or not ctx.index.can_take(target_id, moved):
                continue
            target = ctx.members[target_id]
            missing_skills = any(
                not set(ctx.installations[a.installation_id].required_skills) <= set(target.skills)
                for a in moved
            )
            if require_skills and missing_skills:
                continue
            role_mismatch = source is not None and target.role != source.role
            penalty = self.config.resolution.skill_mismatch_penalty if (missing_skills or role_mismatch) else 0.0

            changes = [ProposedChange(
                kind=ChangeKind.REASSIGN,
                assignment_id=a.id,
                from_team_member_id=source_id,
                to_team_member_id=target_id,
                expected_start=a.start,
                expected_duration_minutes=a.duration_minutes,
            ) for a in moved]
            drafts.append(CandidateDraft(
                action=ResolutionAction.REASSIGN,
                description=(f"Reassign {', '.join(a.id for a in moved)} from "
                             f"{source.name if source and source.name else source_id} "
                             f"to {target.name or target_id}"),
                changes=changes,
                base_score=penalty,
                target_team_member_id=target_id,
            ))
        return drafts

    def _shift_draft(self, a: Assignment, new_start: datetime, ctx: ResolutionContext,
                     reason: str) -> Optional[CandidateDraft]:
        """Move an assignment to new_start if its slack and every member's calendar allow it."""
        if new_start == a.start:
            return None
        new_end = new_start + timedelta(minutes=a.duration_minutes)
        bounds = self._slack(a, new_start.date(), ctx)
        if bounds is None or new_start < bounds[0] or new_end > bounds[1]:
            return None
        for member_id in a.team_member_ids:
            if member_id not in ctx.members:
                return None
            if not ctx.index.is_available(member_id, new_start, new_end):
                return None
            if not ctx.index.is_free(member_id, new_start, new_end, ignore={a.id}):
                return None
            if new_start.date() != a.day and (
                    ctx.index.job_count(member_id, new_start.date()) + 1 > ctx.index.max_jobs(member_id)):
                return None

        shift = abs(minutes_between(a.start, new_start))
        return CandidateDraft(
            action=ResolutionAction.RESCHEDULE,
            description=f"Move {a.id} to {new_start.strftime('%Y-%m-%d %H:%M')} {reason}",
            changes=[ProposedChange(
                kind=ChangeKind.RESCHEDULE,
                assignment_id=a.id,
                expected_start=a.start,
                expected_duration_minutes=a.duration_minutes,
                new_start=new_start,
            )],
            base_score=self.config.resolution.reschedule_per_hour * shift / 60.0,
        )

    def _reduce_scope_draft(self, a: Assignment, kept_minutes: int) -> CandidateDraft:
        removed = a.duration_minutes - kept_minutes
        return CandidateDraft(
            action=ResolutionAction.REDUCE_SCOPE,
            description=f"Shorten {a.id} by {removed} min so it ends before the next visit",
            changes=[ProposedChange(
                kind=ChangeKind.RESIZE,
                assignment_id=a.id,
                expected_start=a.start,
                expected_duration_minutes=a.duration_minutes,
                new_duration_minutes=kept_minutes,
            )],
            base_score=self.config.resolution.scope_reduction_per_hour * removed / 60.0,
        )

    def _split_draft(self, first: Assignment, second: Assignment, kept_minutes: int,
                     ctx: ResolutionContext) -> Optional[CandidateDraft]:
        """Split `first` into a visit before `second` and a follow-up visit after it."""
        remainder = first.duration_minutes - kept_minutes
        if remainder < self.config.resolution.min_visit_minutes:
            return None
        travel = self._leg_minutes(second, first, ctx)
        resume = max(first.end, second.end) + timedelta(
            minutes=math.ceil(travel) + self.config.resolution.travel_buffer_minutes)
        follow_up = first.model_copy(update={
            "id": f"{first.id}-2",
            "start": resume,
            "duration_minutes": remainder,
        })
        if follow_up.id in ctx.assignments:
            return None
        bounds = self._slack(first, resume.date(), ctx)
        if bounds is None or follow_up.end > bounds[1]:
            return None

        return CandidateDraft(
            action=ResolutionAction.SPLIT,
            description=(f"Split {first.id}: {kept_minutes} min before {second.id}, "
                         f"remaining {remainder} min from {resume.strftime('%H:%M')}"),
            changes=[
                ProposedChange(
                    kind=ChangeKind.RESIZE,
                    assignment_id=first.id,
                    expected_start=first.start,
                    expected_duration_minutes=first.duration_minutes,
                    new_duration_minutes=kept_minutes,
                ),
                ProposedChange(
                    kind=ChangeKind.CREATE,
                    assignment_id=follow_up.id,
                    new_assignment=follow_up,
                ),
            ],
            base_score=self.config.resolution.split_penalty,
        )

    # Helpers
    def _ordered(self, conflict, ctx) -> Tuple[Assignment, Assignment]:
        pair = sorted((ctx.assignments[i] for i in conflict.affected_assignments[:2]),
                      key=lambda a: (a.start, a.id))
        return pair[0], pair[1]

    def _leg_minutes(self, origin: Assignment, destination: Assignment, ctx) -> float:
        leg = self.estimator.between(ctx.installations[origin.installation_id],
                                     ctx.installations[destination.installation_id])
        return leg.minutes if leg else 0.0

    def _slack(self, a: Assignment, day: date, ctx) -> Optional[Tuple[datetime, datetime]]:
        """Allowed window for an assignment on a day: working hours of all members and installation slack."""
        lo, hi = None, None
        for member_id in a.team_member_ids:
            bounds = ctx.index.working_bounds(member_id, day)
            if bounds is None:
                return None
            lo = bounds[0] if lo is None else max(lo, bounds[0])
            hi = bounds[1] if hi is None else min(hi, bounds[1])
        if lo is None:
            return None
        installation = ctx.installations[a.installation_id]
        if installation.earliest_start is not None:
            lo = max(lo, installation.earliest_start)
        if installation.latest_end is not None:
            hi = min(hi, installation.latest_end)
        return (lo, hi) if lo < hi else None

    def _route_totals(self, snapshot: ScheduleSnapshot, ctx: ResolutionContext,
                      members: Set[str], days: Set[date]) -> Tuple[float, float]:
        """Travel km/minutes over the members' days: home base to first job plus consecutive legs."""
        total_km, total_min = 0.0, 0.0
        for member_id in members:
            member = ctx.members.get(member_id)
            if member is None:
                continue
            for day in days:
                route = sorted(
                    (a for a in snapshot.assignments
                     if a.is_active and a.day == day and member_id in a.team_member_ids
                     and a.installation_id in ctx.installations),
                    key=lambda a: (a.start, a.id)
                )
                if not route:
                    continue
                legs = [self.estimator.between_locations(
                    member.home_base, ctx.installations[route[0].installation_id].location)]
                legs.extend(
                    self.estimator.between(ctx.installations[x.installation_id],
                                           ctx.installations[y.installation_id])
                    for x, y in zip(route, route[1:])
                )
                for leg in legs:
                    if leg is not None:
                        total_km += leg.distance_km
                        total_min += leg.minutes
        return total_km, total_min

    @staticmethod
    def _draft_key(draft: CandidateDraft) -> str:
        parts = []
        for change in draft.changes:
            if change.kind == ChangeKind.REASSIGN:
                parts.append(f"{change.assignment_id}>{change.to_team_member_id}")
            elif change.kind == ChangeKind.RESCHEDULE:
                parts.append(f"{change.assignment_id}@{change.new_start.strftime('%Y%m%dT%H%M')}")
            elif change.kind == ChangeKind.RESIZE:
                parts.append(f"{change.assignment_id}={change.new_duration_minutes}")
            else:
                parts.append(f"+{change.assignment_id}")
        return ",".join(parts)
