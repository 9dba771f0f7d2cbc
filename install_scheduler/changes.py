"""
Pure edit primitives over assignment lists.
Every change is checked against the state it was computed from; a mismatch
means the caller is holding a stale resolution.
"""

from typing import Dict, List

from .errors import ResolutionConflictError
from .models import Assignment, ChangeKind, ProposedChange


def _stale(change: ProposedChange, detail: str) -> ResolutionConflictError:
    return ResolutionConflictError(
        f"Assignment {change.assignment_id} changed since the resolution was proposed: {detail}"
    )


def apply_changes(assignments: List[Assignment], changes: List[ProposedChange]) -> List[Assignment]:
    """Return a new assignment list with the changes applied; the input is not mutated."""
    current: Dict[str, Assignment] = {a.id: a for a in assignments}
    order = [a.id for a in assignments]

    for change in changes:
        if change.kind == ChangeKind.CREATE:
            created = change.new_assignment
            if created is None or created.id in current:
                raise _stale(change, "split visit already exists")
            current[created.id] = created
            order.append(created.id)
            continue

        a = current.get(change.assignment_id)
        if a is None:
            raise _stale(change, "assignment no longer exists")
        if change.expected_start is not None and a.start != change.expected_start:
            raise _stale(change, f"start moved to {a.start.isoformat()}")
        if change.expected_duration_minutes is not None and a.duration_minutes != change.expected_duration_minutes:
            raise _stale(change, f"duration is now {a.duration_minutes} min")

        if change.kind == ChangeKind.REASSIGN:
            if change.from_team_member_id not in a.team_member_ids:
                raise _stale(change, f"{change.from_team_member_id} is no longer assigned")
            if change.to_team_member_id in a.team_member_ids:
                raise _stale(change, f"{change.to_team_member_id} is already assigned")
            members = [change.to_team_member_id if m == change.from_team_member_id else m
                       for m in a.team_member_ids]
            current[a.id] = a.model_copy(update={"team_member_ids": members})
        elif change.kind == ChangeKind.RESCHEDULE:
            current[a.id] = a.model_copy(update={"start": change.new_start})
        elif change.kind == ChangeKind.RESIZE:
            current[a.id] = a.model_copy(update={"duration_minutes": change.new_duration_minutes})

    return [current[i] for i in order]


def revert_changes(assignments: List[Assignment], changes: List[ProposedChange]) -> List[Assignment]:
    """Undo previously applied changes, newest first."""
    current: Dict[str, Assignment] = {a.id: a for a in assignments}
    order = [a.id for a in assignments]

    for change in reversed(changes):
        if change.kind == ChangeKind.CREATE:
            created_id = change.new_assignment.id if change.new_assignment else None
            if created_id not in current:
                raise _stale(change, "split visit no longer exists")
            del current[created_id]
            order.remove(created_id)
            continue

        a = current.get(change.assignment_id)
        if a is None:
            raise _stale(change, "assignment no longer exists")

        if change.kind == ChangeKind.REASSIGN:
            if change.to_team_member_id not in a.team_member_ids:
                raise _stale(change, f"{change.to_team_member_id} is no longer assigned")
            members = [change.from_team_member_id if m == change.to_team_member_id else m
                       for m in a.team_member_ids]
            current[a.id] = a.model_copy(update={"team_member_ids": members})
        elif change.kind == ChangeKind.RESCHEDULE:
            if a.start != change.new_start:
                raise _stale(change, f"start moved to {a.start.isoformat()}")
            current[a.id] = a.model_copy(update={"start": change.expected_start})
        elif change.kind == ChangeKind.RESIZE:
            if a.duration_minutes != change.new_duration_minutes:
                raise _stale(change, f"duration is now {a.duration_minutes} min")
            current[a.id] = a.model_copy(update={"duration_minutes": change.expected_duration_minutes})

    return [current[i] for i in order]
