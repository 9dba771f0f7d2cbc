"""
Tests for the availability and capacity index and assignment edits.
"""

from datetime import date

import pytest

from install_scheduler.availability import AvailabilityIndex
from install_scheduler.changes import apply_changes, revert_changes
from install_scheduler.errors import ResolutionConflictError
from install_scheduler.models import AssignmentStatus, ChangeKind, ProposedChange

from builders import (
    DAY, DAY_RANGE, assignment, at, away, create_test_config, installation, member, snapshot
)


def create_index(members, assignments):
    snap = snapshot([installation("i1"), installation("i2"), installation("i3")], members, assignments)
    return AvailabilityIndex(snap, DAY_RANGE, create_test_config(default_max_jobs_per_day=2))


def test_commitments_sorted_and_cancelled_skipped():
    index = create_index(
        [member("alice")],
        [
            assignment("a2", "i2", "alice", at(13)),
            assignment("a1", "i1", "alice", at(9)),
            assignment("a3", "i3", "alice", at(15), status=AssignmentStatus.CANCELLED),
        ],
    )

    assert [a.id for a in index.assignments_for("alice", DAY)] == ["a1", "a2"]
    assert index.member_days() == [("alice", DAY)]
    assert index.job_count("alice", DAY) == 2


def test_max_jobs_falls_back_to_default():
    index = create_index([member("alice"), member("bob", max_jobs_per_day=5)], [])

    assert index.max_jobs("alice") == 2
    assert index.max_jobs("bob") == 5


def test_can_take_checks_calendar_and_capacity():
    job = assignment("x1", "i3", "alice", at(14))
    index = create_index(
        [
            member("alice"),
            member("bob"),
            member("carol", unavailability=[away(at(13), at(15))]),
            member("dave"),
        ],
        [
            assignment("b1", "i1", "bob", at(13)),
            assignment("d1", "i1", "dave", at(8)),
            assignment("d2", "i2", "dave", at(10)),
        ],
    )

    assert index.can_take("alice", [job]) is False  # already assigned
    assert index.can_take("bob", [job]) is False  # busy 13:00-15:00
    assert index.can_take("carol", [job]) is False  # unavailable
    assert index.can_take("dave", [job]) is False  # two jobs already
    assert index.can_take("dave", [job], ignore=["d1"]) is True
    assert index.can_take("nobody", [job]) is False


def test_can_take_rejects_mutually_overlapping_jobs():
    index = create_index([member("bob")], [])
    first = assignment("x1", "i1", "alice", at(9))
    second = assignment("x2", "i2", "alice", at(10))

    assert index.can_take("bob", [first]) is True
    assert index.can_take("bob", [first, second]) is False


def test_working_bounds_respect_days_off():
    index = create_index([member("alice")], [])

    assert index.working_bounds("alice", DAY) == (at(8), at(17))
    assert index.working_bounds("alice", date(2025, 9, 6)) is None


def test_is_free_is_half_open():
    index = create_index([member("alice")], [assignment("a1", "i1", "alice", at(9))])

    assert index.is_free("alice", at(11), at(12)) is True
    assert index.is_free("alice", at(10, 59), at(12)) is False
    assert index.is_free("alice", at(10), at(12), ignore=["a1"]) is True


def test_apply_and_revert_changes():
    original = [
        assignment("a1", "i1", "alice", at(9)),
        assignment("a2", "i2", "alice", at(10)),
    ]
    follow_up = assignment("a1-2", "i1", "alice", at(12), minutes=60)
    changes = [
        ProposedChange(kind=ChangeKind.REASSIGN, assignment_id="a2", from_team_member_id="alice",
                       to_team_member_id="bob", expected_start=at(10), expected_duration_minutes=120),
        ProposedChange(kind=ChangeKind.RESIZE, assignment_id="a1", expected_start=at(9),
                       expected_duration_minutes=120, new_duration_minutes=60),
        ProposedChange(kind=ChangeKind.CREATE, assignment_id="a1-2", new_assignment=follow_up),
    ]

    updated = apply_changes(original, changes)

    assert [a.id for a in updated] == ["a1", "a2", "a1-2"]
    assert updated[0].duration_minutes == 60
    assert updated[1].team_member_ids == ["bob"]
    assert original[1].team_member_ids == ["alice"]
    assert revert_changes(updated, changes) == original


def test_stale_change_is_rejected():
    current = [assignment("a1", "i1", "alice", at(9, 30))]
    change = ProposedChange(kind=ChangeKind.RESCHEDULE, assignment_id="a1",
                            expected_start=at(9), new_start=at(11))

    with pytest.raises(ResolutionConflictError):
        apply_changes(current, [change])

    missing = ProposedChange(kind=ChangeKind.REASSIGN, assignment_id="zz",
                             from_team_member_id="alice", to_team_member_id="bob")
    with pytest.raises(ResolutionConflictError):
        apply_changes(current, [missing])
