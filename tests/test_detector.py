"""
Tests for conflict detection.
"""

import logging
from datetime import date

from install_scheduler.detector import ConflictDetector
from install_scheduler.models import AssignmentStatus, ConflictType, DateRange, Severity

from builders import (
    DAY, DAY_RANGE, Clock, assignment, at, away, create_test_config, installation,
    member, overlap_snapshot, snapshot
)


def create_detector(**detection):
    return ConflictDetector(create_test_config(**detection), clock=Clock())


def test_half_overlap_is_critical():
    """09:00-11:00 and 10:00-12:00 overlap by half of the shorter window."""
    conflicts = create_detector().detect(overlap_snapshot(), DAY_RANGE)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.type == ConflictType.TIME_OVERLAP
    assert conflict.severity == Severity.CRITICAL
    assert conflict.affected_team_members == ["alice"]
    assert conflict.affected_assignments == ["a1", "a2"]
    assert conflict.affected_jobs == ["i1", "i2"]
    assert conflict.day == DAY


def test_small_overlap_is_high():
    snap = snapshot(
        [installation("i1"), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(10, 30)),
        ],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.type for c in conflicts] == [ConflictType.TIME_OVERLAP]
    assert conflicts[0].severity == Severity.HIGH


def test_touching_endpoints_do_not_overlap():
    snap = snapshot(
        [installation("i1"), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(11)),
        ],
    )
    assert create_detector().detect(snap, DAY_RANGE) == []


def test_cancelled_assignments_are_ignored():
    snap = snapshot(
        [installation("i1"), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(10), status=AssignmentStatus.CANCELLED),
        ],
    )
    assert create_detector().detect(snap, DAY_RANGE) == []


def test_capacity_lists_every_job_of_the_day():
    """Four jobs against a limit of three yield one conflict naming all four."""
    snap = snapshot(
        [installation(f"i{n}") for n in range(1, 5)],
        [member("alice", max_jobs_per_day=3)],
        [assignment(f"a{n}", f"i{n}", "alice", at(6 + 2 * n), minutes=90) for n in range(1, 5)],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.type == ConflictType.CAPACITY_EXCEEDED
    assert conflict.severity == Severity.MEDIUM
    assert conflict.affected_assignments == ["a1", "a2", "a3", "a4"]
    assert sorted(conflict.affected_jobs) == ["i1", "i2", "i3", "i4"]
    assert conflict.id == "capacity_exceeded:alice:2025-09-01"


def test_capacity_uses_default_limit():
    snap = snapshot(
        [installation(f"i{n}") for n in range(1, 5)],
        [member("alice")],
        [assignment(f"a{n}", f"i{n}", "alice", at(6 + 2 * n), minutes=90) for n in range(1, 5)],
    )
    assert create_detector().detect(snap, DAY_RANGE) == []
    assert len(create_detector(default_max_jobs_per_day=3).detect(snap, DAY_RANGE)) == 1


def test_infeasible_travel_is_high():
    """About 80 km apart with a 10 minute gap cannot be driven."""
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2", 40.72, -74.0)],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(11, 10)),
        ],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert len(conflicts) == 1
    assert conflicts[0].type == ConflictType.TRAVEL_DISTANCE
    assert conflicts[0].severity == Severity.HIGH
    assert conflicts[0].id == "travel_distance:alice:a1+a2"


def test_long_but_feasible_travel_is_medium():
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2", 40.72, -74.0)],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(8), minutes=60),
            assignment("a2", "i2", "alice", at(12), minutes=60),
        ],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.severity for c in conflicts] == [Severity.MEDIUM]


def test_member_travel_radius_tightens_limit():
    # ~20 km road distance, under the org limit but over a 10 km radius
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2", 40.14, -74.0)],
        [member("alice", travel_radius_km=10)],
        [
            assignment("a1", "i1", "alice", at(8), minutes=60),
            assignment("a2", "i2", "alice", at(12), minutes=60),
        ],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.type for c in conflicts] == [ConflictType.TRAVEL_DISTANCE]
    assert conflicts[0].severity == Severity.MEDIUM


def test_missing_coordinates_skip_travel_check(caplog):
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9), minutes=60),
            assignment("a2", "i2", "alice", at(10, 5), minutes=60),
        ],
    )
    with caplog.at_level(logging.WARNING):
        conflicts = create_detector().detect(snap, DAY_RANGE)

    assert conflicts == []
    assert any("no coordinates" in r.getMessage() for r in caplog.records)


def test_declared_unavailability():
    snap = snapshot(
        [installation("i1")],
        [member("alice", unavailability=[away(at(13), at(17), "training")])],
        [assignment("a1", "i1", "alice", at(14), minutes=60)],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert len(conflicts) == 1
    assert conflicts[0].type == ConflictType.UNAVAILABLE_TEAM
    assert conflicts[0].severity == Severity.HIGH
    assert "training" in conflicts[0].description


def test_outside_working_hours():
    snap = snapshot(
        [installation("i1")],
        [member("alice")],
        [assignment("a1", "i1", "alice", at(16, 30), minutes=60)],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.type for c in conflicts] == [ConflictType.UNAVAILABLE_TEAM]
    assert "outside working hours" in conflicts[0].description


def test_missing_specialization():
    snap = snapshot(
        [installation("i1", required_skills=["battery"])],
        [member("alice", skills=["solar"])],
        [assignment("a1", "i1", "alice", at(9))],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.type for c in conflicts] == [ConflictType.MISSING_SPECIALIZATION]
    assert "battery" in conflicts[0].description
    assert create_detector(check_specializations=False).detect(snap, DAY_RANGE) == []


def test_deadline_conflict_is_critical():
    snap = snapshot(
        [installation("i1", deadline=at(10))],
        [member("alice")],
        [assignment("a1", "i1", "alice", at(9))],
    )
    conflicts = create_detector().detect(snap, DAY_RANGE)

    assert [c.type for c in conflicts] == [ConflictType.DEADLINE_CONFLICT]
    assert conflicts[0].severity == Severity.CRITICAL
    assert conflicts[0].id == "deadline_conflict:a1"


def test_assignments_outside_range_are_ignored():
    other_day = DateRange(start=date(2025, 9, 2), end=date(2025, 9, 5))
    assert create_detector().detect(overlap_snapshot(), other_day) == []


def test_unknown_installation_is_skipped(caplog):
    snap = overlap_snapshot()
    snap = snap.model_copy(update={"installations": [installation("i1")]})
    with caplog.at_level(logging.WARNING):
        conflicts = create_detector().detect(snap, DAY_RANGE)

    assert conflicts == []
    assert any("unknown installation" in r.getMessage() for r in caplog.records)


def test_one_pair_can_violate_several_rules():
    snap = snapshot(
        [installation("i1", required_skills=["battery"]), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(10)),
        ],
    )
    types = {c.type for c in create_detector().detect(snap, DAY_RANGE)}

    assert types == {ConflictType.TIME_OVERLAP, ConflictType.MISSING_SPECIALIZATION}


def test_detection_is_deterministic():
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2", 40.72, -74.0), installation("i3")],
        [member("alice", max_jobs_per_day=2), member("bob")],
        [
            assignment("a3", "i3", "alice", at(14)),
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", ["alice", "bob"], at(10)),
        ],
    )
    detector = create_detector()
    first = detector.detect(snap, DAY_RANGE)
    second = detector.detect(snap, DAY_RANGE)
    reordered = detector.detect(snap.model_copy(update={"assignments": list(reversed(snap.assignments))}),
                                DAY_RANGE)

    assert first
    assert [c.model_dump() for c in first] == [c.model_dump() for c in second]
    assert [c.id for c in first] == [c.id for c in reordered]


def test_visit_running_past_midnight_overlaps_next_day():
    next_day = date(2025, 9, 2)
    snap = snapshot(
        [installation("i1"), installation("i2")],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(22), minutes=240),
            assignment("a2", "i2", "alice", at(1, day=next_day), minutes=60),
        ],
    )
    conflicts = create_detector().detect(snap, DateRange(start=DAY, end=next_day))
    overlaps = [c for c in conflicts if c.type == ConflictType.TIME_OVERLAP]

    assert [c.id for c in overlaps] == ["time_overlap:alice:a1+a2"]
    assert overlaps[0].severity == Severity.CRITICAL
    assert overlaps[0].day == next_day


def test_travel_leaves_from_the_visit_that_ends_last():
    """a2 sits inside the long a1 visit, so the drive to a3 starts when a1 ends at 13:00."""
    snap = snapshot(
        [installation("i1", 40.0, -74.0), installation("i2", 40.0, -74.0),
         installation("i3", 40.72, -74.0)],
        [member("alice")],
        [
            assignment("a1", "i1", "alice", at(9), minutes=240),
            assignment("a2", "i2", "alice", at(10), minutes=60),
            assignment("a3", "i3", "alice", at(14), minutes=60),
        ],
    )
    travel = [c for c in create_detector().detect(snap, DAY_RANGE) if c.type == ConflictType.TRAVEL_DISTANCE]

    assert [c.id for c in travel] == ["travel_distance:alice:a1+a3"]
    assert travel[0].severity == Severity.HIGH


def test_moved_installation_is_not_served_a_stale_leg():
    def two_jobs(lat):
        return snapshot(
            [installation("i1", 40.0, -74.0), installation("i2", lat, -74.0)],
            [member("alice")],
            [
                assignment("a1", "i1", "alice", at(8), minutes=60),
                assignment("a2", "i2", "alice", at(12), minutes=60),
            ],
        )

    detector = create_detector()

    assert detector.detect(two_jobs(40.1), DAY_RANGE) == []
    moved = detector.detect(two_jobs(40.72), DAY_RANGE)
    assert [c.id for c in moved] == ["travel_distance:alice:a1+a2"]
