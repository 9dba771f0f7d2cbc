"""
Unit tests for resolution execution, bulk atomicity and revert.
"""

import unittest

from install_scheduler.engine import SchedulingEngine
from install_scheduler.errors import (
    BulkResolutionError, ResolutionConflictError, ResolutionError
)
from install_scheduler.models import ConflictType, ResolutionOutcome
from install_scheduler.schemas import ResolutionSelection

from builders import (
    DAY_RANGE, Clock, assignment, at, create_test_config, installation, member,
    overlap_snapshot, snapshot
)


def two_overlaps_snapshot():
    """Alice and Carol are each double-booked 09:00-12:00; Bob is the only free member."""
    return snapshot(
        [installation(f"i{n}") for n in range(1, 5)],
        [member("alice"), member("bob"), member("carol")],
        [
            assignment("a1", "i1", "alice", at(9)),
            assignment("a2", "i2", "alice", at(10)),
            assignment("c1", "i3", "carol", at(9)),
            assignment("c2", "i4", "carol", at(10)),
        ],
    )


class TestResolutionExecutor(unittest.TestCase):
    """Test cases for applying resolutions against versioned snapshots."""

    def setUp(self):
        self.clock = Clock()
        self.engine = SchedulingEngine(create_test_config(), clock=self.clock)
        self.snapshot = overlap_snapshot(member("bob"))
        self.conflict = self.engine.detect_conflicts(self.snapshot, DAY_RANGE)[0]
        self.best = self.engine.propose_resolutions(self.conflict, self.snapshot, DAY_RANGE)[0]

    def test_apply_returns_new_version_and_history(self):
        self.clock.advance(15)
        result, entry = self.engine.apply_resolution(self.conflict, self.best, self.snapshot, DAY_RANGE,
                                                     applied_by="dispatcher")

        self.assertEqual(result.version, 1)
        self.assertEqual(result.assignment_map()["a1"].team_member_ids, ["bob"])
        self.assertEqual(self.snapshot.assignment_map()["a1"].team_member_ids, ["alice"])
        self.assertEqual(entry.outcome, ResolutionOutcome.SUCCESSFUL)
        self.assertEqual(entry.conflict_id, self.conflict.id)
        self.assertEqual(entry.applied_by, "dispatcher")
        self.assertAlmostEqual(entry.metrics.time_to_resolve, 15.0)
        self.assertEqual(entry.metrics.affected_assignments, 1)
        self.assertEqual(self.engine.detect_conflicts(result, DAY_RANGE), [])

    def test_version_mismatch_raises(self):
        moved_on = self.snapshot.model_copy(update={"version": 5})

        with self.assertRaises(ResolutionConflictError) as ctx:
            self.engine.apply_resolution(self.conflict, self.best, moved_on, DAY_RANGE)

        self.assertEqual(ctx.exception.expected_version, 0)
        self.assertEqual(ctx.exception.actual_version, 5)

    def test_stale_assignment_raises(self):
        changed = [a.model_copy(update={"start": at(13)}) if a.id == "a1" else a
                   for a in self.snapshot.assignments]
        stale = self.snapshot.model_copy(update={"assignments": changed})

        with self.assertRaises(ResolutionConflictError):
            self.engine.apply_resolution(self.conflict, self.best, stale, DAY_RANGE)

    def test_validation_failure_records_failed_history(self):
        busy_bob = self.snapshot.model_copy(update={
            "installations": self.snapshot.installations + [installation("i9")],
            "assignments": self.snapshot.assignments + [assignment("b1", "i9", "bob", at(9))],
        })

        result, entry = self.engine.apply_resolution(self.conflict, self.best, busy_bob, DAY_RANGE)

        self.assertIs(result, busy_bob)
        self.assertEqual(entry.outcome, ResolutionOutcome.FAILED)
        self.assertIn("introduce", entry.notes)

    def test_revert_restores_assignments(self):
        applied, entry = self.engine.apply_resolution(self.conflict, self.best, self.snapshot, DAY_RANGE)
        reverted, revert_entry = self.engine.revert(entry, applied, applied_by="dispatcher")

        self.assertEqual(reverted.version, 2)
        self.assertEqual(reverted.assignments, self.snapshot.assignments)
        self.assertEqual(revert_entry.outcome, ResolutionOutcome.REVERTED)
        self.assertIn(entry.id, revert_entry.notes)

    def test_revert_rejects_failed_entries(self):
        busy_bob = self.snapshot.model_copy(update={
            "installations": self.snapshot.installations + [installation("i9")],
            "assignments": self.snapshot.assignments + [assignment("b1", "i9", "bob", at(9))],
        })
        _, failed = self.engine.apply_resolution(self.conflict, self.best, busy_bob, DAY_RANGE)

        with self.assertRaises(ResolutionError):
            self.engine.revert(failed, busy_bob)


class TestBulkResolution(unittest.TestCase):
    """Batches are all-or-nothing."""

    def setUp(self):
        self.engine = SchedulingEngine(create_test_config(), clock=Clock())
        self.snapshot = two_overlaps_snapshot()
        self.conflicts = self.engine.detect_conflicts(self.snapshot, DAY_RANGE)
        self.selections = [
            ResolutionSelection(conflict=c, resolution=self.engine.propose_resolutions(c, self.snapshot, DAY_RANGE)[0])
            for c in self.conflicts
        ]

    def test_each_conflict_alone_moves_a_job_to_bob(self):
        self.assertEqual([c.type for c in self.conflicts], [ConflictType.TIME_OVERLAP] * 2)
        self.assertEqual([s.resolution.target_team_member_id for s in self.selections], ["bob", "bob"])

    def test_interacting_batch_is_rejected_whole(self):
        before = self.snapshot.model_dump()

        with self.assertRaises(BulkResolutionError) as ctx:
            self.engine.apply_bulk(self.selections, self.snapshot, DAY_RANGE)

        self.assertEqual(ctx.exception.failed_conflict_id, "time_overlap:carol:c1+c2")
        self.assertIs(ctx.exception.snapshot, self.snapshot)
        self.assertEqual(self.snapshot.model_dump(), before)

    def test_independent_batch_applies_once(self):
        result, entries = self.engine.apply_bulk(self.selections[:1], self.snapshot, DAY_RANGE)

        self.assertEqual(result.version, 1)
        self.assertEqual(len(entries), 1)
        self.assertTrue(all(e.outcome == ResolutionOutcome.SUCCESSFUL for e in entries))

    def test_bulk_version_mismatch_raises(self):
        moved_on = self.snapshot.model_copy(update={"version": 3})

        with self.assertRaises(ResolutionConflictError):
            self.engine.apply_bulk(self.selections, moved_on, DAY_RANGE)

    def test_auto_resolve_partitions_resolved_and_skipped(self):
        result, history, skipped = self.engine.auto_resolve_all(self.snapshot, DAY_RANGE)

        self.assertEqual([h.conflict_id for h in history], ["time_overlap:alice:a1+a2"])
        self.assertEqual([s.conflict_id for s in skipped], ["time_overlap:carol:c1+c2"])
        self.assertEqual(result.version, 1)
        remaining = self.engine.detect_conflicts(result, DAY_RANGE)
        self.assertEqual([c.id for c in remaining], ["time_overlap:carol:c1+c2"])

    def test_auto_resolve_skips_manual_conflicts(self):
        lonely = overlap_snapshot()
        result, history, skipped = self.engine.auto_resolve_all(lonely, DAY_RANGE)

        self.assertIs(result, lonely)
        self.assertEqual(history, [])
        self.assertEqual(skipped[0].reason, "requires manual review")


if __name__ == "__main__":
    unittest.main()
