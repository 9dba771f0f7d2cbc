"""Conflict and resolution summaries for dashboards and tuning hints."""

from collections import Counter
from typing import Dict, List

from .models import (
    ConflictAnalytics, ConflictResolutionHistory, ConflictType, ConflictTypeChart,
    OutcomeChart, ResolutionOutcome, ResolverChart, SchedulingConflict, SeverityChart
)


# (conflict type, count must exceed, hint)
_TYPE_THRESHOLDS = [
    (ConflictType.TIME_OVERLAP, 2,
     "Add buffer time between consecutive assignments to absorb overruns"),
    (ConflictType.CAPACITY_EXCEEDED, 1,
     "Review daily workload limits and spread jobs across the team"),
    (ConflictType.TRAVEL_DISTANCE, 1,
     "Cluster installations geographically when building daily routes"),
    (ConflictType.UNAVAILABLE_TEAM, 1,
     "Sync team availability calendars before scheduling"),
]
_SUCCESS_RATE_FLOOR = 80.0


def _latest_outcomes(history: List[ConflictResolutionHistory]) -> Dict[str, ResolutionOutcome]:
    latest: Dict[str, ResolutionOutcome] = {}
    for entry in sorted(history, key=lambda h: (h.applied_at, h.id)):
        latest[entry.conflict.id] = entry.outcome
    return latest


def summarize(conflicts: List[SchedulingConflict],
              history: List[ConflictResolutionHistory]) -> ConflictAnalytics:
    """
    Summarize current conflicts plus accumulated history.

    A conflict is counted once across both inputs; it is resolved when its
    most recent history entry is successful (a later revert reopens it).
    """
    seen: Dict[str, SchedulingConflict] = {}
    for entry in history:
        seen.setdefault(entry.conflict.id, entry.conflict)
    for conflict in conflicts:
        seen[conflict.id] = conflict

    latest = _latest_outcomes(history)
    total = len(seen)
    resolved = sum(1 for outcome in latest.values() if outcome == ResolutionOutcome.SUCCESSFUL)

    success_rate = 100.0 if total == 0 else round(resolved / total * 100.0, 2)
    avg_time = 0.0
    if history:
        avg_time = round(sum(h.metrics.time_to_resolve for h in history) / len(history), 2)

    by_type = Counter(c.type.value for c in seen.values())
    by_severity = Counter(c.severity.value for c in seen.values())
    outcomes = Counter(h.outcome for h in history)
    by_resolver = Counter(h.applied_by for h in history if h.outcome == ResolutionOutcome.SUCCESSFUL)

    recommendations = [hint for kind, limit, hint in _TYPE_THRESHOLDS if by_type.get(kind.value, 0) > limit]
    if history and success_rate < _SUCCESS_RATE_FLOOR:
        recommendations.append(
            f"Resolution success rate is {success_rate:.0f}%; review manual resolution practices"
        )

    return ConflictAnalytics(
        total_conflicts=total,
        resolved_conflicts=resolved,
        average_resolution_time=avg_time,
        conflicts_by_type=dict(sorted(by_type.items())),
        resolution_success_rate=success_rate,
        prevention_recommendations=recommendations,
        charts=[
            ConflictTypeChart(counts=dict(sorted(by_type.items()))),
            SeverityChart(counts=dict(sorted(by_severity.items()))),
            OutcomeChart(
                successful=outcomes.get(ResolutionOutcome.SUCCESSFUL, 0),
                failed=outcomes.get(ResolutionOutcome.FAILED, 0),
                reverted=outcomes.get(ResolutionOutcome.REVERTED, 0),
            ),
            ResolverChart(counts=dict(sorted(by_resolver.items()))),
        ],
    )
