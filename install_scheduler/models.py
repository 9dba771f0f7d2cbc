"""
Core data models for the installation scheduling conflict engine.
Uses Pydantic for the in-memory snapshot and SQLModel for persisted history.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlmodel import SQLModel, Field as SQLField

from .util.time_utils import to_utc, utc_now


class Priority(str, Enum):
    """Installation priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AssignmentStatus(str, Enum):
    """Assignment lifecycle states."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConflictType(str, Enum):
    """Kinds of scheduling conflict the detector emits."""
    TIME_OVERLAP = "time_overlap"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    TRAVEL_DISTANCE = "travel_distance"
    UNAVAILABLE_TEAM = "unavailable_team"
    MISSING_SPECIALIZATION = "missing_specialization"
    DEADLINE_CONFLICT = "deadline_conflict"


class Severity(str, Enum):
    """Conflict severity, ordered low < medium < high < critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ResolutionAction(str, Enum):
    """Action kinds a candidate resolution can take."""
    REASSIGN = "reassign"
    RESCHEDULE = "reschedule"
    SPLIT = "split"
    REDUCE_SCOPE = "reduce_scope"


class ChangeKind(str, Enum):
    """Primitive edits applied to the assignment set."""
    REASSIGN = "reassign"
    RESCHEDULE = "reschedule"
    RESIZE = "resize"
    CREATE = "create"


class ResolutionOutcome(str, Enum):
    """Outcome recorded in resolution history."""
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REVERTED = "reverted"


# Reference data
class Location(BaseModel):
    """Installation or home-base location. Coordinates may be missing."""
    address: str = ""
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


class Installation(BaseModel):
    """A physical job at a customer site."""
    id: str
    location: Location = Field(default_factory=Location)
    scheduled_start: Optional[datetime] = None
    duration_minutes: int = Field(default=120, gt=0)
    priority: Priority = Priority.MEDIUM
    required_skills: List[str] = Field(default_factory=list)
    # Allowed slack for rescheduling; None means bounded by working hours only
    earliest_start: Optional[datetime] = None
    latest_end: Optional[datetime] = None
    deadline: Optional[datetime] = None


class WorkingHours(BaseModel):
    """Recurring weekly working window (weekday() numbering, Monday = 0)."""
    start: time = time(8, 0)
    end: time = time(17, 0)
    days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v, info):
        """Ensure end time is after start time."""
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("End time must be after start time")
        return v


class UnavailabilityWindow(BaseModel):
    """Declared period a team member cannot work (leave, training, ...)."""
    start: datetime
    end: datetime
    reason: str = ""

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


class TeamMember(BaseModel):
    """Installer or lead. Read-mostly reference data."""
    id: str
    name: str = ""
    role: str = "installer"
    skills: List[str] = Field(default_factory=list)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    unavailability: List[UnavailabilityWindow] = Field(default_factory=list)
    max_jobs_per_day: Optional[int] = Field(default=None, gt=0)
    travel_radius_km: Optional[float] = Field(default=None, gt=0)
    home_base: Optional[Location] = None


class Assignment(BaseModel):
    """Links one installation to one or more team members for a time window."""
    id: str
    installation_id: str
    team_member_ids: List[str] = Field(min_length=1)
    start: datetime
    duration_minutes: int = Field(gt=0)
    status: AssignmentStatus = AssignmentStatus.SCHEDULED

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def is_active(self) -> bool:
        return self.status != AssignmentStatus.CANCELLED


class DateRange(BaseModel):
    """Inclusive calendar date range under evaluation."""
    start: date
    end: date

    @field_validator("end")
    @classmethod
    def end_not_before_start(cls, v, info):
        start = info.data.get("start")
        if start is not None and v < start:
            raise ValueError("Date range end must not precede start")
        return v

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def days(self) -> List[date]:
        span = (self.end - self.start).days
        return [self.start + timedelta(days=i) for i in range(span + 1)]


class ScheduleSnapshot(BaseModel):
    """
    Point-in-time input set for one organization/project.
    The version token is bumped on every applied mutation.
    """
    organization_id: str = "default"
    project_id: str = "default"
    version: int = Field(default=0, ge=0)
    installations: List[Installation] = Field(default_factory=list)
    team_members: List[TeamMember] = Field(default_factory=list)
    assignments: List[Assignment] = Field(default_factory=list)

    @property
    def scope(self) -> Tuple[str, str]:
        return self.organization_id, self.project_id

    def installation_map(self) -> Dict[str, Installation]:
        return {inst.id: inst for inst in self.installations}

    def member_map(self) -> Dict[str, TeamMember]:
        return {member.id: member for member in self.team_members}

    def assignment_map(self) -> Dict[str, Assignment]:
        return {a.id: a for a in self.assignments}

    def with_assignments(self, assignments: List[Assignment]) -> "ScheduleSnapshot":
        """Return a copy holding new assignments and the next version."""
        return self.model_copy(update={
            "assignments": assignments,
            "version": self.version + 1,
        })


# Conflicts and resolutions
class SchedulingConflict(BaseModel):
    """A detected violation of a scheduling constraint."""
    id: str
    type: ConflictType
    severity: Severity
    affected_jobs: List[str] = Field(min_length=1)
    affected_team_members: List[str] = Field(min_length=1)
    affected_assignments: List[str] = Field(default_factory=list)
    description: str
    auto_resolvable: bool = False
    suggested_resolution: Optional[str] = None
    day: Optional[date] = None
    detected_at: datetime = Field(default_factory=utc_now)

    def signature(self) -> Tuple[str, Tuple[str, ...], Tuple[str, ...]]:
        """Identity of the conflict independent of generated ids and timestamps."""
        return (
            self.type.value,
            tuple(sorted(self.affected_team_members)),
            tuple(sorted(self.affected_assignments or self.affected_jobs)),
        )


class ProposedChange(BaseModel):
    """
    One primitive edit of a resolution.
    expected_* values pin the state the change was computed against.
    """
    kind: ChangeKind
    assignment_id: str
    from_team_member_id: Optional[str] = None
    to_team_member_id: Optional[str] = None
    expected_start: Optional[datetime] = None
    expected_duration_minutes: Optional[int] = None
    new_start: Optional[datetime] = None
    new_duration_minutes: Optional[int] = None
    new_assignment: Optional[Assignment] = None


class ResolutionImpact(BaseModel):
    """Projected side effects of applying a candidate."""
    assignments_touched: int = 0
    team_members_affected: int = 0
    travel_km_delta: float = 0.0
    travel_minutes_delta: float = 0.0
    introduces_new_conflict: bool = False
    new_conflict_count: int = 0
    resolves_conflict: bool = True


class ConflictResolution(BaseModel):
    """A candidate fix for one conflict."""
    id: str
    conflict_id: str
    action: ResolutionAction
    description: str
    changes: List[ProposedChange] = Field(min_length=1)
    disruption_score: float
    target_team_member_id: Optional[str] = None
    impact: Optional[ResolutionImpact] = None
    base_version: int = 0

    @property
    def touched_assignment_ids(self) -> List[str]:
        return sorted({c.assignment_id for c in self.changes})


class ResolutionMetrics(BaseModel):
    """Measurements captured when a resolution is executed."""
    time_to_resolve: float = Field(ge=0, description="Minutes from detection to resolution")
    affected_team_members: int = 0
    affected_assignments: int = 0
    travel_km_delta: float = 0.0


class ConflictResolutionHistory(BaseModel):
    """Immutable record of how and when a conflict was resolved."""
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str = "default"
    project_id: str = "default"
    conflict: SchedulingConflict
    resolution: ConflictResolution
    outcome: ResolutionOutcome
    metrics: ResolutionMetrics
    applied_by: str = "system"
    applied_at: datetime
    notes: Optional[str] = None

    @property
    def conflict_id(self) -> str:
        return self.conflict.id


# Analytics (typed chart payloads)
class ConflictTypeChart(BaseModel):
    kind: Literal["conflicts_by_type"] = "conflicts_by_type"
    counts: Dict[str, int] = Field(default_factory=dict)


class SeverityChart(BaseModel):
    kind: Literal["conflicts_by_severity"] = "conflicts_by_severity"
    counts: Dict[str, int] = Field(default_factory=dict)


class OutcomeChart(BaseModel):
    kind: Literal["resolution_outcomes"] = "resolution_outcomes"
    successful: int = 0
    failed: int = 0
    reverted: int = 0


class ResolverChart(BaseModel):
    kind: Literal["resolutions_by_resolver"] = "resolutions_by_resolver"
    counts: Dict[str, int] = Field(default_factory=dict)


AnalyticsChart = Annotated[
    Union[ConflictTypeChart, SeverityChart, OutcomeChart, ResolverChart],
    Field(discriminator="kind"),
]


class ConflictAnalytics(BaseModel):
    """Derived summary over conflicts and resolution history."""
    total_conflicts: int
    resolved_conflicts: int
    average_resolution_time: float
    conflicts_by_type: Dict[str, int]
    resolution_success_rate: float
    prevention_recommendations: List[str]
    charts: List[AnalyticsChart] = Field(default_factory=list)


# Database Models (SQLModel)
class ResolutionHistoryRecord(SQLModel, table=True):
    """Persisted resolution history entry."""
    id: str = SQLField(primary_key=True)
    organization_id: str = SQLField(index=True)
    project_id: str = SQLField(index=True)
    conflict_id: str = SQLField(index=True)
    conflict_type: str
    severity: str
    resolution_id: str
    action: str
    outcome: str = SQLField(index=True)
    time_to_resolve_minutes: float = SQLField(ge=0)
    applied_by: str
    applied_at: datetime = SQLField(index=True)
    payload_json: str  # full ConflictResolutionHistory as JSON

    @classmethod
    def from_history(cls, entry: ConflictResolutionHistory) -> "ResolutionHistoryRecord":
        return cls(
            id=entry.id,
            organization_id=entry.organization_id,
            project_id=entry.project_id,
            conflict_id=entry.conflict.id,
            conflict_type=entry.conflict.type.value,
            severity=entry.conflict.severity.value,
            resolution_id=entry.resolution.id,
            action=entry.resolution.action.value,
            outcome=entry.outcome.value,
            time_to_resolve_minutes=entry.metrics.time_to_resolve,
            applied_by=entry.applied_by,
            applied_at=to_utc(entry.applied_at),
            payload_json=entry.model_dump_json(),
        )

    def to_history(self) -> ConflictResolutionHistory:
        return ConflictResolutionHistory.model_validate_json(self.payload_json)
