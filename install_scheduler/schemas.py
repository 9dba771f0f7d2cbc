"""
Pydantic schemas for configuration, settings, and API validation.
"""

from typing import List, Optional, Dict

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import (
    ConflictResolution, ConflictResolutionHistory, DateRange,
    ScheduleSnapshot, SchedulingConflict,
)


class ProjectConfig(BaseModel):
    """Top-level project configuration."""
    name: str = Field(default="Installation Conflict Engine")
    version: str = Field(default="0.1.0")


class DetectionConfig(BaseModel):
    """Thresholds used by the conflict detector."""
    max_travel_km: float = Field(default=50.0, gt=0)
    overlap_critical_ratio: float = Field(default=0.5, gt=0, le=1)
    default_max_jobs_per_day: int = Field(default=4, ge=1)
    check_specializations: bool = Field(default=True)
    check_deadlines: bool = Field(default=True)


class ResolutionConfig(BaseModel):
    """Disruption scoring weights and candidate generation limits."""
    km_weight: float = Field(default=1.0, ge=0)
    skill_mismatch_penalty: float = Field(default=25.0, ge=0)
    reschedule_per_hour: float = Field(default=10.0, ge=0)
    scope_reduction_per_hour: float = Field(default=40.0, ge=0)
    split_penalty: float = Field(default=20.0, ge=0)
    min_visit_minutes: int = Field(default=30, ge=1)
    max_candidates_per_conflict: int = Field(default=25, ge=1)
    travel_buffer_minutes: int = Field(default=0, ge=0)


class TravelConfig(BaseModel):
    """Offline travel estimation parameters."""
    speed_kmph: float = Field(default=40.0, gt=0)
    road_factor: float = Field(default=1.3, ge=1.0)


class GeocodingConfig(BaseModel):
    """Geocoding collaborator configuration."""
    base_url: str = Field(default="https://maps.googleapis.com/maps/api")
    mock: bool = Field(default=True)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, gt=0)
    rate_limit_requests_per_second: int = Field(default=10, ge=1, le=100)
    cache: bool = Field(default=True)


class FeedConfig(BaseModel):
    """Push feed and reconciliation sweep configuration."""
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    horizon_days: int = Field(default=14, ge=1)
    queue_size: int = Field(default=100, ge=1)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///./install_scheduler.db")
    echo: bool = Field(default=False)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class AppConfig(BaseModel):
    """Complete application configuration loaded from params.yaml."""
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    travel: TravelConfig = Field(default_factory=TravelConfig)
    geocoding: GeocodingConfig = Field(default_factory=GeocodingConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class Settings(BaseSettings):
    """Environment-based settings (primarily for secrets)."""
    model_config = SettingsConfigDict(
        env_prefix="INSTALL_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    geocoding_api_key: Optional[str] = None
    database_url: Optional[str] = None
    config_path: str = "config/params.yaml"


# API Request/Response Schemas
class DetectRequest(BaseModel):
    """Detect conflicts in a snapshot over a date range."""
    snapshot: ScheduleSnapshot
    date_range: DateRange


class DetectResponse(BaseModel):
    """Detection result bound to the snapshot version it was computed on."""
    organization_id: str
    project_id: str
    version: int
    conflicts: List[SchedulingConflict]


class ProposeRequest(BaseModel):
    """Propose resolutions for one conflict."""
    snapshot: ScheduleSnapshot
    date_range: DateRange
    conflict_id: str


class ProposeResponse(BaseModel):
    conflict: SchedulingConflict
    resolutions: List[ConflictResolution]


class ResolutionSelection(BaseModel):
    """A conflict paired with the resolution chosen for it."""
    conflict: SchedulingConflict
    resolution: ConflictResolution


class ApplyRequest(BaseModel):
    """Apply one resolution against a snapshot."""
    snapshot: ScheduleSnapshot
    date_range: DateRange
    selection: ResolutionSelection
    applied_by: str = Field(default="system")


class ApplyBulkRequest(BaseModel):
    """Apply several resolutions as one atomic batch."""
    snapshot: ScheduleSnapshot
    date_range: DateRange
    selections: List[ResolutionSelection] = Field(min_length=1)
    applied_by: str = Field(default="system")


class AutoResolveRequest(BaseModel):
    """Auto-resolve every auto-resolvable conflict in a snapshot."""
    snapshot: ScheduleSnapshot
    date_range: DateRange
    applied_by: str = Field(default="auto-resolver")


class RevertRequest(BaseModel):
    """Revert a previously applied resolution."""
    snapshot: ScheduleSnapshot
    history_id: str
    applied_by: str = Field(default="system")


class SkippedConflict(BaseModel):
    """A conflict auto-resolution did not handle, with the reason."""
    conflict_id: str
    reason: str


class ResolutionResponse(BaseModel):
    """Updated snapshot plus the history written for it."""
    snapshot: ScheduleSnapshot
    history: List[ConflictResolutionHistory]
    skipped: List[SkippedConflict] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    version: str
    database_connected: bool
    geocoding_configured: bool
    active_sweeps: int
    timestamp: str


class SweepResponse(BaseModel):
    """State of the reconciliation sweep for one project."""
    organization_id: str
    project_id: str
    running: bool
    active_sweeps: int


class ConflictFeedMessage(BaseModel):
    """Message pushed to feed subscribers after each detection run."""
    organization_id: str
    project_id: str
    version: int
    trigger: str = Field(pattern="^(event|sweep)$")
    conflicts: List[SchedulingConflict]
    counts_by_severity: Dict[str, int] = Field(default_factory=dict)
