"""
Main service layer for installation conflict management.
Orchestrates geocoding, detection, resolution, history persistence and the push feed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .distance import DistanceProvider
from .engine import SchedulingEngine
from .errors import UnknownConflictError
from .feed import ConflictFeed, ReconciliationSweeper, SnapshotLoader, build_message
from .models import (
    ConflictAnalytics, ConflictResolutionHistory, DateRange, ResolutionOutcome,
    ScheduleSnapshot, SchedulingConflict
)
from .repo import HistoryRepository
from .schemas import (
    AppConfig, ApplyBulkRequest, ApplyRequest, AutoResolveRequest, DetectRequest,
    DetectResponse, ProposeRequest, ProposeResponse, ResolutionResponse, RevertRequest,
    Settings
)
from .util.time_utils import utc_now


logger = logging.getLogger(__name__)


class ConflictService:
    """Main service for installation scheduling conflicts."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[AppConfig] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize service with configuration."""
        self.settings = settings or Settings()
        self.config = config or self._load_config(config_path or self.settings.config_path)
        self.clock = clock

        # Setup logging
        self._setup_logging()

        # Initialize components
        self.engine = SchedulingEngine(self.config, clock=clock)
        self.repo = HistoryRepository(self.config, url=self.settings.database_url)
        self.distance_provider = DistanceProvider(self.config, self.settings)
        self.feed = ConflictFeed(self.config.feed.queue_size)
        self.sweeper = ReconciliationSweeper(
            self.feed, self._detect_current, self.config.feed.sweep_interval_seconds
        )
        # latest snapshot seen per (organization, project)
        self.snapshots: Dict[Tuple[str, str], ScheduleSnapshot] = {}

        # Initialize database
        self.repo.create_tables()

    def _load_config(self, config_path: str) -> AppConfig:
        """Load configuration from YAML file."""
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            return AppConfig(**config_data)
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level),
            format=self.config.logging.format
        )

    async def prepare(self, snapshot: ScheduleSnapshot) -> ScheduleSnapshot:
        """Fill in missing installation coordinates before detection."""
        installations = await self.distance_provider.geocode_installations(snapshot.installations)
        return snapshot.model_copy(update={"installations": installations})

    # Detection and proposal
    async def detect(self, request: DetectRequest) -> DetectResponse:
        snapshot = await self.prepare(request.snapshot)
        conflicts = self.engine.detect_conflicts(snapshot, request.date_range)
        return DetectResponse(
            organization_id=snapshot.organization_id,
            project_id=snapshot.project_id,
            version=snapshot.version,
            conflicts=conflicts,
        )

    async def propose(self, request: ProposeRequest) -> ProposeResponse:
        """
        Propose resolutions for one conflict of the snapshot.

        Raises:
            UnknownConflictError: The conflict id is not present in the snapshot
        """
        snapshot = await self.prepare(request.snapshot)
        conflict = self.engine.find_conflict(snapshot, request.date_range, request.conflict_id)
        resolutions = self.engine.propose_resolutions(conflict, snapshot, request.date_range)
        return ProposeResponse(conflict=conflict, resolutions=resolutions)

    # Execution
    async def apply(self, request: ApplyRequest) -> ResolutionResponse:
        snapshot = await self.prepare(request.snapshot)
        selection = request.selection
        new_snapshot, entry = self.engine.apply_resolution(
            selection.conflict, selection.resolution, snapshot, request.date_range, request.applied_by
        )
        self.repo.save_history([entry])
        if entry.outcome == ResolutionOutcome.SUCCESSFUL:
            await self.on_assignments_changed(new_snapshot, request.date_range)
        return ResolutionResponse(snapshot=new_snapshot, history=[entry])

    async def apply_bulk(self, request: ApplyBulkRequest) -> ResolutionResponse:
        snapshot = await self.prepare(request.snapshot)
        new_snapshot, entries = self.engine.apply_bulk(
            request.selections, snapshot, request.date_range, request.applied_by
        )
        self.repo.save_history(entries)
        await self.on_assignments_changed(new_snapshot, request.date_range)
        return ResolutionResponse(snapshot=new_snapshot, history=entries)

    async def auto_resolve(self, request: AutoResolveRequest) -> ResolutionResponse:
        snapshot = await self.prepare(request.snapshot)
        new_snapshot, entries, skipped = self.engine.auto_resolve_all(
            snapshot, request.date_range, applied_by=request.applied_by
        )
        self.repo.save_history(entries)
        if entries:
            await self.on_assignments_changed(new_snapshot, request.date_range)
        return ResolutionResponse(snapshot=new_snapshot, history=entries, skipped=skipped)

    async def revert(self, request: RevertRequest) -> ResolutionResponse:
        """
        Revert a stored resolution.

        Raises:
            UnknownConflictError: No such history entry for the snapshot's scope
        """
        history = self.repo.get_history(request.history_id)
        if history is None or (history.organization_id, history.project_id) != request.snapshot.scope:
            raise UnknownConflictError(f"History entry {request.history_id} not found")
        new_snapshot, entry = self.engine.revert(history, request.snapshot, request.applied_by)
        self.repo.save_history([entry])
        return ResolutionResponse(snapshot=new_snapshot, history=[entry])

    # Analytics and history
    def list_history(self, organization_id: str, project_id: str,
                     outcome: Optional[ResolutionOutcome] = None,
                     since: Optional[datetime] = None,
                     limit: Optional[int] = None) -> List[ConflictResolutionHistory]:
        return self.repo.list_history(organization_id, project_id, outcome=outcome, since=since, limit=limit)

    def summarize(self, organization_id: str, project_id: str,
                  conflicts: Optional[List[SchedulingConflict]] = None) -> ConflictAnalytics:
        history = self.repo.list_history(organization_id, project_id)
        return self.engine.summarize(conflicts or [], history)

    # Event-driven detection and sweeps
    def _horizon(self) -> DateRange:
        today = self.clock().date()
        return DateRange(start=today, end=today + timedelta(days=self.config.feed.horizon_days - 1))

    def _detect_current(self, snapshot: ScheduleSnapshot) -> List[SchedulingConflict]:
        return self.engine.detect_conflicts(snapshot, self._horizon())

    async def on_assignments_changed(self, snapshot: ScheduleSnapshot,
                                     date_range: Optional[DateRange] = None) -> List[SchedulingConflict]:
        """Detect on a freshly mutated snapshot and push the result to subscribers."""
        known = self.snapshots.get(snapshot.scope)
        if known is None or snapshot.version >= known.version:
            self.snapshots[snapshot.scope] = snapshot
        conflicts = self.engine.detect_conflicts(snapshot, date_range or self._horizon())
        reached = await self.feed.publish(build_message(snapshot, conflicts, trigger="event"))
        logger.debug(f"Published {len(conflicts)} conflicts for {snapshot.organization_id}/"
                     f"{snapshot.project_id} v{snapshot.version} to {reached} subscribers")
        return conflicts

    def start_sweep(self, organization_id: str, project_id: str,
                    loader: Optional[SnapshotLoader] = None) -> None:
        """
        Start the periodic sweep for a project.
        Without a loader each pass re-checks the latest snapshot seen for the project.

        Raises:
            UnknownConflictError: No loader given and no snapshot seen for the project yet
        """
        scope = (organization_id, project_id)
        if loader is None:
            if scope not in self.snapshots:
                raise UnknownConflictError(f"No snapshot known for {organization_id}/{project_id}")

            async def loader() -> ScheduleSnapshot:
                return self.snapshots[scope]

        self.sweeper.start(organization_id, project_id, loader)

    async def stop_sweep(self, organization_id: str, project_id: str) -> None:
        await self.sweeper.stop(organization_id, project_id)

    def sweep_running(self, organization_id: str, project_id: str) -> bool:
        task = self.sweeper.tasks.get((organization_id, project_id))
        return task is not None and not task.done()

    async def stop_sweeps(self) -> None:
        await self.sweeper.stop_all()

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on all components."""
        return {
            "status": "healthy",
            "database_connected": self.repo.health_check(),
            "geocoding_configured": self.config.geocoding.mock or self.settings.geocoding_api_key is not None,
            "active_sweeps": self.sweeper.active,
            "timestamp": datetime.now().isoformat()
        }

    async def close(self) -> None:
        """Clean up resources."""
        await self.stop_sweeps()
        await self.distance_provider.close()
