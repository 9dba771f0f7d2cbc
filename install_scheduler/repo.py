"""
Repository layer for resolution history.
The engine never touches storage; the service persists what the executor returns.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from .models import ConflictResolutionHistory, ResolutionHistoryRecord, ResolutionOutcome
from .schemas import AppConfig
from .util.time_utils import to_utc


logger = logging.getLogger(__name__)


class HistoryRepository:
    """SQLModel-backed store of ConflictResolutionHistory entries."""

    def __init__(self, config: AppConfig, url: Optional[str] = None):
        """Initialize database connection."""
        self.config = config
        self.url = url or config.database.url
        kwargs = {}
        if self.url in ("sqlite://", "sqlite:///:memory:"):
            # single shared connection so every session sees the same in-memory database
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        self.engine = create_engine(self.url, echo=config.database.echo, **kwargs)

    def create_tables(self) -> None:
        """Create all database tables."""
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return Session(self.engine)

    def save_history(self, entries: List[ConflictResolutionHistory]) -> int:
        """Persist history entries; entries are immutable so existing ids are left as they are."""
        saved = 0
        with self.get_session() as session:
            for entry in entries:
                if session.get(ResolutionHistoryRecord, entry.id) is not None:
                    logger.debug(f"History {entry.id} already stored")
                    continue
                session.add(ResolutionHistoryRecord.from_history(entry))
                saved += 1
            session.commit()
        return saved

    def get_history(self, history_id: str) -> Optional[ConflictResolutionHistory]:
        with self.get_session() as session:
            record = session.get(ResolutionHistoryRecord, history_id)
            return record.to_history() if record else None

    def list_history(
        self,
        organization_id: str,
        project_id: str,
        outcome: Optional[ResolutionOutcome] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ConflictResolutionHistory]:
        """History for one organization/project, oldest first."""
        with self.get_session() as session:
            query = (
                select(ResolutionHistoryRecord)
                .where(ResolutionHistoryRecord.organization_id == organization_id)
                .where(ResolutionHistoryRecord.project_id == project_id)
            )
            if outcome is not None:
                query = query.where(ResolutionHistoryRecord.outcome == outcome.value)
            if since is not None:
                query = query.where(ResolutionHistoryRecord.applied_at >= to_utc(since))
            query = query.order_by(ResolutionHistoryRecord.applied_at, ResolutionHistoryRecord.id)
            if limit is not None:
                query = query.limit(limit)
            return [record.to_history() for record in session.exec(query).all()]

    def health_check(self) -> bool:
        """Check if database is accessible."""
        try:
            with self.get_session() as session:
                session.exec(select(1))
                return True
        except SQLAlchemyError as e:
            logger.warning(f"Database health check failed: {e}")
            return False
