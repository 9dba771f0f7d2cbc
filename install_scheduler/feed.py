"""
Push feed of detection results plus the per-scope reconciliation sweep.
Detection runs when assignments change; the sweep is a coarse safety net.
"""

import asyncio
import logging
from collections import Counter
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .models import ScheduleSnapshot, SchedulingConflict
from .schemas import ConflictFeedMessage


logger = logging.getLogger(__name__)

Scope = Tuple[str, str]
SnapshotLoader = Callable[[], Awaitable[ScheduleSnapshot]]


def build_message(snapshot: ScheduleSnapshot, conflicts: List[SchedulingConflict],
                  trigger: str) -> ConflictFeedMessage:
    return ConflictFeedMessage(
        organization_id=snapshot.organization_id,
        project_id=snapshot.project_id,
        version=snapshot.version,
        trigger=trigger,
        conflicts=conflicts,
        counts_by_severity=dict(sorted(Counter(c.severity.value for c in conflicts).items())),
    )


class ConflictFeed:
    """Subscriber queues grouped by (organization, project)."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self.subscribers: Dict[Scope, Set[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def subscribe(self, organization_id: str, project_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self.lock:
            self.subscribers.setdefault((organization_id, project_id), set()).add(queue)
        logger.info(f"Feed subscriber added for {organization_id}/{project_id}")
        return queue

    async def unsubscribe(self, organization_id: str, project_id: str, queue: asyncio.Queue) -> None:
        scope = (organization_id, project_id)
        async with self.lock:
            queues = self.subscribers.get(scope)
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                del self.subscribers[scope]
        logger.info(f"Feed subscriber removed for {organization_id}/{project_id}")

    async def publish(self, message: ConflictFeedMessage) -> int:
        """Deliver to every subscriber of the message's scope; returns the number reached."""
        async with self.lock:
            queues = list(self.subscribers.get((message.organization_id, message.project_id), ()))

        for queue in queues:
            if queue.full():
                # slow consumer: keep the newest state
                queue.get_nowait()
                logger.warning(f"Feed queue full for {message.organization_id}/{message.project_id}; "
                               f"dropped oldest message")
            queue.put_nowait(message)
        return len(queues)

    def subscriber_count(self, organization_id: str, project_id: str) -> int:
        return len(self.subscribers.get((organization_id, project_id), ()))


class ReconciliationSweeper:
    """
    One background task per scope that periodically reloads a point-in-time
    snapshot, detects conflicts and publishes them.
    """

    def __init__(
        self,
        feed: ConflictFeed,
        detect: Callable[[ScheduleSnapshot], List[SchedulingConflict]],
        interval_seconds: float
    ):
        self.feed = feed
        self.detect = detect
        self.interval_seconds = interval_seconds
        self.tasks: Dict[Scope, asyncio.Task] = {}

    def start(self, organization_id: str, project_id: str, loader: SnapshotLoader) -> None:
        scope = (organization_id, project_id)
        if scope in self.tasks and not self.tasks[scope].done():
            logger.debug(f"Sweep already running for {organization_id}/{project_id}")
            return
        self.tasks[scope] = asyncio.create_task(self._run(scope, loader))
        logger.info(f"Started reconciliation sweep for {organization_id}/{project_id} "
                    f"every {self.interval_seconds}s")

    async def stop(self, organization_id: str, project_id: str) -> None:
        task = self.tasks.pop((organization_id, project_id), None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped reconciliation sweep for {organization_id}/{project_id}")

    async def stop_all(self) -> None:
        for organization_id, project_id in list(self.tasks):
            await self.stop(organization_id, project_id)

    @property
    def active(self) -> int:
        return sum(1 for task in self.tasks.values() if not task.done())

    async def sweep_once(self, loader: SnapshotLoader) -> Optional[ConflictFeedMessage]:
        """Load, detect and publish once. Failures are logged and reported as None."""
        try:
            snapshot = await loader()
            conflicts = self.detect(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reconciliation sweep failed: {e}")
            return None
        message = build_message(snapshot, conflicts, trigger="sweep")
        await self.feed.publish(message)
        return message

    async def _run(self, scope: Scope, loader: SnapshotLoader) -> None:
        while True:
            await self.sweep_once(loader)
            await asyncio.sleep(self.interval_seconds)
