"""
Progress Store

Keyed map from generation id to the latest progress snapshot, plus the
background tasks that produce those snapshots.

- Snapshots for one id only move forward: `progress` and `all_cities` never
  shrink (lower values are clamped up to the previous snapshot's).
- Once a `complete` or `error` snapshot is stored, further writes are rejected.
- Terminal snapshots are evicted PROGRESS_RETENTION_MINUTES after they land.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import config
from stategraph import ErrorProgress, GenerationProgress, ProcessingProgress, is_terminal
from logger_config import setup_logger

logger = setup_logger(__name__)

TaskFactory = Callable[[Callable[[GenerationProgress], bool]], Awaitable[Any]]


class ProgressStore:
    def __init__(
        self,
        retention: timedelta = timedelta(minutes=config.PROGRESS_RETENTION_MINUTES),
        clock: Optional[Callable[[], datetime]] = None,
        dev_mode: bool = config.DEV_MODE,
    ):
        self.retention = retention
        self.clock = clock or datetime.now
        self.dev_mode = dev_mode
        self._snapshots: Dict[str, GenerationProgress] = {}
        self._terminal_at: Dict[str, datetime] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def set(self, generation_id: str, snapshot: GenerationProgress) -> bool:
        """Store a snapshot. Returns False when the write was rejected."""
        previous = self._snapshots.get(generation_id)

        if previous is not None:
            if is_terminal(previous):
                logger.warning(
                    f"Rejected '{snapshot.type}' snapshot for {generation_id}: already {previous.type}"
                )
                return False

            updates: Dict[str, Any] = {}
            if snapshot.progress < previous.progress:
                updates["progress"] = previous.progress
            previous_cities = getattr(previous, "all_cities", None) or []
            if hasattr(snapshot, "all_cities") and len(snapshot.all_cities) < len(previous_cities):
                updates["all_cities"] = list(previous_cities)
            if updates:
                snapshot = snapshot.model_copy(update=updates)

        if isinstance(snapshot, ErrorProgress) and snapshot.detail and not self.dev_mode:
            snapshot = snapshot.model_copy(update={"detail": None})

        self._snapshots[generation_id] = snapshot
        if is_terminal(snapshot):
            self._terminal_at[generation_id] = self.clock()
            logger.info(f"Generation {generation_id} reached terminal state '{snapshot.type}'")
        else:
            logger.debug(f"Generation {generation_id}: {snapshot.status} ({snapshot.progress}%)")
        return True

    def get(self, generation_id: str) -> Optional[GenerationProgress]:
        if self._is_expired(generation_id, self.clock()):
            self._evict(generation_id)
            return None
        return self._snapshots.get(generation_id)

    def delete(self, generation_id: str) -> bool:
        existed = generation_id in self._snapshots
        self._evict(generation_id)
        return existed

    def sweep(self) -> int:
        """Evict terminal snapshots older than the retention window."""
        now = self.clock()
        expired = [gid for gid in list(self._snapshots) if self._is_expired(gid, now)]
        for generation_id in expired:
            self._evict(generation_id)
        if expired:
            logger.info(f"Swept {len(expired)} finished generation(s)")
        return len(expired)

    def _is_expired(self, generation_id: str, now: datetime) -> bool:
        finished = self._terminal_at.get(generation_id)
        return finished is not None and now - finished > self.retention

    def _evict(self, generation_id: str) -> None:
        self._snapshots.pop(generation_id, None)
        self._terminal_at.pop(generation_id, None)

    def __len__(self) -> int:
        return len(self._snapshots)

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def submit(self, generation_id: str, factory: TaskFactory) -> asyncio.Task:
        """
        Start `factory(on_progress)` as a background task that owns this id.

        A `processing` snapshot is stored before the task is created, so a
        poll issued right after the HTTP response always finds the id. Must be
        called from a running event loop.
        """
        if generation_id in self._tasks:
            raise ValueError(f"Generation {generation_id} is already running")

        self.set(generation_id, ProcessingProgress(status="starting", progress=0, message="Starting your trip plan"))

        def on_progress(snapshot: GenerationProgress) -> bool:
            return self.set(generation_id, snapshot)

        async def run() -> Any:
            try:
                return await factory(on_progress)
            except asyncio.CancelledError:
                self._mark_cancelled(generation_id)
                raise
            except Exception as e:
                logger.error(f"Generation {generation_id} failed: {e}", exc_info=True)
                previous = self._snapshots.get(generation_id)
                self.set(generation_id, ErrorProgress(
                    status="failed",
                    progress=getattr(previous, "progress", 0),
                    message="Something went wrong while planning your trip. Please try again.",
                    all_cities=list(getattr(previous, "all_cities", None) or []),
                    detail=f"{type(e).__name__}: {e}",
                ))
                return None

        task = asyncio.create_task(run(), name=f"generation-{generation_id}")
        self._tasks[generation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(generation_id, None))
        logger.info(f"Submitted generation {generation_id}")
        return task

    def running(self) -> List[str]:
        return [gid for gid, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel every running generation task and wait for them to finish."""
        running = dict(self._tasks)
        for task in running.values():
            task.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)
            # a task cancelled before its first step never reaches its own handler
            for generation_id in running:
                self._mark_cancelled(generation_id)
            logger.info(f"Cancelled {len(running)} running generation(s)")

    def _mark_cancelled(self, generation_id: str) -> None:
        if is_terminal(self._snapshots.get(generation_id)):
            return
        self.set(generation_id, ErrorProgress(
            status="cancelled",
            progress=0,
            message="Trip generation was cancelled.",
        ))
