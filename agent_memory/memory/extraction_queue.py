"""
Background extraction queue.

Keeps semantic extraction off the request path. Writes mark a session
dirty; an APScheduler interval job sweeps dirty sessions into a bounded
asyncio.Queue drained by worker tasks.

Overflow policies when the queue is full:
- reject_new: the new job is refused and its session stays dirty
- drop_oldest: the oldest queued job is discarded to make room

Usage:
    queue = ExtractionQueue(pipeline, settings.extraction_queue)
    await queue.start()
    queue.mark_dirty("user-1", "session-9")
    ...
    await queue.stop()
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agent_memory.config.settings import ExtractionQueueSettings
from agent_memory.memory.extraction import SemanticExtractionPipeline
from agent_memory.memory.models import utcnow
from agent_memory.monitoring.metrics import (
    EXTRACTION_QUEUE_DEPTH,
    EXTRACTION_QUEUE_DROPPED,
    EXTRACTION_RUNS,
)

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "extraction_sweep"


@dataclass(frozen=True)
class ExtractionJob:
    user_id: str
    session_id: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def key(self) -> tuple[str, Optional[str]]:
        return (self.user_id, self.session_id)


class ExtractionQueue:
    """Bounded queue of extraction jobs with a periodic dirty-session sweep."""

    def __init__(
        self,
        pipeline: SemanticExtractionPipeline,
        settings: ExtractionQueueSettings,
    ) -> None:
        self._pipeline = pipeline
        self._settings = settings
        self._queue: asyncio.Queue[ExtractionJob] = asyncio.Queue(maxsize=settings.max_size)
        self._queued: set[tuple[str, Optional[str]]] = set()
        self._dirty: set[tuple[str, str]] = set()
        self._workers: list[asyncio.Task] = []
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def dirty_sessions(self) -> set[tuple[str, str]]:
        return set(self._dirty)

    def mark_dirty(self, user_id: str, session_id: str) -> None:
        self._dirty.add((user_id, session_id))

    def submit(self, user_id: str, session_id: Optional[str] = None) -> bool:
        """
        Enqueue an extraction job.

        Returns:
            True if the job is queued (or an identical one already is),
            False if it was rejected by the reject_new policy.
        """
        job = ExtractionJob(user_id=user_id, session_id=session_id)
        if job.key in self._queued:
            return True

        if self._queue.full():
            if self._settings.overflow_policy == "reject_new":
                EXTRACTION_QUEUE_DROPPED.labels(policy="reject_new").inc()
                logger.warning("extraction_job_rejected", user_id=user_id, session_id=session_id)
                return False
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            self._queued.discard(dropped.key)
            if dropped.session_id is not None:
                self._dirty.add((dropped.user_id, dropped.session_id))
            EXTRACTION_QUEUE_DROPPED.labels(policy="drop_oldest").inc()
            logger.warning(
                "extraction_job_dropped",
                user_id=dropped.user_id,
                session_id=dropped.session_id,
            )

        self._queue.put_nowait(job)
        self._queued.add(job.key)
        EXTRACTION_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def sweep(self) -> int:
        """Move dirty sessions into the queue. Returns the number enqueued."""
        enqueued = 0
        for user_id, session_id in sorted(self._dirty):
            if self.submit(user_id, session_id):
                self._dirty.discard((user_id, session_id))
                enqueued += 1
            else:
                break
        if enqueued:
            logger.info("extraction_sweep_enqueued", count=enqueued, remaining=len(self._dirty))
        return enqueued

    async def start(self) -> None:
        """Start worker tasks and the periodic sweep."""
        if self._is_running:
            logger.warning("extraction_queue_already_running")
            return

        self._workers = [
            asyncio.create_task(self._worker(i), name=f"extraction-worker-{i}")
            for i in range(self._settings.workers)
        ]

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self._settings.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Semantic extraction sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

        self._is_running = True
        logger.info(
            "extraction_queue_started",
            workers=self._settings.workers,
            max_size=self._settings.max_size,
            overflow_policy=self._settings.overflow_policy,
        )

    async def stop(self) -> None:
        """Stop the sweep and cancel workers. Queued jobs are discarded."""
        if not self._is_running:
            return

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        self._is_running = False
        logger.info("extraction_queue_stopped", discarded=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._queued.discard(job.key)
            EXTRACTION_QUEUE_DEPTH.set(self._queue.qsize())
            try:
                await self._pipeline.run(job.user_id, session_id=job.session_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                EXTRACTION_RUNS.labels(status="failed").inc()
                logger.exception(
                    "extraction_job_failed",
                    worker=index,
                    user_id=job.user_id,
                    session_id=job.session_id,
                )
                if job.session_id is not None:
                    self._dirty.add((job.user_id, job.session_id))
            finally:
                self._queue.task_done()
