"""
Job Worker

Single consumer of the job queue. Jobs run one at a time in arrival order;
session cleanup requests share the same queue so they never race a job.

On a failed job the error is logged and reported back on the triggering
ticket. The workspace stays, so a follow-up comment resumes the session.
"""

import asyncio
import logging
from typing import Optional, Union

from .comments import CommentPoster
from .errors import TicketWorkerError
from .models import Job, SessionCleanupJob, readable_id
from .orchestrator import SessionOrchestrator

logger = logging.getLogger("worker")

FAILURE_COMMENT_PREFIX = "Oops, I hit an error: "

QueueItem = Union[Job, SessionCleanupJob]


def failure_comment(error: Exception) -> str:
    message = error.message if isinstance(error, TicketWorkerError) else str(error)
    return f"{FAILURE_COMMENT_PREFIX}{message}"


class JobWorker:
    """Runs queued jobs through the orchestrator with concurrency 1."""

    def __init__(self, orchestrator: SessionOrchestrator, poster: Optional[CommentPoster] = None):
        self._orchestrator = orchestrator
        self._poster = poster
        self._queue: "asyncio.Queue[QueueItem]" = asyncio.Queue()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, item: QueueItem) -> None:
        self._queue.put_nowait(item)
        label = f"cleanup:{item.key}" if isinstance(item, SessionCleanupJob) else readable_id(item)
        logger.info(f"Queued {label} ({self._queue.qsize()} pending)")

    async def join(self) -> None:
        """Wait until every queued item has been handled."""
        await self._queue.join()

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Job worker started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job worker stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                if isinstance(item, SessionCleanupJob):
                    await self._handle_cleanup(item)
                else:
                    await self._handle_job(item)
            finally:
                self._queue.task_done()

    async def _handle_cleanup(self, item: SessionCleanupJob) -> None:
        try:
            removed = await self._orchestrator.cleanup_session(item.key)
        except TicketWorkerError as e:
            logger.error(f"Cleanup of {item.key} failed: {e.message}")
            return
        if removed:
            logger.info(f"Cleaned up session {item.key} (reason: {item.reason})")
        else:
            logger.info(f"No local session to clean up for {item.key} (reason: {item.reason})")

    async def _handle_job(self, job: Job) -> None:
        job_id = readable_id(job)
        logger.info(f"Processing {job_id} from {job.source.value} (triggered by {job.triggered_by})")
        try:
            await self._orchestrator.process(job)
            logger.info(f"Job {job_id} completed")
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            await self._report_failure(job, e)

    async def _report_failure(self, job: Job, error: Exception) -> None:
        if self._poster is None:
            return
        result = await self._poster.post_for_job(job, failure_comment(error))
        if not result.success:
            logger.warning(f"Could not post failure comment for {readable_id(job)}: {result.error}")
