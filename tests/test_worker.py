"""
Unit Tests for JobWorker

Test coverage for:
- Jobs processed one at a time in arrival order
- Failure comments on failed jobs
- Session cleanup requests
- Start/stop lifecycle
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from ticket_worker.comments import CommentPoster, CommentResult
from ticket_worker.config import AppConfig, ConfigStore
from ticket_worker.errors import ProcessTimeoutError, SessionBusyError
from ticket_worker.models import JiraJob, SessionCleanupJob
from ticket_worker.orchestrator import SessionOrchestrator
from ticket_worker.worker import JobWorker, failure_comment


def _jira(key):
    return JiraJob(instruction="work", triggered_by="alice", issue_key=key)


@pytest.fixture
def orchestrator():
    return MagicMock(spec=SessionOrchestrator, process=AsyncMock())


@pytest.fixture
def poster():
    fake = MagicMock(spec=CommentPoster)
    fake.post_for_job = AsyncMock(return_value=CommentResult(success=True))
    return fake


async def _drain(worker):
    await worker.start()
    await asyncio.wait_for(worker.join(), timeout=5)
    await worker.stop()


# -----------------------------------------------------------------------------
# Test Cases: Processing
# -----------------------------------------------------------------------------
class TestJobWorker:
    """Tests for the queue consumer."""

    @pytest.mark.asyncio
    async def test_jobs_run_in_order_one_at_a_time(self, orchestrator):
        running = 0
        peak = 0
        order = []

        async def fake_process(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            order.append(job.issue_key)
            await asyncio.sleep(0.01)
            running -= 1

        orchestrator.process.side_effect = fake_process
        worker = JobWorker(orchestrator)
        for key in ("A-1", "B-1", "C-1"):
            worker.submit(_jira(key))

        await _drain(worker)

        assert order == ["A-1", "B-1", "C-1"]
        assert peak == 1

    @pytest.mark.asyncio
    async def test_failure_posts_comment_and_continues(self, orchestrator, poster):
        orchestrator.process.side_effect = [ProcessTimeoutError(1800), None]
        worker = JobWorker(orchestrator, poster)
        worker.submit(_jira("A-1"))
        worker.submit(_jira("B-1"))

        await _drain(worker)

        assert orchestrator.process.await_count == 2
        poster.post_for_job.assert_awaited_once()
        job, text = poster.post_for_job.call_args.args
        assert job.issue_key == "A-1"
        assert text == "Oops, I hit an error: Process timed out after 1800s"

    @pytest.mark.asyncio
    async def test_comment_failure_is_tolerated(self, orchestrator, poster):
        orchestrator.process.side_effect = RuntimeError("boom")
        poster.post_for_job.return_value = CommentResult(success=False, error="HTTP 500")
        worker = JobWorker(orchestrator, poster)
        worker.submit(_jira("A-1"))

        await _drain(worker)

        poster.post_for_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_job_deletes_session(self, orchestrator):
        worker = JobWorker(orchestrator)
        worker.submit(SessionCleanupJob(key="A-1", reason="pr_merged"))

        await _drain(worker)

        orchestrator.cleanup_session.assert_awaited_once_with("A-1")
        orchestrator.process.assert_not_called()

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_only(self, orchestrator, poster):
        orchestrator.cleanup_session.side_effect = SessionBusyError("A-1")
        worker = JobWorker(orchestrator, poster)
        worker.submit(SessionCleanupJob(key="A-1"))
        worker.submit(_jira("B-1"))

        await _drain(worker)

        poster.post_for_job.assert_not_called()
        orchestrator.process.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_of_missing_session_is_not_an_error(self, settings, store, caplog):
        orchestrator = SessionOrchestrator(
            settings, ConfigStore(initial=AppConfig()), store, MagicMock(), on_output=None,
        )
        worker = JobWorker(orchestrator)
        worker.submit(SessionCleanupJob(key="A-1", reason="pr_merged"))

        with caplog.at_level(logging.INFO):
            await _drain(worker)

        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert any("No local session to clean up for A-1" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_start_stop(self, orchestrator):
        worker = JobWorker(orchestrator)

        await worker.start()
        assert worker.running is True
        await worker.stop()

        assert worker.running is False


def test_failure_comment_for_plain_exception():
    assert failure_comment(ValueError("bad input")) == "Oops, I hit an error: bad input"
