"""
Integration tests for the upload queue: workers, retry scheduling,
deduplication and the per-attempt time limit.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from storage_health.db import UploadTasksRepository, utcnow
from storage_health.providers.google_drive import ProviderError
from storage_health.services.upload_orchestrator import Completed, Requeue
from storage_health.services.upload_queue import UploadQueue


@pytest.fixture
def queue(test_settings, session_factory, orchestrator) -> UploadQueue:
    test_settings.upload_queue_workers = 1
    return UploadQueue(
        settings=test_settings, session_factory=session_factory, orchestrator=orchestrator
    )


@pytest.fixture
async def running_queue(queue):
    await queue.start()
    yield queue
    await queue.stop()


class TestEnqueue:
    """Deduplication of queued and delayed tasks."""

    async def test_duplicate_enqueue_is_ignored(self, queue):
        task_id = uuid.uuid4()

        assert queue.enqueue(task_id)
        assert not queue.enqueue(task_id)
        assert queue.stats()["queued"] == 1

    async def test_immediate_enqueue_replaces_delayed(self, queue):
        task_id = uuid.uuid4()

        assert queue.enqueue(task_id, delay_seconds=60)
        assert not queue.enqueue(task_id, delay_seconds=60)
        assert queue.stats()["scheduled"] == 1

        assert queue.enqueue(task_id)
        assert queue.stats()["scheduled"] == 0
        assert queue.stats()["queued"] == 1

    async def test_delayed_enqueue_lands_in_queue(self, queue):
        task_id = uuid.uuid4()

        queue.enqueue(task_id, delay_seconds=0.01)
        await asyncio.sleep(0.05)

        assert queue.stats()["scheduled"] == 0
        assert queue.stats()["queued"] == 1


class TestWorkers:
    """Workers run attempts and apply retry decisions."""

    async def test_worker_completes_task(
        self, running_queue, db_session, user, store_token, make_task
    ):
        await store_token(user.id)
        task = await make_task(user.id)

        running_queue.enqueue(task.id)
        await running_queue.join()

        assert running_queue.counters["completed"] == 1
        stored = await UploadTasksRepository(db_session).get_task(task.id)
        assert stored.provider_file_id == "drive-file-1"

    async def test_retryable_failure_is_scheduled(
        self, running_queue, user, store_token, make_task, fake_provider
    ):
        await store_token(user.id)
        fake_provider.upload.side_effect = ProviderError("Connection error: ConnectError()")
        task = await make_task(user.id)

        running_queue.enqueue(task.id)
        await running_queue.join()

        stats = running_queue.stats()
        assert stats["requeued"] == 1
        assert stats["scheduled"] == 1
        # Already waiting out its backoff
        assert not running_queue.enqueue(task.id, delay_seconds=30)

    async def test_requeue_scheduled_after_direct_run(
        self, running_queue, user, store_token, make_task, fake_provider
    ):
        """A Requeue decision lands in the schedule once the attempt has finished."""
        await store_token(user.id)
        fake_provider.upload.side_effect = ProviderError("Connection timeout")
        task = await make_task(user.id)

        decision = await running_queue.run_task(task.id)

        assert decision == Requeue(delay_seconds=30, reason="network_error")
        stats = running_queue.stats()
        assert stats["in_flight"] == 0
        assert stats["scheduled"] == 1

    async def test_terminal_failure_is_not_rescheduled(
        self, running_queue, user, store_token, make_task, fake_provider
    ):
        await store_token(user.id)
        fake_provider.upload.side_effect = ProviderError(
            "Token has been expired or revoked", status_code=401
        )
        task = await make_task(user.id)

        running_queue.enqueue(task.id)
        await running_queue.join()

        assert running_queue.counters["failed"] == 1
        assert running_queue.stats()["scheduled"] == 0

    async def test_unexpected_error_does_not_stop_worker(
        self, running_queue, user, store_token, make_task, fake_provider
    ):
        await store_token(user.id)
        fake_provider.upload.side_effect = [RuntimeError("boom"), "drive-file-2"]
        first = await make_task(user.id, filename="first.pdf")
        second = await make_task(user.id, filename="second.pdf")

        running_queue.enqueue(first.id)
        running_queue.enqueue(second.id)
        await running_queue.join()

        assert running_queue.counters["errors"] == 1
        assert running_queue.counters["completed"] == 1
        assert running_queue.is_running


class TestTimeout:
    """Attempts that exceed the execution limit."""

    async def test_timeout_is_handled_as_network_error(
        self, queue, db_session, user, store_token, make_task, fake_provider
    ):
        await store_token(user.id)

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        fake_provider.upload.side_effect = hang
        queue.task_timeout = 0.1
        task = await make_task(user.id)

        decision = await queue.run_task(task.id)

        assert decision == Requeue(delay_seconds=30, reason="network_error")
        assert queue.counters["timed_out"] == 1
        stored = await UploadTasksRepository(db_session).get_task(task.id)
        assert stored.cloud_storage_error_type == "network_error"
        assert stored.attempts == 1

    async def test_run_task_without_workers(self, queue, user, store_token, make_task):
        await store_token(user.id)
        task = await make_task(user.id)

        assert await queue.run_task(task.id) == Completed("drive-file-1")
        # Not running: no follow-up scheduling
        assert queue.stats()["scheduled"] == 0


class TestRecoverPending:
    """Unfinished tasks from the database are queued again after a restart."""

    async def test_recovers_unblocked_and_backed_off_tasks(
        self, running_queue, db_session, user, store_token, make_task
    ):
        await store_token(user.id)
        fresh = await make_task(user.id, filename="fresh.pdf")
        await make_task(
            user.id,
            filename="backoff.pdf",
            error_type="network_error",
            retry_recommended_at=utcnow() + timedelta(minutes=10),
        )

        recovered = await running_queue.recover_pending()

        assert recovered == 2
        assert running_queue.stats()["scheduled"] == 1
        await running_queue.join()
        stored = await UploadTasksRepository(db_session).get_task(fresh.id)
        await db_session.refresh(stored)
        assert stored.provider_file_id == "drive-file-1"

    async def test_due_retry_is_queued_immediately(self, queue, user, make_task):
        task = await make_task(
            user.id,
            error_type="api_quota_exceeded",
            retry_recommended_at=utcnow() - timedelta(minutes=1),
        )

        assert await queue.recover_pending() == 1
        assert queue.stats()["queued"] == 1
        assert queue.stats()["scheduled"] == 0
        assert not queue.enqueue(task.id)

    async def test_blocked_and_finished_tasks_stay_put(self, queue, user, make_task):
        await make_task(user.id, error_type="token_expired")
        await make_task(user.id, error_type="file_too_large")
        # Gave up after its last automatic attempt
        await make_task(user.id, error_type="network_error")
        await make_task(user.id, provider_file_id="drive-file-7")

        assert await queue.recover_pending() == 0
        assert queue.stats()["queued"] == 0
