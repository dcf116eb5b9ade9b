"""
In-process upload job queue.

N asyncio workers pull task ids from a shared queue and run
``UploadOrchestrator.process`` with a fresh database session each. The
queue enforces the per-task execution limit and applies the orchestrator's
retry decision: ``Requeue`` schedules a delayed re-enqueue, ``Terminal`` and
``Completed`` end the current run.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import UploadTasksRepository, get_session_factory, utcnow
from ..utils.logging import operation_context
from .error_classifier import RETRYABLE
from .upload_orchestrator import (
    Completed,
    Requeue,
    RetryDecision,
    Terminal,
    UploadOrchestrator,
    get_upload_orchestrator,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class UploadQueue:
    """Shared upload queue with a fixed pool of workers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[SessionFactory] = None,
        orchestrator: Optional[UploadOrchestrator] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self.worker_count = self.settings.upload_queue_workers
        self.task_timeout = self.settings.upload_task_timeout_seconds

        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._pending: Set[uuid.UUID] = set()
        self._in_flight: Set[uuid.UUID] = set()
        self._scheduled: Dict[uuid.UUID, asyncio.Task] = {}
        self._running = False

        self.counters = {
            "completed": 0,
            "failed": 0,
            "requeued": 0,
            "timed_out": 0,
            "errors": 0,
        }

    @property
    def orchestrator(self) -> UploadOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = get_upload_orchestrator()
        return self._orchestrator

    @property
    def session_factory(self) -> SessionFactory:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Upload queue already running")
            return

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"upload-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(
            "Upload queue started",
            workers=self.worker_count,
            task_timeout_seconds=self.task_timeout,
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        for task in list(self._scheduled.values()) + self._workers:
            task.cancel()
        await asyncio.gather(
            *self._scheduled.values(), *self._workers, return_exceptions=True
        )
        self._scheduled.clear()
        self._workers = []

        logger.info("Upload queue stopped", queued=self._queue.qsize())

    # ===== Enqueueing =====

    def enqueue(self, task_id: uuid.UUID, delay_seconds: float = 0) -> bool:
        """
        Queue a task for processing.

        An immediate enqueue replaces a pending delayed one, so a reconnection
        sweep does not have to wait out the task's previous backoff.

        Returns:
            False if the task is already queued or running
        """
        if task_id in self._pending or task_id in self._in_flight:
            return False

        if delay_seconds > 0:
            if task_id in self._scheduled:
                return False
            self._scheduled[task_id] = asyncio.create_task(
                self._enqueue_later(task_id, delay_seconds)
            )
            return True

        scheduled = self._scheduled.pop(task_id, None)
        if scheduled is not None:
            scheduled.cancel()

        self._pending.add(task_id)
        self._queue.put_nowait(task_id)
        return True

    async def _enqueue_later(self, task_id: uuid.UUID, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)
        finally:
            if self._scheduled.get(task_id) is asyncio.current_task():
                del self._scheduled[task_id]
        self.enqueue(task_id)

    async def recover_pending(self) -> int:
        """
        Re-enqueue unfinished tasks persisted before a restart.

        Tasks waiting out a backoff are scheduled for their remaining delay.

        Returns:
            Number of tasks enqueued
        """
        async with self.session_factory() as db:
            tasks = await UploadTasksRepository(db).find_recoverable_tasks(
                [kind.value for kind in RETRYABLE],
                limit=self.settings.upload_recovery_limit,
            )

        now = utcnow()
        recovered = 0
        for task in tasks:
            delay = 0.0
            if task.cloud_storage_error_type is not None:
                delay = max(0.0, (task.retry_recommended_at - now).total_seconds())
            if self.enqueue(task.id, delay_seconds=delay):
                recovered += 1

        logger.info("Unfinished uploads recovered", recovered=recovered, found=len(tasks))
        return recovered

    async def join(self) -> None:
        """Wait until every queued (not delayed) task has been processed."""
        await self._queue.join()

    # ===== Workers =====

    async def _worker(self, number: int) -> None:
        logger.debug("Upload worker starting", worker=number)
        while self._running:
            task_id = await self._queue.get()
            self._pending.discard(task_id)
            try:
                await self.run_task(task_id)
            except Exception as e:
                # A bug in one task must never stop the worker
                self.counters["errors"] += 1
                logger.error(
                    "Upload worker error",
                    worker=number,
                    task_id=str(task_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()

    async def run_task(self, task_id: uuid.UUID) -> RetryDecision:
        """Run one attempt of a task and apply its retry decision."""
        with operation_context(task_id=str(task_id)):
            self._in_flight.add(task_id)
            try:
                decision = await self._attempt(task_id)
            finally:
                self._in_flight.discard(task_id)

            # enqueue() ignores in-flight ids
            self._apply(task_id, decision)
        return decision

    async def _attempt(self, task_id: uuid.UUID) -> RetryDecision:
        try:
            async with self.session_factory() as db:
                return await asyncio.wait_for(
                    self.orchestrator.process(db, task_id), timeout=self.task_timeout
                )
        except asyncio.TimeoutError:
            self.counters["timed_out"] += 1
            logger.warning(
                "Upload task timed out",
                task_id=str(task_id),
                timeout_seconds=self.task_timeout,
            )
            async with self.session_factory() as db:
                return await self.orchestrator.handle_timeout(db, task_id)

    def _apply(self, task_id: uuid.UUID, decision: RetryDecision) -> None:
        if isinstance(decision, Completed):
            self.counters["completed"] += 1
        elif isinstance(decision, Requeue):
            self.counters["requeued"] += 1
            if self._running:
                self.enqueue(task_id, delay_seconds=decision.delay_seconds)
            logger.info(
                "Upload task requeued",
                task_id=str(task_id),
                delay_seconds=decision.delay_seconds,
                reason=decision.reason,
            )
        elif isinstance(decision, Terminal):
            self.counters["failed"] += 1
            logger.info(
                "Upload task awaiting action",
                task_id=str(task_id),
                reason=decision.reason,
            )

    def stats(self) -> Dict[str, Any]:
        return {
            **self.counters,
            "is_running": self._running,
            "workers": len(self._workers),
            "queued": self._queue.qsize(),
            "in_flight": len(self._in_flight),
            "scheduled": len(self._scheduled),
        }


_upload_queue: Optional[UploadQueue] = None


def get_upload_queue() -> UploadQueue:
    global _upload_queue
    if _upload_queue is None:
        _upload_queue = UploadQueue()
    return _upload_queue


def reset_upload_queue() -> None:
    global _upload_queue
    _upload_queue = None
