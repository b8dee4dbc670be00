from __future__ import annotations

import asyncio
import logging

from core.config import QueueConfig, WorkerConfig
from core.logging import job_context
from database.models import TriageJob
from services.job_queue import JobQueue
from services.triage_procedure import OUTCOME_RETRYABLE, TriageOutcome, TriageProcedure
from utils.rate_limit import DistributedRateLimiter

LOGGER = logging.getLogger(__name__)

DISPATCH_LIMIT_KEY = "triage:dispatch"
# Pause after an unexpected error in the loop itself (e.g. the database went away).
_LOOP_ERROR_BACKOFF_SECONDS = 1.0


class WorkerPool:
    """Fixed number of workers pulling from one queue under a global dispatch limit."""

    def __init__(
        self,
        queue: JobQueue,
        procedure: TriageProcedure,
        rate_limiter: DistributedRateLimiter,
        config: WorkerConfig,
        queue_config: QueueConfig,
    ) -> None:
        self.queue = queue
        self.procedure = procedure
        self.rate_limiter = rate_limiter
        self.config = config
        self.queue_config = queue_config
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._busy: set[int] = set()
        self._maintenance: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def busy_count(self) -> int:
        return len(self._busy)

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        await self.recover_stalled()
        for worker_id in range(1, self.config.concurrency + 1):
            self._workers[worker_id] = asyncio.create_task(
                self._worker_loop(worker_id), name=f"triage-worker-{worker_id}"
            )
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name="triage-maintenance")
        LOGGER.info(
            "Started %s triage workers (limit %s jobs / %ss)",
            self.config.concurrency,
            self.config.rate_limit_max,
            self.config.rate_limit_window_seconds,
        )

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Cancel idle workers now; give busy ones ``grace_seconds`` to finish their job."""
        if not self._workers:
            return
        self._stopping = True
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds

        if self._maintenance:
            self._maintenance.cancel()
        for worker_id, task in self._workers.items():
            if worker_id not in self._busy:
                task.cancel()

        busy = [task for worker_id, task in self._workers.items() if worker_id in self._busy]
        if busy:
            LOGGER.info("Waiting up to %ss for %s in-flight job(s)", grace, len(busy))
            _, pending = await asyncio.wait(busy, timeout=grace)
            for task in pending:
                # The job stays active and is redelivered once its lock expires.
                task.cancel()

        tasks = list(self._workers.values())
        if self._maintenance:
            tasks.append(self._maintenance)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._busy.clear()
        self._maintenance = None
        LOGGER.info("Triage workers stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping:
            try:
                job = await self.queue.dequeue()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Worker %s could not fetch a job", worker_id)
                await asyncio.sleep(_LOOP_ERROR_BACKOFF_SECONDS)
                continue

            # The dispatch slot is taken only once a job is in hand, so every slot is spent
            # in the window its job actually starts.
            try:
                slot = await self.rate_limiter.acquire(
                    DISPATCH_LIMIT_KEY,
                    limit=self.config.rate_limit_max,
                    window_seconds=self.config.rate_limit_window_seconds,
                    on_wait=lambda: self.queue.extend_lock(job),
                )
                claimed = slot is not None and await self.queue.extend_lock(job)
            except asyncio.CancelledError:
                await self.queue.release(job)
                raise
            except Exception:
                LOGGER.exception("Worker %s could not take a dispatch slot for job %s", worker_id, job.key)
                await asyncio.sleep(_LOOP_ERROR_BACKOFF_SECONDS)
                continue
            if not claimed:
                continue

            self._busy.add(worker_id)
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(
                    "Worker %s failed to settle job %s",
                    worker_id,
                    job.key,
                    extra=job_context(job.ticket_id, job.key, job.attempt),
                )
                await asyncio.sleep(_LOOP_ERROR_BACKOFF_SECONDS)
            finally:
                self._busy.discard(worker_id)

    async def process(self, job: TriageJob) -> TriageOutcome:
        """Run one delivered job and settle it with the queue."""
        try:
            outcome = await self.procedure.run(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Store hiccups and other surprises count against the attempt budget like any failure.
            LOGGER.exception(
                "Unexpected error while triaging ticket %s",
                job.ticket_id,
                extra=job_context(job.ticket_id, job.key, job.attempt),
            )
            outcome = TriageOutcome(kind=OUTCOME_RETRYABLE, detail=f"Unexpected error: {exc}")

        if outcome.should_ack:
            await self.queue.ack(job)
            return outcome

        detail = outcome.detail or "Triage failed."
        await self.procedure.record_attempt_failure(job, detail)
        result = await self.queue.fail(job, detail)
        if result is not None and result.exhausted:
            await self.procedure.record_exhausted(job, detail, attempts=result.attempt)
        return outcome

    async def recover_stalled(self) -> int:
        """Requeue jobs whose worker died and fail the tickets of jobs that stalled too often."""
        sweep = await self.queue.requeue_stalled()
        for job in sweep.failed:
            detail = job.last_error or "Triage job stalled."
            await self.procedure.record_exhausted(job, detail, attempts=job.attempt)
        return sweep.requeued

    async def _maintenance_loop(self) -> None:
        interval = max(1, self.queue_config.maintenance_interval_seconds)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.recover_stalled()
                await self.queue.prune()
            except Exception:
                LOGGER.exception("Queue maintenance failed")
