"""Durable, at-least-once triage job queue backed by the ``triage_jobs`` table.

Jobs are keyed by idempotency key. A key is delivered to at most one caller
at a time: ``dequeue`` flips it to ``active`` inside a transaction, and only
``ack``/``fail``/``release`` (or stall recovery after a crashed worker) free it.
A job whose lock expires too many times is failed instead of redelivered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from core.config import QueueConfig
from database.models import QueueCounts, TriageJob, TriagePayload
from database.repositories import JobRepository
from utils.constants import JOB_STATUS_FAILED
from utils.time import epoch_ms

LOGGER = logging.getLogger(__name__)


def backoff_delay_ms(attempt: int, base_ms: int = 2000) -> int:
    """Delay before the retry that follows failed ``attempt`` (1-based)."""
    return base_ms * 2 ** (max(1, attempt) - 1)


@dataclass(frozen=True, slots=True)
class FailOutcome:
    attempt: int
    exhausted: bool
    delay_ms: int = 0


@dataclass(frozen=True, slots=True)
class StallSweep:
    requeued: int = 0
    failed: tuple[TriageJob, ...] = ()


class JobQueue:
    def __init__(
        self,
        job_repo: JobRepository,
        config: QueueConfig,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self.job_repo = job_repo
        self.config = config
        self._clock = clock
        self._wakeup = asyncio.Event()

    def _notify(self) -> None:
        # Swap in a fresh event so waiters that already woke do not spin on a set flag.
        wakeup, self._wakeup = self._wakeup, asyncio.Event()
        wakeup.set()

    def backoff_for(self, attempt: int) -> int:
        return backoff_delay_ms(attempt, self.config.backoff_base_ms)

    async def enqueue(self, key: str, payload: TriagePayload) -> bool:
        accepted = await self.job_repo.insert_or_rearm(
            key, payload, max_attempts=self.config.max_attempts, now_ms=self._clock()
        )
        if accepted:
            LOGGER.info("Enqueued job %s for ticket %s", key, payload.ticket_id)
            self._notify()
        else:
            LOGGER.info("Job %s already pending or in flight; enqueue ignored", key)
        return accepted

    async def try_dequeue(self) -> TriageJob | None:
        return await self.job_repo.claim_next(
            now_ms=self._clock(), lock_ms=self.config.stall_timeout_seconds * 1000
        )

    async def dequeue(self) -> TriageJob:
        """Return the next eligible job, waiting until one exists."""
        while True:
            wakeup = self._wakeup
            job = await self.try_dequeue()
            if job is not None:
                return job
            timeout = self.config.poll_interval_seconds
            next_run = await self.job_repo.next_run_at()
            if next_run is not None:
                timeout = min(timeout, max(0.0, (next_run - self._clock()) / 1000))
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass

    async def ack(self, job: TriageJob) -> bool:
        done = await self.job_repo.mark_completed(job.key, now_ms=self._clock())
        if not done:
            LOGGER.warning("Ack for job %s ignored; it is no longer active", job.key)
        return done

    async def fail(self, job: TriageJob, error: str) -> FailOutcome | None:
        """Reschedule with backoff, or mark permanently failed once the budget is spent.

        ``None`` means the job was no longer active (already acked or failed),
        so the caller must not record anything for it.
        """
        result = await self.job_repo.record_failure(
            job.key, error, now_ms=self._clock(), delay_for=self.backoff_for
        )
        if result is None:
            LOGGER.warning("Fail for job %s ignored; it is no longer active", job.key)
            return None
        status, attempt = result
        if status == JOB_STATUS_FAILED:
            LOGGER.warning("Job %s exhausted %s attempts", job.key, attempt)
            return FailOutcome(attempt=attempt, exhausted=True)
        delay = self.backoff_for(attempt)
        LOGGER.info("Job %s attempt %s failed; retrying in %sms", job.key, attempt, delay)
        self._notify()
        return FailOutcome(attempt=attempt, exhausted=False, delay_ms=delay)

    async def extend_lock(self, job: TriageJob) -> bool:
        """Renew the claim on ``job`` for another stall timeout.

        ``False`` means the claim was lost (stall recovery handed the job
        elsewhere) and the caller must drop it.
        """
        if job.locked_until_ms is None:
            return False
        now = self._clock()
        locked_until = now + self.config.stall_timeout_seconds * 1000
        renewed = await self.job_repo.extend_lock(
            job.key, held_until_ms=job.locked_until_ms, locked_until_ms=locked_until, now_ms=now
        )
        if renewed:
            job.locked_until_ms = locked_until
        else:
            LOGGER.warning("Lost the lock on job %s", job.key)
        return renewed

    async def release(self, job: TriageJob) -> bool:
        """Hand a claimed but unstarted job back without charging an attempt."""
        if job.locked_until_ms is None:
            return False
        released = await self.job_repo.release(job.key, held_until_ms=job.locked_until_ms, now_ms=self._clock())
        if released:
            LOGGER.info("Released job %s back to the queue", job.key)
            self._notify()
        return released

    async def requeue_stalled(self) -> StallSweep:
        requeued, failed = await self.job_repo.recover_stalled(
            now_ms=self._clock(), max_stalled_count=self.config.max_stalled_count
        )
        if requeued:
            LOGGER.warning("Returned %s stalled job(s) to the queue", requeued)
            self._notify()
        for job in failed:
            LOGGER.error("Job %s failed after stalling %s time(s)", job.key, job.stalled_count)
        return StallSweep(requeued=requeued, failed=tuple(failed))

    async def prune(self) -> int:
        now = self._clock()
        removed = await self.job_repo.prune_finished(
            completed_before_ms=now - self.config.completed_retention_seconds * 1000,
            failed_before_ms=now - self.config.failed_retention_seconds * 1000,
        )
        if removed:
            LOGGER.info("Pruned %s finished job record(s)", removed)
        return removed

    async def stats(self) -> QueueCounts:
        return await self.job_repo.counts(now_ms=self._clock())
