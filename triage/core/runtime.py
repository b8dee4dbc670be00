from __future__ import annotations

import logging
from types import TracebackType

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import JobRepository, TicketRepository
from services.analytics_service import AnalyticsService
from services.cache import CacheBackend, build_cache
from services.classifier import ClassifierClient, OpenAIClassifierClient
from services.job_queue import JobQueue
from services.ticket_service import TicketService, TicketServiceDeps
from services.triage_procedure import TriageProcedure
from services.worker_pool import WorkerPool
from utils.rate_limit import DistributedRateLimiter

LOGGER = logging.getLogger(__name__)


class TriageRuntime:
    """Owns every long-lived resource: database, cache, classifier client, queue and workers.

    ``async with TriageRuntime(config)`` connects and migrates, reconciles
    tickets left behind by a crash and starts the worker pool; leaving the
    block drains the pool and closes everything in reverse order.
    """

    def __init__(
        self,
        config: AppConfig,
        classifier: ClassifierClient | None = None,
        start_workers: bool = True,
    ) -> None:
        self.config = config
        self.start_workers = start_workers
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.classifier: ClassifierClient = classifier or OpenAIClassifierClient(config.classifier)
        self.cache: CacheBackend | None = None

        # Initialized in setup().
        self.ticket_repo: TicketRepository
        self.job_repo: JobRepository
        self.queue: JobQueue
        self.procedure: TriageProcedure
        self.pool: WorkerPool
        self.ticket_service: TicketService
        self.analytics_service: AnalyticsService

    async def setup(self) -> None:
        await self.database.connect()
        applied = await run_migrations(self.database)
        if applied:
            LOGGER.info("Applied migrations: %s", ", ".join(applied))
        self.cache = await build_cache(self.config.redis)

        self.ticket_repo = TicketRepository(self.database)
        self.job_repo = JobRepository(self.database)
        self.queue = JobQueue(self.job_repo, self.config.queue)
        self.procedure = TriageProcedure(
            self.ticket_repo,
            self.classifier,
            classify_timeout_seconds=self.config.classifier.timeout_seconds,
        )
        self.pool = WorkerPool(
            self.queue,
            self.procedure,
            DistributedRateLimiter(self.cache),
            self.config.worker,
            self.config.queue,
        )
        self.ticket_service = TicketService(
            TicketServiceDeps(ticket_repo=self.ticket_repo, job_repo=self.job_repo, queue=self.queue)
        )
        self.analytics_service = AnalyticsService(self.ticket_repo, self.queue)

        await self.pool.recover_stalled()
        stranded = await self.ticket_service.reconcile_stranded_tickets()
        if stranded:
            LOGGER.warning("Marked %s stranded ticket(s) FAILED", len(stranded))
        if self.start_workers:
            await self.pool.start()

    async def close(self) -> None:
        pool = getattr(self, "pool", None)
        if pool is not None:
            await pool.stop()
        await self.classifier.close()
        if self.cache:
            await self.cache.close()
            self.cache = None
        await self.database.close()
        LOGGER.info("Triage runtime closed")

    async def __aenter__(self) -> TriageRuntime:
        try:
            await self.setup()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
