from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest_asyncio

from core.config import QueueConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import JobRepository, TicketRepository
from services.job_queue import JobQueue


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeClassifier:
    """Replays scripted replies; an Exception instance in the script is raised instead."""

    def __init__(self, *replies: str | Exception, delay: float = 0.0) -> None:
        self.replies = list(replies)
        self.delay = delay
        self.prompts: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def classify(self, prompt: str) -> str:
        self.prompts.append(prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database(url=f"sqlite:///{tmp_path / 'triage.db'}")
    await database.connect()
    await run_migrations(database)
    yield database
    await database.close()


@pytest_asyncio.fixture
async def ticket_repo(db: Database) -> TicketRepository:
    return TicketRepository(db)


@pytest_asyncio.fixture
async def job_repo(db: Database) -> JobRepository:
    return JobRepository(db)


@pytest_asyncio.fixture
async def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def queue(job_repo: JobRepository, clock: FakeClock) -> JobQueue:
    config = QueueConfig(poll_interval_seconds=0.05, backoff_base_ms=2000)
    return JobQueue(job_repo, config, clock=clock)
