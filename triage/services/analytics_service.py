from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from database.models import QueueCounts
from database.repositories import TicketRepository
from services.job_queue import JobQueue


@dataclass(slots=True)
class DashboardMetrics:
    by_status: dict[str, int]
    by_urgency: dict[str, int]
    queue: QueueCounts

    @property
    def total_tickets(self) -> int:
        return sum(self.by_status.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_status": self.by_status,
            "by_urgency": self.by_urgency,
            "queue": self.queue.to_dict(),
        }


class AnalyticsService:
    def __init__(self, ticket_repo: TicketRepository, queue: JobQueue) -> None:
        self.ticket_repo = ticket_repo
        self.queue = queue

    async def build_dashboard(self) -> DashboardMetrics:
        by_status = await self.ticket_repo.count_grouped_by("status")
        by_urgency = await self.ticket_repo.count_grouped_by("urgency")
        queue = await self.queue.stats()
        return DashboardMetrics(by_status=by_status, by_urgency=by_urgency, queue=queue)
