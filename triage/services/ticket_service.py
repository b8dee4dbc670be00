from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from core.errors import ConflictingStateError, TicketNotFoundError
from database.models import TicketRecord, TriagePayload
from database.repositories import JobRepository, TicketRepository
from services.job_queue import JobQueue
from services.lifecycle import (
    RESOLVABLE_STATUSES,
    RETRYABLE_STATUSES,
    ensure_resolvable,
    ensure_retryable,
    initial_job_key,
    retry_job_key,
)
from utils.constants import (
    DEFAULT_PAGE_SIZE,
    JOB_STATUS_FAILED,
    MAX_PAGE_SIZE,
    TICKET_STATUS_FAILED,
    TICKET_STATUS_PENDING,
    TICKET_STATUS_PROCESSING,
    TICKET_STATUS_RESOLVED,
)
from utils.time import epoch_ms, now_iso

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    job_repo: JobRepository
    queue: JobQueue


@dataclass(slots=True)
class TicketPage:
    items: list[TicketRecord]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


class TicketService:
    def __init__(self, deps: TicketServiceDeps) -> None:
        self.deps = deps

    async def get_ticket(self, ticket_id: str) -> TicketRecord:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        return ticket

    async def list_tickets(
        self,
        status: str | None = None,
        urgency: str | None = None,
        category: str | None = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> TicketPage:
        items, total = await self.deps.ticket_repo.list(
            filters={"status": status, "urgency": urgency, "category": category},
            sort=sort,
            order=order,
            page=page,
            limit=limit,
        )
        effective_limit = max(1, min(limit, MAX_PAGE_SIZE))
        return TicketPage(items=items, page=max(1, page), limit=effective_limit, total=total)

    async def create_ticket(
        self,
        customer_name: str,
        customer_email: str,
        subject: str,
        complaint: str,
    ) -> TicketRecord:
        """Persist a PENDING ticket and hand it to the queue without waiting on triage."""
        ticket = await self.deps.ticket_repo.create(
            customer_name=customer_name,
            customer_email=customer_email,
            subject=subject,
            complaint=complaint,
        )
        await self.submit_for_triage(ticket.id)
        LOGGER.info("Created ticket %s", ticket.id)
        return ticket

    async def submit_for_triage(self, ticket_id: str) -> bool:
        return await self.deps.queue.enqueue(initial_job_key(ticket_id), TriagePayload(ticket_id=ticket_id))

    async def retry_triage(self, ticket_id: str) -> str:
        ticket = await self.get_ticket(ticket_id)
        ensure_retryable(ticket)

        reset = await self.deps.ticket_repo.update(
            ticket_id,
            {"status": TICKET_STATUS_PENDING, "error_message": None},
            expected_statuses=RETRYABLE_STATUSES,
        )
        if reset is None:
            raise ConflictingStateError("Only FAILED or PENDING tickets can be retried.")

        live = await self.deps.job_repo.live_for_ticket(ticket_id)
        if live is not None:
            LOGGER.info("Ticket %s already has job %s queued or running; retry reuses it", ticket_id, live.key)
            return live.key

        key = retry_job_key(ticket_id, epoch_ms())
        await self.deps.queue.enqueue(key, TriagePayload(ticket_id=ticket_id))
        LOGGER.info("Triage retry enqueued for ticket %s as %s", ticket_id, key)
        return key

    async def resolve_ticket(self, ticket_id: str, resolved_reply: str) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        ensure_resolvable(ticket)

        resolved = await self.deps.ticket_repo.update(
            ticket_id,
            {
                "status": TICKET_STATUS_RESOLVED,
                "resolved_reply": resolved_reply,
                "resolved_at": now_iso(),
            },
            expected_statuses=RESOLVABLE_STATUSES,
        )
        if resolved is None:
            # Lost a race with another resolution.
            raise ConflictingStateError("Ticket is already resolved.")
        LOGGER.info("Ticket %s resolved", ticket_id)
        return resolved

    async def reconcile_stranded_tickets(self) -> list[str]:
        """Fail PROCESSING tickets whose job already ran out of attempts.

        Covers a crash between the queue recording exhaustion and the ticket
        being marked FAILED.
        """
        stranded: list[str] = []
        for ticket in await self.deps.ticket_repo.list_by_status(TICKET_STATUS_PROCESSING):
            if await self.deps.job_repo.live_for_ticket(ticket.id) is not None:
                continue
            job = await self.deps.job_repo.latest_for_ticket(ticket.id)
            if job is None or job.status != JOB_STATUS_FAILED:
                continue
            fields: dict[str, Any] = {
                "status": TICKET_STATUS_FAILED,
                "error_message": job.last_error or ticket.error_message or "Triage job failed.",
                "retry_count": job.attempt,
            }
            updated = await self.deps.ticket_repo.update(
                ticket.id, fields, expected_statuses=(TICKET_STATUS_PROCESSING,)
            )
            if updated is not None:
                LOGGER.warning("Ticket %s was stranded in PROCESSING; marked FAILED", ticket.id)
                stranded.append(ticket.id)
        return stranded
