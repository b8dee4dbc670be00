"""One triage pass for one ticket, safe to run again on redelivery.

``run`` never raises for expected failures; it returns a ``TriageOutcome``
and the worker pool decides whether to ``ack`` or ``fail`` the job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from core.errors import ClassifierTransportError, TriageError
from core.logging import job_context
from database.models import TicketRecord, TriageJob
from database.repositories import TicketRepository
from services.classifier import ClassifierClient, build_triage_prompt
from services.lifecycle import CLAIMABLE_STATUSES, triage_fields
from services.validator import TriageResult, parse_triage_response
from utils.constants import (
    TICKET_STATUS_FAILED,
    TICKET_STATUS_PROCESSING,
    TICKET_STATUS_TRIAGED,
)

LOGGER = logging.getLogger(__name__)

OUTCOME_TRIAGED = "triaged"
OUTCOME_SKIPPED = "skipped"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_RETRYABLE = "retryable"


@dataclass(frozen=True, slots=True)
class TriageOutcome:
    kind: str
    detail: str | None = None
    result: TriageResult | None = None

    @property
    def should_ack(self) -> bool:
        return self.kind != OUTCOME_RETRYABLE


class TriageProcedure:
    def __init__(
        self,
        ticket_repo: TicketRepository,
        classifier: ClassifierClient,
        classify_timeout_seconds: float = 30.0,
    ) -> None:
        self.ticket_repo = ticket_repo
        self.classifier = classifier
        self.classify_timeout_seconds = classify_timeout_seconds

    async def run(self, job: TriageJob) -> TriageOutcome:
        ticket_id = job.ticket_id
        context = job_context(ticket_id, job.key, job.attempt)

        claimed = await self.ticket_repo.update(
            ticket_id,
            {"status": TICKET_STATUS_PROCESSING},
            expected_statuses=CLAIMABLE_STATUSES,
        )
        if claimed is None:
            return await self._unclaimable(job)

        # Build the request from what is persisted now, never from the job payload.
        ticket = await self.ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            return await self._unclaimable(job)

        LOGGER.info("Triaging ticket %s (attempt %s)", ticket_id, job.attempt, extra=context)
        try:
            result = await self._classify(ticket)
        except TriageError as exc:
            if not exc.retryable:
                raise
            LOGGER.warning("Triage attempt failed for ticket %s: %s", ticket_id, exc, extra=context)
            return TriageOutcome(kind=OUTCOME_RETRYABLE, detail=str(exc))

        saved = await self.ticket_repo.update(
            ticket_id,
            {"status": TICKET_STATUS_TRIAGED, **triage_fields(result), "error_message": None},
            expected_statuses=(TICKET_STATUS_PROCESSING,),
        )
        if saved is None:
            # Resolved or triaged by a concurrent job while the classifier was running.
            LOGGER.info("Ticket %s left PROCESSING mid-flight; result discarded", ticket_id, extra=context)
            return TriageOutcome(kind=OUTCOME_SKIPPED, detail="ticket changed during triage")

        LOGGER.info(
            "Ticket %s triaged: %s / %s / sentiment=%s",
            ticket_id,
            result.category,
            result.urgency,
            result.sentiment_score,
            extra=context,
        )
        return TriageOutcome(kind=OUTCOME_TRIAGED, result=result)

    async def _classify(self, ticket: TicketRecord) -> TriageResult:
        prompt = build_triage_prompt(ticket)
        try:
            raw = await asyncio.wait_for(
                self.classifier.classify(prompt), timeout=self.classify_timeout_seconds
            )
        except TimeoutError as exc:
            raise ClassifierTransportError(f"timed out after {self.classify_timeout_seconds}s") from exc
        return parse_triage_response(raw)

    async def _unclaimable(self, job: TriageJob) -> TriageOutcome:
        context = job_context(job.ticket_id, job.key, job.attempt)
        ticket = await self.ticket_repo.get_by_id(job.ticket_id)
        if ticket is None:
            LOGGER.error(
                "Ticket %s does not exist; dropping job %s (attempt %s)",
                job.ticket_id,
                job.key,
                job.attempt,
                extra=context,
            )
            return TriageOutcome(kind=OUTCOME_NOT_FOUND, detail=f"Ticket {job.ticket_id} not found.")
        LOGGER.info(
            "Ticket %s is %s; job %s has nothing to do", ticket.id, ticket.status, job.key, extra=context
        )
        return TriageOutcome(kind=OUTCOME_SKIPPED, detail=f"ticket already {ticket.status}")

    async def record_attempt_failure(self, job: TriageJob, detail: str) -> None:
        """Surface the latest failure on the ticket while a retry is still coming."""
        await self.ticket_repo.update(
            job.ticket_id,
            {"error_message": detail},
            expected_statuses=(TICKET_STATUS_PROCESSING,),
        )

    async def record_exhausted(self, job: TriageJob, detail: str, attempts: int) -> TicketRecord | None:
        ticket = await self.ticket_repo.update(
            job.ticket_id,
            {"status": TICKET_STATUS_FAILED, "error_message": detail, "retry_count": attempts},
            expected_statuses=(TICKET_STATUS_PROCESSING,),
        )
        if ticket is not None:
            LOGGER.error(
                "Ticket %s marked FAILED after %s attempts: %s",
                job.ticket_id,
                attempts,
                detail,
                extra=job_context(job.ticket_id, job.key, attempts),
            )
        return ticket
