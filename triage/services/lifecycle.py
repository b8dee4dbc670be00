"""Ticket status state machine and the invariants tied to it.

Happy path: PENDING -> PROCESSING -> TRIAGED -> RESOLVED.
PROCESSING -> FAILED happens when the attempt budget runs out, and FAILED
(or a never-delivered PENDING) goes back to PENDING only on an explicit retry.
RESOLVED is terminal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from core.errors import ConflictingStateError
from utils.constants import (
    CATEGORY_UNCATEGORIZED,
    TICKET_STATUS_FAILED,
    TICKET_STATUS_PENDING,
    TICKET_STATUS_PROCESSING,
    TICKET_STATUS_RESOLVED,
    TICKET_STATUS_TRIAGED,
    TRIAGE_FIELDS,
)

if TYPE_CHECKING:
    from database.models import TicketRecord
    from services.validator import TriageResult

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    TICKET_STATUS_PENDING: frozenset(
        {TICKET_STATUS_PENDING, TICKET_STATUS_PROCESSING, TICKET_STATUS_RESOLVED}
    ),
    TICKET_STATUS_PROCESSING: frozenset(
        {
            TICKET_STATUS_PROCESSING,
            TICKET_STATUS_TRIAGED,
            TICKET_STATUS_FAILED,
            TICKET_STATUS_RESOLVED,
        }
    ),
    TICKET_STATUS_TRIAGED: frozenset({TICKET_STATUS_RESOLVED}),
    TICKET_STATUS_FAILED: frozenset({TICKET_STATUS_PENDING, TICKET_STATUS_RESOLVED}),
    TICKET_STATUS_RESOLVED: frozenset(),
}

# A worker may (re)claim a ticket only from these; anything else means the job is stale.
CLAIMABLE_STATUSES = (TICKET_STATUS_PENDING, TICKET_STATUS_PROCESSING)
RETRYABLE_STATUSES = (TICKET_STATUS_FAILED, TICKET_STATUS_PENDING)
RESOLVABLE_STATUSES = tuple(
    status for status, targets in ALLOWED_TRANSITIONS.items() if TICKET_STATUS_RESOLVED in targets
)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(ticket: TicketRecord, target: str) -> None:
    if not can_transition(ticket.status, target):
        raise ConflictingStateError(
            f"Ticket {ticket.id} cannot move from {ticket.status} to {target}."
        )


def ensure_retryable(ticket: TicketRecord) -> None:
    if ticket.status not in RETRYABLE_STATUSES:
        raise ConflictingStateError("Only FAILED or PENDING tickets can be retried.")


def ensure_resolvable(ticket: TicketRecord) -> None:
    if ticket.status == TICKET_STATUS_RESOLVED:
        raise ConflictingStateError("Ticket is already resolved.")
    ensure_transition(ticket, TICKET_STATUS_RESOLVED)


def _is_unset(name: str, value: Any) -> bool:
    return value is None or (name == "category" and value == CATEGORY_UNCATEGORIZED)


def check_triage_fields(fields: dict[str, Any]) -> None:
    """Reject a write that would persist part of a triage result."""
    present = [name for name in TRIAGE_FIELDS if name in fields]
    if not present:
        return
    if len(present) != len(TRIAGE_FIELDS):
        missing = sorted(set(TRIAGE_FIELDS) - set(present))
        raise ValueError(f"Triage fields must be written together; missing {missing}")
    unset = [name for name in TRIAGE_FIELDS if _is_unset(name, fields[name])]
    if unset and len(unset) != len(TRIAGE_FIELDS):
        raise ValueError(f"Triage fields must be all set or all cleared; unset {unset}")


def triage_fields(result: TriageResult) -> dict[str, Any]:
    return {
        "category": result.category,
        "urgency": result.urgency,
        "sentiment_score": result.sentiment_score,
        "ai_draft": result.draft,
    }


def initial_job_key(ticket_id: str) -> str:
    return f"triage-{ticket_id}"


def retry_job_key(ticket_id: str, marker: int) -> str:
    # Two retries in the same millisecond share a key and collapse into one job.
    return f"triage-{ticket_id}-retry-{marker}"
