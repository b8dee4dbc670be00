from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

from utils.constants import CATEGORY_UNCATEGORIZED, JOB_KIND_TRIAGE, TICKET_STATUS_PENDING


@dataclass(slots=True)
class TicketRecord:
    id: str
    customer_name: str
    customer_email: str
    subject: str
    complaint: str
    status: str = TICKET_STATUS_PENDING
    category: str = CATEGORY_UNCATEGORIZED
    urgency: str | None = None
    sentiment_score: int | None = None
    ai_draft: str | None = None
    resolved_reply: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    resolved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TriagePayload:
    """The only payload a triage job carries: the target ticket."""

    ticket_id: str
    kind: Literal["triage"] = JOB_KIND_TRIAGE


@dataclass(slots=True)
class TriageJob:
    key: str
    payload: TriagePayload
    status: str
    attempt: int
    max_attempts: int
    run_at_ms: int
    locked_until_ms: int | None = None
    last_error: str | None = None
    created_at_ms: int | None = None
    finished_at_ms: int | None = None
    stalled_count: int = 0

    @property
    def ticket_id(self) -> str:
        return self.payload.ticket_id


@dataclass(slots=True)
class QueueCounts:
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
