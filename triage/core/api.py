from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from core.errors import ConflictingStateError, TicketNotFoundError
from utils.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from utils.time import now_iso

if TYPE_CHECKING:
    from core.runtime import TriageRuntime

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CreateTicketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    customer_name: str = Field(alias="customerName", min_length=1, max_length=255)
    customer_email: str = Field(alias="customerEmail", max_length=255, pattern=EMAIL_PATTERN)
    subject: str = Field(min_length=1, max_length=500)
    complaint: str = Field(min_length=10, max_length=10_000)


class ResolveTicketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    resolved_reply: str = Field(alias="resolvedReply", min_length=1, max_length=10_000)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def create_api_app(runtime: TriageRuntime) -> FastAPI:
    app = FastAPI(title="Ticket Triage API", version="1.0.0")

    @app.exception_handler(TicketNotFoundError)
    async def not_found(_: Request, exc: TicketNotFoundError) -> JSONResponse:
        return _error(404, exc.user_message)

    @app.exception_handler(ConflictingStateError)
    async def conflict(_: Request, exc: ConflictingStateError) -> JSONResponse:
        return _error(409, exc.user_message)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        return _error(422, "Validation failed.", details=details)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": now_iso()}

    @app.post("/tickets", status_code=201)
    async def create_ticket(body: CreateTicketRequest) -> dict[str, Any]:
        ticket = await runtime.ticket_service.create_ticket(
            customer_name=body.customer_name,
            customer_email=body.customer_email,
            subject=body.subject,
            complaint=body.complaint,
        )
        return {"data": ticket.to_dict(), "message": "Ticket created. AI triage processing in background."}

    @app.get("/tickets")
    async def list_tickets(
        status: str | None = None,
        urgency: str | None = None,
        category: str | None = None,
        sort: str = "created_at",
        order: Literal["asc", "desc"] = "desc",
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    ) -> dict[str, Any]:
        result = await runtime.ticket_service.list_tickets(
            status=status,
            urgency=urgency,
            category=category,
            sort=sort,
            order=order,
            page=page,
            limit=limit,
        )
        return {
            "data": [ticket.to_dict() for ticket in result.items],
            "meta": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "total_pages": result.total_pages,
            },
        }

    # Registered before /tickets/{ticket_id} so "stats" is not taken as an id.
    @app.get("/tickets/stats")
    async def stats() -> dict[str, Any]:
        dashboard = await runtime.analytics_service.build_dashboard()
        return {"data": dashboard.to_dict()}

    @app.get("/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str) -> dict[str, Any]:
        ticket = await runtime.ticket_service.get_ticket(ticket_id)
        return {"data": ticket.to_dict()}

    @app.patch("/tickets/{ticket_id}/resolve")
    async def resolve_ticket(ticket_id: str, body: ResolveTicketRequest) -> dict[str, Any]:
        ticket = await runtime.ticket_service.resolve_ticket(ticket_id, body.resolved_reply)
        return {"data": ticket.to_dict(), "message": "Ticket resolved successfully."}

    @app.post("/tickets/{ticket_id}/retry")
    async def retry_ticket(ticket_id: str) -> dict[str, Any]:
        job_key = await runtime.ticket_service.retry_triage(ticket_id)
        return {"message": "Triage retry enqueued.", "job_key": job_key}

    return app
