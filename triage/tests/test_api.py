from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from core.api import create_api_app
from core.errors import ConflictingStateError, TicketNotFoundError
from database.models import QueueCounts, TicketRecord
from services.analytics_service import DashboardMetrics
from services.ticket_service import TicketPage


def _ticket(**overrides) -> TicketRecord:
    fields = {
        "id": "t-1",
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "subject": "Charged twice",
        "complaint": "I was charged twice for order TXN-001.",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }
    fields.update(overrides)
    return TicketRecord(**fields)


@pytest.fixture
def runtime() -> SimpleNamespace:
    ticket_service = MagicMock()
    ticket_service.create_ticket = AsyncMock(return_value=_ticket())
    ticket_service.get_ticket = AsyncMock(return_value=_ticket())
    ticket_service.list_tickets = AsyncMock(
        return_value=TicketPage(items=[_ticket()], page=1, limit=20, total=1)
    )
    ticket_service.resolve_ticket = AsyncMock(
        return_value=_ticket(status="RESOLVED", resolved_reply="Refunded.")
    )
    ticket_service.retry_triage = AsyncMock(return_value="triage-t-1-retry-1")
    analytics_service = MagicMock()
    analytics_service.build_dashboard = AsyncMock(
        return_value=DashboardMetrics(
            by_status={"PENDING": 1},
            by_urgency={"UNSET": 1},
            queue=QueueCounts(waiting=1),
        )
    )
    return SimpleNamespace(ticket_service=ticket_service, analytics_service=analytics_service)


@pytest.fixture
def client(runtime) -> TestClient:
    return TestClient(create_api_app(runtime))


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_ticket_returns_201(client, runtime) -> None:
    response = client.post(
        "/tickets",
        json={
            "customerName": "Jane Doe",
            "customerEmail": "jane@example.com",
            "subject": "Charged twice",
            "complaint": "I was charged twice for order TXN-001.",
        },
    )

    assert response.status_code == 201
    assert response.json()["data"]["status"] == "PENDING"
    runtime.ticket_service.create_ticket.assert_awaited_once_with(
        customer_name="Jane Doe",
        customer_email="jane@example.com",
        subject="Charged twice",
        complaint="I was charged twice for order TXN-001.",
    )


def test_create_ticket_validates_body(client, runtime) -> None:
    response = client.post(
        "/tickets",
        json={"customerName": "Jane", "customerEmail": "not-an-email", "subject": "", "complaint": "short"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Validation failed."
    assert {item["field"] for item in body["details"]} == {"customerEmail", "subject", "complaint"}
    runtime.ticket_service.create_ticket.assert_not_awaited()


def test_list_tickets_passes_query(client, runtime) -> None:
    response = client.get("/tickets", params={"status": "TRIAGED", "sort": "urgency", "order": "asc"})

    assert response.status_code == 200
    assert response.json()["meta"] == {"page": 1, "limit": 20, "total": 1, "total_pages": 1}
    kwargs = runtime.ticket_service.list_tickets.await_args.kwargs
    assert kwargs["status"] == "TRIAGED"
    assert kwargs["sort"] == "urgency"
    assert kwargs["order"] == "asc"


def test_list_tickets_rejects_oversized_limit(client) -> None:
    assert client.get("/tickets", params={"limit": 101}).status_code == 422


def test_stats_route_is_not_treated_as_ticket_id(client, runtime) -> None:
    response = client.get("/tickets/stats")

    assert response.status_code == 200
    assert response.json()["data"]["queue"]["waiting"] == 1
    runtime.ticket_service.get_ticket.assert_not_awaited()


def test_missing_ticket_maps_to_404(client, runtime) -> None:
    runtime.ticket_service.get_ticket.side_effect = TicketNotFoundError()

    response = client.get("/tickets/nope")

    assert response.status_code == 404
    assert response.json() == {"error": "Ticket not found."}


def test_resolve_conflict_maps_to_409(client, runtime) -> None:
    runtime.ticket_service.resolve_ticket.side_effect = ConflictingStateError("Ticket is already resolved.")

    response = client.patch("/tickets/t-1/resolve", json={"resolvedReply": "Again"})

    assert response.status_code == 409
    assert response.json() == {"error": "Ticket is already resolved."}


def test_resolve_ticket(client, runtime) -> None:
    response = client.patch("/tickets/t-1/resolve", json={"resolvedReply": "Refunded."})

    assert response.status_code == 200
    assert response.json()["data"]["resolved_reply"] == "Refunded."
    runtime.ticket_service.resolve_ticket.assert_awaited_once_with("t-1", "Refunded.")


def test_retry_ticket(client, runtime) -> None:
    response = client.post("/tickets/t-1/retry")

    assert response.status_code == 200
    assert response.json() == {"message": "Triage retry enqueued.", "job_key": "triage-t-1-retry-1"}
