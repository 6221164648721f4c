from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import ALL_PERMISSIONS
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_deal(client: TestClient, correlation_id: str) -> dict:
    headers = {"X-Correlation-Id": correlation_id}
    pipeline = client.post("/api/crm/pipelines", json={"name": "Commercial", "is_default": True}, headers=headers)
    assert pipeline.status_code == 201
    for name, position in (("Prospecting", 1), ("Proposal", 2)):
        stage = client.post(
            f"/api/crm/pipelines/{pipeline.json()['id']}/stages",
            json={"name": name, "position": position},
            headers=headers,
        )
        assert stage.status_code == 201
    lead = client.post("/api/crm/leads", json={"name": "Corr Lead"}, headers=headers)
    assert lead.status_code == 201
    deal = client.post("/api/crm/deals", json={"name": "Corr Deal", "lead_id": lead.json()["id"]}, headers=headers)
    assert deal.status_code == 201
    return deal.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"name": "Corr Lead", "company_name": "Corr Co"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_transition_and_delete_events_carry_request_correlation_id(client: TestClient) -> None:
    deal = _create_deal(client, "corr-setup-1")
    stages = client.get(f"/api/crm/pipelines/{deal['pipeline_id']}/stages").json()
    proposal = next(stage for stage in stages if stage["name"] == "Proposal")

    moved = client.post(
        f"/api/crm/deals/{deal['id']}/move-stage",
        json={"stage_id": proposal["id"]},
        headers={"X-Correlation-Id": "corr-move-1"},
    )
    assert moved.status_code == 200

    deleted = client.delete(f"/api/crm/deals/{deal['id']}", headers={"X-Correlation-Id": "corr-delete-1"})
    assert deleted.status_code == 200

    by_type = {item["event_type"]: item for item in events.published_events}
    assert by_type["crm.deal.created"]["correlation_id"] == "corr-setup-1"
    assert by_type["crm.deal.stage_changed"]["correlation_id"] == "corr-move-1"
    assert by_type["crm.deal.deleted"]["correlation_id"] == "corr-delete-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post(
        "/api/crm/leads",
        json={"name": "Rate Limit Lead 1"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 201

    second = client.post(
        "/api/crm/leads",
        json={"name": "Rate Limit Lead 2"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
