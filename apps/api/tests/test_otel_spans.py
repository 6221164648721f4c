from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import ALL_PERMISSIONS
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


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


def _create_deal(client: TestClient) -> tuple[dict, dict[str, str]]:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    stages: dict[str, str] = {}
    for name, position in (("Open", 1), ("Proposal", 2)):
        stage = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": name, "position": position})
        assert stage.status_code == 201
        stages[name] = stage.json()["id"]

    lead = client.post("/api/crm/leads", json={"name": "OTel Lead"})
    assert lead.status_code == 201
    deal = client.post("/api/crm/deals", json={"name": "OTel Deal", "lead_id": lead.json()["id"]})
    assert deal.status_code == 201
    return deal.json(), stages


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"name": "OTel Lead"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_transition_span_contains_deal_id_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    deal, stages = _create_deal(client)

    moved = client.post(
        f"/api/crm/deals/{deal['id']}/move-stage",
        json={"stage_id": stages["Proposal"]},
        headers={"X-Correlation-Id": "otel-move-corr-1"},
    )
    assert moved.status_code == 200

    transition_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.deal.transition"]
    assert transition_spans
    assert any(
        span.attributes.get("deal_id") == deal["id"]
        and span.attributes.get("transition") == "move_to_stage"
        and span.attributes.get("correlation_id") == "otel-move-corr-1"
        and span.attributes.get("degraded") is False
        for span in transition_spans
    )


def test_delete_span_records_whether_deal_was_found(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    deal, _ = _create_deal(client)

    first = client.delete(f"/api/crm/deals/{deal['id']}", headers={"X-Correlation-Id": "otel-delete-corr-1"})
    assert first.status_code == 200
    second = client.delete(f"/api/crm/deals/{deal['id']}")
    assert second.status_code == 404

    delete_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.deal.delete"]
    assert [span.attributes.get("found") for span in delete_spans] == [True, False]
    assert delete_spans[0].attributes.get("deal_id") == deal["id"]
    assert delete_spans[0].attributes.get("correlation_id") == "otel-delete-corr-1"
