from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMLead
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "seller": ActorUser(
            user_id="user-1",
            permissions={"crm.leads.read", "crm.leads.write", "crm.deals.read"},
            display_name="Ana Seller",
            correlation_id="corr-lead",
        ),
        "viewer": ActorUser(
            user_id="user-2",
            permissions={"crm.leads.read"},
            correlation_id="corr-lead",
        ),
    }
    state = {"current": "seller"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead_payload(name: str = "Maria Lima", city: str = "Curitiba") -> dict[str, str]:
    return {
        "name": name,
        "company_name": f"{name} Tractors",
        "client_category": "reseller",
        "client_type": "company",
        "cnpj": "12.345.678/0001-90",
        "email": "maria@example.com",
        "phone": "+55 41 99999-0000",
        "city": city,
        "state": "PR",
        "external_contact_id": f"wa-{name.lower().replace(' ', '-')}",
    }


def test_create_lead_requires_name(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/leads", json={"company_name": "No Name Ltd"})
    assert response.status_code == 422


def test_create_lead_rejects_blank_name(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/leads", json={"name": "   "})
    assert response.status_code == 422
    assert response.json()["code"] == "crm_lead_create_failed"
    assert response.json()["message"] == "name is required"


def test_create_and_get_lead(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    events.published_events.clear()

    create = test_client.post("/api/crm/leads", json=_create_lead_payload())
    assert create.status_code == 201
    body = create.json()
    assert body["name"] == "Maria Lima"
    assert body["client_category"] == "reseller"
    assert body["row_version"] == 1

    fetched = test_client.get(f"/api/crm/leads/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["email"] == "maria@example.com"

    assert int(db_session.scalar(select(func.count()).select_from(CRMLead)) or 0) == 1
    assert any(event["event_type"] == "crm.lead.created" for event in events.published_events)


def test_list_leads_filters_by_city_and_text(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.post("/api/crm/leads", json=_create_lead_payload("Maria Lima", "Curitiba")).status_code == 201
    assert test_client.post("/api/crm/leads", json=_create_lead_payload("Joao Souza", "Londrina")).status_code == 201

    by_city = test_client.get("/api/crm/leads", params={"city": "Londrina"})
    assert by_city.status_code == 200
    assert [row["name"] for row in by_city.json()] == ["Joao Souza"]

    by_text = test_client.get("/api/crm/leads", params={"q": "maria"})
    assert by_text.status_code == 200
    assert [row["name"] for row in by_text.json()] == ["Maria Lima"]


def test_patch_lead_bumps_row_version(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = test_client.post("/api/crm/leads", json=_create_lead_payload()).json()

    response = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"phone": "+55 41 98888-1111"})
    assert response.status_code == 200
    assert response.json()["phone"] == "+55 41 98888-1111"
    assert response.json()["row_version"] == 2


def test_get_missing_lead_returns_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.get("/api/crm/leads/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "crm_lead_get_failed"
    assert body["message"] == "lead not found"


def test_viewer_cannot_create_leads(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("viewer")
    response = test_client.post("/api/crm/leads", json=_create_lead_payload())
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.leads.write"

    listed = test_client.get("/api/crm/leads")
    assert listed.status_code == 200
    assert listed.json() == []


def test_list_lead_deals_requires_deal_read(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead = test_client.post("/api/crm/leads", json=_create_lead_payload()).json()

    listed = test_client.get(f"/api/crm/leads/{lead['id']}/deals")
    assert listed.status_code == 200
    assert listed.json() == []

    set_actor("viewer")
    denied = test_client.get(f"/api/crm/leads/{lead['id']}/deals")
    assert denied.status_code == 403
