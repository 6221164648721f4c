from __future__ import annotations

from collections.abc import Callable, Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import ALL_PERMISSIONS, get_current_user
from app.crm.models import CRMLeadActivity, CRMQuoteItem, CRMStageHistory
from app.crm.seed import seed_reference_data
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
    seed_reference_data(db_session)

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "manager": ActorUser(
            user_id="manager-1",
            permissions=set(ALL_PERMISSIONS),
            display_name="Carla Manager",
            correlation_id="corr-deal",
        ),
        "seller": ActorUser(
            user_id="seller-1",
            permissions={"crm.leads.read", "crm.leads.write", "crm.deals.read", "crm.deals.write"},
            display_name="Ana Seller",
            correlation_id="corr-deal",
        ),
    }
    state = {"current": "manager"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _stages_by_name(client: TestClient, pipeline_name: str) -> tuple[str, dict[str, str]]:
    pipeline = next(row for row in client.get("/api/crm/pipelines").json() if row["name"] == pipeline_name)
    return pipeline["id"], {stage["name"]: stage["id"] for stage in pipeline["stages"]}


def _create_deal(client: TestClient, **extra: object) -> dict:
    lead = client.post("/api/crm/leads", json={"name": "Maria Lima", "company_name": "Lima Tractors"})
    assert lead.status_code == 201
    response = client.post("/api/crm/deals", json={"name": "Backhoe loader", "lead_id": lead.json()["id"], **extra})
    assert response.status_code == 201
    return response.json()


def test_create_deal_lands_on_default_pipeline_entry_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline_id, stages = _stages_by_name(test_client, "Commercial")

    deal = _create_deal(test_client, value="1200.00")

    assert deal["pipeline_id"] == pipeline_id
    assert deal["stage_id"] == stages["Prospecting"]
    assert deal["sale_status"] == "negotiation"
    assert Decimal(deal["value"]) == Decimal("1200.00")
    assert Decimal(deal["quote_value"]) == Decimal("0")

    history = test_client.get(f"/api/crm/deals/{deal['id']}/stage-history")
    assert history.status_code == 200
    assert [(row["stage_name"], row["left_at"]) for row in history.json()] == [("Prospecting", None)]


def test_create_deal_for_missing_lead_returns_404(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/crm/deals",
        json={"name": "Orphan", "lead_id": "00000000-0000-0000-0000-000000000000"},
    )
    assert response.status_code == 404
    assert response.json()["code"] == "crm_deal_create_failed"


def test_create_deal_with_stage_of_other_pipeline_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline_id, _ = _stages_by_name(test_client, "Commercial")
    _, logistics = _stages_by_name(test_client, "Purchasing and Logistics")
    lead = test_client.post("/api/crm/leads", json={"name": "Maria Lima"}).json()

    response = test_client.post(
        "/api/crm/deals",
        json={"name": "Loader", "lead_id": lead["id"], "pipeline_id": pipeline_id, "stage_id": logistics["Pickup"]},
    )
    assert response.status_code == 422


def test_move_stage_endpoint_and_activity_timeline(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _, stages = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)
    events.published_events.clear()

    moved = test_client.post(
        f"/api/crm/deals/{deal['id']}/move-stage",
        json={"stage_id": stages["Proposal"], "row_version": deal["row_version"]},
    )
    assert moved.status_code == 200
    body = moved.json()
    assert body["stage_id"] == stages["Proposal"]
    assert body["degraded"] is False
    assert body["row_version"] == deal["row_version"] + 1

    stale = test_client.post(
        f"/api/crm/deals/{deal['id']}/move-stage",
        json={"stage_id": stages["Negotiation"], "row_version": deal["row_version"]},
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "crm_deal_move_stage_failed"

    activities = test_client.get(f"/api/crm/deals/{deal['id']}/activities")
    assert activities.status_code == 200
    assert [row["activity_type"] for row in activities.json()] == ["stage_changed"]
    assert activities.json()[0]["description"] == "Stage changed from Prospecting to Proposal"
    assert activities.json()[0]["created_by"] == "Carla Manager"

    stage_events = [event for event in events.published_events if event["event_type"] == "crm.deal.stage_changed"]
    assert len(stage_events) == 1
    assert stage_events[0]["correlation_id"] == "corr-deal"


def test_switch_pipeline_endpoint_falls_back_to_first_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    logistics_id, logistics = _stages_by_name(test_client, "Purchasing and Logistics")
    _, commercial = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)

    response = test_client.post(
        f"/api/crm/deals/{deal['id']}/switch-pipeline",
        json={"pipeline_id": logistics_id, "stage_id": commercial["Proposal"]},
    )
    assert response.status_code == 200
    assert response.json()["pipeline_id"] == logistics_id
    assert response.json()["stage_id"] == logistics["Supplier"]

    activities = test_client.get(f"/api/crm/deals/{deal['id']}/activities").json()
    assert activities[0]["description"] == (
        "Moved from pipeline Commercial (Prospecting) to pipeline Purchasing and Logistics (Supplier)"
    )


def test_outcome_endpoint_requires_performance_for_won(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    response = test_client.post(f"/api/crm/deals/{deal['id']}/outcome", json={"sale_status": "won"})
    assert response.status_code == 422


def test_open_deal_move_into_completed_stage_points_to_outcome(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    _, stages = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)

    response = test_client.post(f"/api/crm/deals/{deal['id']}/move-stage", json={"stage_id": stages["Completed"]})
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "crm_deal_move_stage_failed"
    assert "/outcome" in body["message"]

    current = test_client.get(f"/api/crm/deals/{deal['id']}").json()
    assert current["stage_id"] == stages["Prospecting"]
    assert current["sale_status"] == "negotiation"


def test_won_then_reopen_round_trip(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _, stages = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)

    won = test_client.post(
        f"/api/crm/deals/{deal['id']}/outcome",
        json={"sale_status": "won", "sale_performance": "according_to_quote", "value": "980.00"},
    )
    assert won.status_code == 200
    assert won.json()["stage_id"] == stages["Completed"]
    assert won.json()["sale_performance"] == "according_to_quote"
    assert Decimal(won.json()["value"]) == Decimal("980.00")

    lost_move = test_client.post(f"/api/crm/deals/{deal['id']}/move-stage", json={"stage_id": stages["Lost"]})
    assert lost_move.status_code == 422

    reopened = test_client.post(f"/api/crm/deals/{deal['id']}/reopen", json={})
    assert reopened.status_code == 200
    assert reopened.json()["sale_status"] == "negotiation"
    assert reopened.json()["stage_id"] == stages["Prospecting"]
    assert reopened.json()["sale_performance"] is None


def test_lost_outcome_in_pipeline_without_lost_stage_is_degraded(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    logistics_id, logistics = _stages_by_name(test_client, "Purchasing and Logistics")
    deal = _create_deal(test_client, pipeline_id=logistics_id)

    response = test_client.post(
        f"/api/crm/deals/{deal['id']}/outcome",
        json={"sale_status": "lost", "lost_reason": "Competitor", "lost_notes": "Went with a rental"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["degraded"] is True
    assert body["sale_status"] == "lost"
    assert body["stage_id"] == logistics["Supplier"]
    assert body["lost_reason"] == "Competitor"


def test_seller_without_stage_permission_is_forbidden(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _, stages = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)

    set_actor("seller")
    response = test_client.post(f"/api/crm/deals/{deal['id']}/move-stage", json={"stage_id": stages["Proposal"]})
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.deals.change_stage"

    deleted = test_client.delete(f"/api/crm/deals/{deal['id']}")
    assert deleted.status_code == 403


def test_patch_deal_outcome_fields_follow_sale_status(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    rejected = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"sale_performance": "above_quote"})
    assert rejected.status_code == 422

    renamed = test_client.patch(
        f"/api/crm/deals/{deal['id']}",
        json={"name": "Backhoe loader 3CX", "status": "waiting", "row_version": deal["row_version"]},
    )
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Backhoe loader 3CX"
    assert renamed.json()["status"] == "waiting"

    stale = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"notes": "late", "row_version": 1})
    assert stale.status_code == 409


def test_list_deals_filters(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    logistics_id, _ = _stages_by_name(test_client, "Purchasing and Logistics")
    _create_deal(test_client)
    logistics_deal = _create_deal(test_client, pipeline_id=logistics_id)

    response = test_client.get("/api/crm/deals", params={"pipeline_id": logistics_id})
    assert response.status_code == 200
    assert [row["id"] for row in response.json()] == [logistics_deal["id"]]

    by_status = test_client.get("/api/crm/deals", params={"sale_status": "won"})
    assert by_status.json() == []


def test_quote_endpoints_maintain_quote_value(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client, value="5000.00")

    bucket = test_client.post(
        f"/api/crm/deals/{deal['id']}/quote-items",
        json={"description": "Bucket", "quantity": 2, "unit_price": "150.00"},
    )
    assert bucket.status_code == 201
    assert Decimal(bucket.json()["line_total"]) == Decimal("300.00")
    hose = test_client.post(
        f"/api/crm/deals/{deal['id']}/quote-items",
        json={"description": "Hose", "quantity": 1, "unit_price": "45.50"},
    )
    assert hose.status_code == 201

    fetched = test_client.get(f"/api/crm/deals/{deal['id']}").json()
    assert Decimal(fetched["quote_value"]) == Decimal("345.50")
    assert Decimal(fetched["value"]) == Decimal("5000.00")

    invalid = test_client.post(
        f"/api/crm/deals/{deal['id']}/quote-items",
        json={"description": "Free", "quantity": 0, "unit_price": "1"},
    )
    assert invalid.status_code == 422

    sub_cent = test_client.post(
        f"/api/crm/deals/{deal['id']}/quote-items",
        json={"description": "Washer", "quantity": 3, "unit_price": "0.005"},
    )
    assert sub_cent.status_code == 422

    patched = test_client.patch(f"/api/crm/quote-items/{hose.json()['id']}", json={"quantity": 2})
    assert patched.status_code == 200
    assert Decimal(patched.json()["line_total"]) == Decimal("91.00")

    selected = test_client.post(
        f"/api/crm/deals/{deal['id']}/select-quote",
        json={"item_ids": [bucket.json()["id"], hose.json()["id"]]},
    )
    assert selected.status_code == 200
    assert Decimal(selected.json()["value"]) == Decimal("391.00")

    removed = test_client.delete(f"/api/crm/quote-items/{bucket.json()['id']}")
    assert removed.status_code == 200
    fetched = test_client.get(f"/api/crm/deals/{deal['id']}").json()
    assert Decimal(fetched["quote_value"]) == Decimal("91.00")
    assert Decimal(fetched["value"]) == Decimal("391.00")

    quotations = test_client.get(f"/api/crm/deals/{deal['id']}/quotations")
    assert quotations.status_code == 200
    assert len(quotations.json()) == 1
    assert Decimal(quotations.json()[0]["total"]) == Decimal("91.00")

    recomputed = test_client.post(f"/api/crm/deals/{deal['id']}/recompute-value")
    assert recomputed.status_code == 200
    assert Decimal(recomputed.json()["quote_value"]) == Decimal("91.00")


def test_manual_activity_and_machines(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    logged = test_client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"activity_type": "meeting_scheduled", "description": "Site visit on Friday"},
    )
    assert logged.status_code == 201
    assert logged.json()["created_by"] == "Carla Manager"

    system_type = test_client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"activity_type": "stage_changed", "description": "forged"},
    )
    assert system_type.status_code == 422

    machine = test_client.post(
        f"/api/crm/deals/{deal['id']}/machines",
        json={"name": "Backhoe", "brand": "JCB", "model": "3CX", "year": 2019},
    )
    assert machine.status_code == 201
    patched = test_client.patch(f"/api/crm/machines/{machine.json()['id']}", json={"year": 2020})
    assert patched.status_code == 200
    assert patched.json()["year"] == 2020

    listed = test_client.get(f"/api/crm/deals/{deal['id']}/machines")
    assert [row["model"] for row in listed.json()] == ["3CX"]

    removed = test_client.delete(f"/api/crm/machines/{machine.json()['id']}")
    assert removed.status_code == 200
    assert test_client.get(f"/api/crm/deals/{deal['id']}/machines").json() == []


def test_delete_deal_cascades_and_second_delete_is_404(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _, stages = _stages_by_name(test_client, "Commercial")
    deal = _create_deal(test_client)
    test_client.post(
        f"/api/crm/deals/{deal['id']}/quote-items",
        json={"description": "Bucket", "quantity": 1, "unit_price": "150.00"},
    )
    test_client.post(f"/api/crm/deals/{deal['id']}/move-stage", json={"stage_id": stages["Proposal"]})

    response = test_client.delete(f"/api/crm/deals/{deal['id']}")
    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}

    for model in (CRMQuoteItem, CRMLeadActivity, CRMStageHistory):
        assert int(db_session.scalar(select(func.count()).select_from(model)) or 0) == 0

    again = test_client.delete(f"/api/crm/deals/{deal['id']}")
    assert again.status_code == 404
    assert again.json()["code"] == "crm_deal_delete_failed"

    fetched = test_client.get(f"/api/crm/deals/{deal['id']}")
    assert fetched.status_code == 404
