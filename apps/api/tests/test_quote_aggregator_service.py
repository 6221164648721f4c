from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm.models import CRMDeal, CRMPipeline, CRMPipelineStage, CRMQuoteItem
from app.crm.quotes import line_total, quote_service
from app.crm.schemas import DealCreate, LeadCreate, QuoteItemCreate, QuoteItemUpdate
from app.crm.service import ActorUser, deal_service, lead_service


ACTOR = ActorUser(user_id="user-1", display_name="Ana Seller", correlation_id="corr-quote")


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
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _deal(session: Session) -> uuid.UUID:
    pipeline = CRMPipeline(name="Commercial", is_default=True)
    session.add(pipeline)
    session.flush()
    session.add(CRMPipelineStage(pipeline_id=pipeline.id, name="Prospecting", position=1))
    session.commit()
    lead = lead_service.create_lead(session, ACTOR, LeadCreate(name="Maria Lima"))
    deal = deal_service.create_deal(session, ACTOR, DealCreate(name="Excavator", lead_id=lead.id, value=Decimal("900")))
    return deal.id


def _deal_row(session: Session, deal_id: uuid.UUID) -> CRMDeal:
    session.expire_all()
    deal = session.get(CRMDeal, deal_id)
    assert deal is not None
    return deal


def test_line_total_prices_on_the_cent_rounded_unit_price() -> None:
    assert line_total(3, Decimal("10.005")) == Decimal("30.03")
    assert line_total(3, Decimal("0.005")) == Decimal("0.03")
    assert line_total(2, Decimal("0")) == Decimal("0.00")


def test_item_mutations_keep_quote_value_in_sync(db_session: Session) -> None:
    deal_id = _deal(db_session)

    first = quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Bucket", quantity=2, unit_price=Decimal("150.50"))
    )
    quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Hydraulic hose", quantity=1, unit_price=Decimal("99"))
    )

    assert first.line_total == Decimal("301.00")
    deal = _deal_row(db_session, deal_id)
    assert deal.quote_value == Decimal("400.00")
    assert deal.value == Decimal("900")

    quote_service.update_item(db_session, ACTOR, first.id, QuoteItemUpdate(quantity=3))
    assert _deal_row(db_session, deal_id).quote_value == Decimal("550.50")

    quote_service.remove_item(db_session, ACTOR, first.id)
    deal = _deal_row(db_session, deal_id)
    assert deal.quote_value == Decimal("99.00")
    assert deal.value == Decimal("900")

    published = [item for item in events.published_events if item["event_type"] == "crm.deal.quote_changed"]
    assert [item["payload"]["operation"] for item in published] == ["add", "add", "update", "remove"]
    assert all(item["correlation_id"] == "corr-quote" for item in published)


def test_add_item_rejects_blank_description(db_session: Session) -> None:
    deal_id = _deal(db_session)

    with pytest.raises(HTTPException) as exc_info:
        quote_service.add_item(db_session, ACTOR, deal_id, QuoteItemCreate(description="  ", unit_price=Decimal("1")))
    assert exc_info.value.status_code == 422
    assert quote_service.list_items(db_session, deal_id) == []


def test_add_item_for_missing_deal_returns_404(db_session: Session) -> None:
    _deal(db_session)

    with pytest.raises(HTTPException) as exc_info:
        quote_service.add_item(
            db_session, ACTOR, uuid.uuid4(), QuoteItemCreate(description="Bucket", unit_price=Decimal("1"))
        )
    assert exc_info.value.status_code == 404


def test_update_missing_item_returns_404(db_session: Session) -> None:
    _deal(db_session)

    with pytest.raises(HTTPException) as exc_info:
        quote_service.update_item(db_session, ACTOR, uuid.uuid4(), QuoteItemUpdate(quantity=2))
    assert exc_info.value.status_code == 404


def test_select_quote_sets_value_and_quote_value(db_session: Session) -> None:
    deal_id = _deal(db_session)
    bucket = quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Bucket", quantity=2, unit_price=Decimal("150"))
    )
    quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Tyres", quantity=4, unit_price=Decimal("80"))
    )

    deal = quote_service.select_quote_as_deal_value(db_session, ACTOR, deal_id, [bucket.id])

    assert deal.value == Decimal("300.00")
    assert deal.quote_value == Decimal("300.00")


def test_select_quote_rejects_items_of_other_deals(db_session: Session) -> None:
    deal_id = _deal(db_session)
    lead = lead_service.create_lead(db_session, ACTOR, LeadCreate(name="Joao Souza"))
    other = deal_service.create_deal(db_session, ACTOR, DealCreate(name="Loader", lead_id=lead.id))
    foreign = quote_service.add_item(
        db_session, ACTOR, other.id, QuoteItemCreate(description="Bucket", unit_price=Decimal("10"))
    )

    with pytest.raises(HTTPException) as exc_info:
        quote_service.select_quote_as_deal_value(db_session, ACTOR, deal_id, [foreign.id])
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == "quote items do not belong to deal"

    deal = _deal_row(db_session, deal_id)
    assert deal.value == Decimal("900")


def test_recompute_repairs_drifted_quote_value(db_session: Session) -> None:
    deal_id = _deal(db_session)
    quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Bucket", quantity=2, unit_price=Decimal("25"))
    )
    deal = _deal_row(db_session, deal_id)
    deal.quote_value = Decimal("1234.00")
    db_session.commit()

    repaired = quote_service.recompute_deal_value(db_session, ACTOR, deal_id)

    assert repaired.quote_value == Decimal("50.00")
    assert repaired.value == Decimal("900")



def test_unit_price_with_more_than_two_decimals_is_rejected() -> None:
    with pytest.raises(ValidationError):
        QuoteItemCreate(description="Filter", quantity=3, unit_price=Decimal("0.005"))
    with pytest.raises(ValidationError):
        QuoteItemUpdate(unit_price=Decimal("19.999"))


def test_incremental_quote_value_matches_recompute(db_session: Session) -> None:
    deal_id = _deal(db_session)
    # built unvalidated so the service sees a sub-cent price
    odd = quote_service.add_item(
        db_session,
        ACTOR,
        deal_id,
        QuoteItemCreate.model_construct(description="Filter", quantity=3, unit_price=Decimal("0.005")),
    )
    assert odd.unit_price == Decimal("0.01")
    assert odd.line_total == Decimal("0.03")

    bucket = quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Bucket", quantity=7, unit_price=Decimal("19.99"))
    )
    quote_service.update_item(
        db_session,
        ACTOR,
        bucket.id,
        QuoteItemUpdate.model_construct(unit_price=Decimal("3.335")),
    )
    quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="Hose", quantity=2, unit_price=Decimal("0.01"))
    )
    quote_service.remove_item(db_session, ACTOR, odd.id)

    incremental = _deal_row(db_session, deal_id).quote_value
    assert incremental == Decimal("23.40")
    assert quote_service.recompute_deal_value(db_session, ACTOR, deal_id).quote_value == incremental

def test_quotations_are_grouped_by_day_newest_first(db_session: Session) -> None:
    deal_id = _deal(db_session)
    yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    db_session.add_all(
        [
            CRMQuoteItem(deal_id=deal_id, description="Old bucket", quantity=1, unit_price=Decimal("10"), created_at=yesterday),
            CRMQuoteItem(
                deal_id=deal_id,
                description="Old hose",
                quantity=2,
                unit_price=Decimal("5"),
                created_at=yesterday + timedelta(minutes=5),
            ),
        ]
    )
    db_session.commit()
    quote_service.add_item(
        db_session, ACTOR, deal_id, QuoteItemCreate(description="New bucket", quantity=1, unit_price=Decimal("12"))
    )

    quotations = quote_service.list_quotations(db_session, deal_id)

    assert len(quotations) == 2
    assert quotations[0].quoted_on > quotations[1].quoted_on
    assert [item.description for item in quotations[0].items] == ["New bucket"]
    assert quotations[0].total == Decimal("12.00")
    assert [item.description for item in quotations[1].items] == ["Old bucket", "Old hose"]
    assert quotations[1].total == Decimal("20.00")
