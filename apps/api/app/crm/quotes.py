from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app import events
from app.crm.actor import ActorUser
from app.crm.models import CRMDeal, CRMQuoteItem, utcnow
from app.crm.repositories import DealRepository, atomic, deal_repository
from app.crm.schemas import DealRead, QuotationRead, QuoteItemCreate, QuoteItemRead, QuoteItemUpdate
from app.metrics import observe_quote_mutation


logger = logging.getLogger("app.crm.quotes")

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_cents(amount: Decimal) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: int, unit_price: Decimal) -> Decimal:
    # priced on the stored (cent) unit price so totals match a recompute
    return (Decimal(quantity) * to_cents(unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)


def _non_negative(amount: Decimal) -> Decimal:
    return amount if amount > ZERO else ZERO


def _utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


class QuoteService:
    """Owns quote line items and the deal's cached ``quote_value``.

    ``quote_value`` is maintained incrementally on every item mutation and
    can be rebuilt from the items with ``recompute_deal_value``. ``value``
    only changes when a quote is explicitly selected.
    """

    def __init__(self, deals: DealRepository | None = None) -> None:
        self.deals = deals or deal_repository

    def add_item(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: QuoteItemCreate,
    ) -> QuoteItemRead:
        description = self._validate_line(dto.description, dto.quantity, dto.unit_price)
        unit_price = to_cents(dto.unit_price)
        with atomic(session):
            deal = self._get_deal(session, deal_id)
            item = CRMQuoteItem(
                deal_id=deal.id,
                description=description,
                quantity=dto.quantity,
                unit_price=unit_price,
                created_at=utcnow(),
            )
            session.add(item)
            self._apply_delta(deal, line_total(dto.quantity, unit_price))
            session.flush()
            item_id = item.id

        self._after_change(session, actor_user, deal_id, "add")
        return self._to_item_read(self._get_item(session, item_id))

    def update_item(
        self,
        session: Session,
        actor_user: ActorUser,
        item_id: uuid.UUID,
        dto: QuoteItemUpdate,
    ) -> QuoteItemRead:
        with atomic(session):
            item = self._get_item(session, item_id)
            old_total = line_total(item.quantity, item.unit_price)

            description = dto.description if dto.description is not None else item.description
            quantity = dto.quantity if dto.quantity is not None else item.quantity
            unit_price = to_cents(dto.unit_price if dto.unit_price is not None else item.unit_price)
            description = self._validate_line(description, quantity, unit_price)

            item.description = description
            item.quantity = quantity
            item.unit_price = unit_price
            deal = self._get_deal(session, item.deal_id)
            self._apply_delta(deal, line_total(quantity, unit_price) - old_total)
            deal_id = deal.id

        self._after_change(session, actor_user, deal_id, "update")
        return self._to_item_read(self._get_item(session, item_id))

    def remove_item(self, session: Session, actor_user: ActorUser, item_id: uuid.UUID) -> None:
        with atomic(session):
            item = self._get_item(session, item_id)
            deal = self._get_deal(session, item.deal_id)
            self._apply_delta(deal, -line_total(item.quantity, item.unit_price))
            session.delete(item)
            deal_id = deal.id

        self._after_change(session, actor_user, deal_id, "remove")

    def select_quote_as_deal_value(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        item_ids: list[uuid.UUID],
    ) -> DealRead:
        with atomic(session):
            deal = self._get_deal(session, deal_id)
            items_by_id = {item.id: item for item in self.deals.list_quote_items(session, deal_id)}
            unknown = [str(item_id) for item_id in item_ids if item_id not in items_by_id]
            if unknown:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="quote items do not belong to deal",
                )

            selected = {item_id: items_by_id[item_id] for item_id in item_ids}
            total = sum((line_total(item.quantity, item.unit_price) for item in selected.values()), ZERO)
            deal.value = total
            deal.quote_value = total
            deal.row_version = deal.row_version + 1
            deal.updated_at = utcnow()

        self._after_change(session, actor_user, deal_id, "select")
        return DealRead.model_validate(self._get_deal(session, deal_id))

    def recompute_deal_value(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        with atomic(session):
            deal = self._get_deal(session, deal_id)
            items = self.deals.list_quote_items(session, deal_id)
            recomputed = sum((line_total(item.quantity, item.unit_price) for item in items), ZERO)
            if Decimal(str(deal.quote_value)) != recomputed:
                logger.warning(
                    "deal.quote_value_drift",
                    extra={"deal_id": str(deal_id), "quote_value": str(recomputed)},
                )
                deal.quote_value = recomputed
                deal.row_version = deal.row_version + 1
                deal.updated_at = utcnow()

        self._after_change(session, actor_user, deal_id, "recompute")
        return DealRead.model_validate(self._get_deal(session, deal_id))

    def list_items(self, session: Session, deal_id: uuid.UUID) -> list[QuoteItemRead]:
        self._get_deal(session, deal_id)
        return [self._to_item_read(item) for item in self.deals.list_quote_items(session, deal_id)]

    def list_quotations(self, session: Session, deal_id: uuid.UUID) -> list[QuotationRead]:
        self._get_deal(session, deal_id)
        groups: OrderedDict[date, list[CRMQuoteItem]] = OrderedDict()
        for item in self.deals.list_quote_items(session, deal_id):
            groups.setdefault(_utc_day(item.created_at), []).append(item)

        quotations = [
            QuotationRead(
                quoted_on=day,
                items=[self._to_item_read(item) for item in items],
                total=sum((line_total(item.quantity, item.unit_price) for item in items), ZERO),
            )
            for day, items in groups.items()
        ]
        return sorted(quotations, key=lambda quotation: quotation.quoted_on, reverse=True)

    def _validate_line(self, description: str | None, quantity: int, unit_price: Decimal) -> str:
        cleaned = (description or "").strip()
        if not cleaned:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="description is required")
        if quantity < 1:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="quantity must be >= 1")
        if Decimal(str(unit_price)) < ZERO:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unit_price must be >= 0")
        return cleaned

    def _apply_delta(self, deal: CRMDeal, delta: Decimal) -> None:
        current = Decimal(str(deal.quote_value or ZERO))
        deal.quote_value = _non_negative(current + delta)
        deal.row_version = deal.row_version + 1
        deal.updated_at = utcnow()

    def _after_change(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, operation: str) -> None:
        deal = self._get_deal(session, deal_id)
        observe_quote_mutation(operation)
        logger.info(
            "deal.quote_changed",
            extra={"deal_id": str(deal_id), "quote_value": str(deal.quote_value), "user_id": actor_user.user_id},
        )
        events.publish(
            events.build_envelope(
                "crm.deal.quote_changed",
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
                payload={
                    "deal_id": str(deal_id),
                    "operation": operation,
                    "quote_value": str(deal.quote_value),
                    "value": str(deal.value),
                },
            )
        )

    def _get_deal(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.deals.get(session, deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _get_item(self, session: Session, item_id: uuid.UUID) -> CRMQuoteItem:
        item = self.deals.get_quote_item(session, item_id)
        if item is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="quote item not found")
        return item

    def _to_item_read(self, item: CRMQuoteItem) -> QuoteItemRead:
        return QuoteItemRead.model_validate(
            {
                "id": item.id,
                "deal_id": item.deal_id,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "line_total": line_total(item.quantity, item.unit_price),
                "created_at": item.created_at,
            }
        )


quote_service = QuoteService()
