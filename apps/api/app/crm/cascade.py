from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id
from app.crm.actor import ActorUser
from app.crm.models import CRMClientMachine, CRMDeal, CRMLeadActivity, CRMQuoteItem, CRMStageHistory
from app.crm.repositories import atomic
from app.metrics import observe_deal_deletion
from app.otel import deal_span


logger = logging.getLogger("app.crm.deals")


@dataclass(frozen=True)
class DealDependent:
    """A table whose rows reference ``crm_deal`` and must go before the deal."""

    name: str
    model: type[Any]
    deal_column: str = "deal_id"

    def delete_for(self, session: Session, deal_id: uuid.UUID) -> int:
        column = getattr(self.model, self.deal_column)
        result = session.execute(delete(self.model).where(column == deal_id))
        return int(result.rowcount or 0)


DEFAULT_DEAL_DEPENDENTS: tuple[DealDependent, ...] = (
    DealDependent("quote_items", CRMQuoteItem),
    DealDependent("activities", CRMLeadActivity),
    DealDependent("machines", CRMClientMachine),
    DealDependent("stage_history", CRMStageHistory),
)


class DealCascadeDeleter:
    """Removes a deal and every registered dependent in one transaction."""

    def __init__(self, dependents: Sequence[DealDependent] | None = None) -> None:
        self.dependents: list[DealDependent] = list(dependents if dependents is not None else DEFAULT_DEAL_DEPENDENTS)

    def register(self, dependent: DealDependent) -> None:
        if any(item.name == dependent.name for item in self.dependents):
            raise ValueError(f"dependent already registered: {dependent.name}")
        self.dependents.append(dependent)

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> bool:
        correlation_id = actor_user.correlation_id or get_correlation_id()
        with deal_span("crm.deal.delete", deal_id, correlation_id) as span:
            caller_transaction = session.in_transaction()
            deal = session.get(CRMDeal, deal_id)
            if deal is None:
                if not caller_transaction:
                    # close the read-only transaction the lookup opened
                    session.rollback()
                span.set_attribute("found", False)
                observe_deal_deletion("not_found")
                return False
            span.set_attribute("found", True)
            lead_id = deal.lead_id
            pipeline_id = deal.pipeline_id

            removed: dict[str, int] = {}
            try:
                with atomic(session, conflict_detail="deal is still referenced"):
                    for dependent in self.dependents:
                        removed[dependent.name] = dependent.delete_for(session, deal_id)
                    session.execute(delete(CRMDeal).where(CRMDeal.id == deal_id))
            except Exception as exc:
                observe_deal_deletion("failed")
                logger.error(
                    "deal.delete_failed",
                    extra={"deal_id": str(deal_id), "error": exc.__class__.__name__, "user_id": actor_user.user_id},
                )
                raise

        observe_deal_deletion("deleted", removed)
        for name, count in removed.items():
            logger.info("deal.dependents_deleted", extra={"deal_id": str(deal_id), "dependent": name, "rows": count})
        logger.info("deal.deleted", extra={"deal_id": str(deal_id), "user_id": actor_user.user_id})
        events.publish(
            events.build_envelope(
                "crm.deal.deleted",
                actor_user_id=actor_user.user_id,
                correlation_id=correlation_id,
                payload={
                    "deal_id": str(deal_id),
                    "lead_id": str(lead_id),
                    "pipeline_id": str(pipeline_id),
                    "dependents": removed,
                },
            )
        )
        return True


deal_cascade_deleter = DealCascadeDeleter()
