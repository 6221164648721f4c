from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import events
from app.crm.actor import ActorUser
from app.crm.models import CRMDeal, CRMLeadActivity, utcnow
from app.crm.schemas import ActivityCreate, ActivityRead


logger = logging.getLogger("app.crm.deals")

ACTIVITY_STAGE_CHANGED = "stage_changed"
ACTIVITY_PIPELINE_CHANGED = "pipeline_changed"
ACTIVITY_SALE_WON = "sale_won"
ACTIVITY_SALE_LOST = "sale_lost"
ACTIVITY_DEAL_REOPENED = "deal_reopened"

SYSTEM_ACTIVITY_TYPES = {
    ACTIVITY_STAGE_CHANGED,
    ACTIVITY_PIPELINE_CHANGED,
    ACTIVITY_SALE_WON,
    ACTIVITY_SALE_LOST,
    ACTIVITY_DEAL_REOPENED,
}
MANUAL_ACTIVITY_TYPES = {"email_sent", "call_made", "proposal_created", "meeting_scheduled", "note_added"}


class ActivityRecorder:
    """Append-only deal timeline.

    ``record`` only adds and flushes; the caller owns the transaction so the
    entry commits or rolls back together with the change it describes.
    """

    def record(
        self,
        session: Session,
        deal_id: uuid.UUID,
        activity_type: str,
        description: str,
        created_by: str | None = None,
    ) -> CRMLeadActivity:
        if activity_type not in SYSTEM_ACTIVITY_TYPES | MANUAL_ACTIVITY_TYPES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid activity_type")
        if not description.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="description is required")

        activity = CRMLeadActivity(
            deal_id=deal_id,
            activity_type=activity_type,
            description=description.strip(),
            created_by=created_by,
            created_at=utcnow(),
        )
        session.add(activity)
        session.flush()
        return activity

    def log_manual_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        if session.get(CRMDeal, deal_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")

        activity = self.record(session, deal_id, dto.activity_type, dto.description, created_by=actor_user.label)
        session.commit()
        events.publish(
            events.build_envelope(
                "crm.deal.activity_logged",
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
                payload={"deal_id": str(deal_id), "activity_type": dto.activity_type},
            )
        )
        logger.info("deal.activity_logged", extra={"deal_id": str(deal_id), "user_id": actor_user.user_id})
        return ActivityRead.model_validate(activity)

    def list_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[ActivityRead]:
        if session.get(CRMDeal, deal_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        rows = session.scalars(
            select(CRMLeadActivity)
            .where(CRMLeadActivity.deal_id == deal_id)
            .order_by(CRMLeadActivity.created_at.desc(), CRMLeadActivity.id)
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]


activity_recorder = ActivityRecorder()
