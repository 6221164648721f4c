from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.models import (
    CRMDeal,
    CRMPipeline,
    CRMPipelineStage,
    CRMQuoteItem,
    CRMStageHistory,
    STAGE_TYPE_NORMAL,
)


@contextmanager
def atomic(session: Session, conflict_detail: str = "conflicting change") -> Iterator[Session]:
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflict_detail) from exc
    except Exception:
        session.rollback()
        raise


def stage_sort_key(stage: CRMPipelineStage) -> tuple[int, datetime, str]:
    # sqlite hands back naive timestamps; everything is stored in UTC
    return (stage.position, stage.created_at.replace(tzinfo=None), str(stage.id))


class PipelineRepository:
    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return session.get(CRMPipeline, pipeline_id)

    def get_default_pipeline(self, session: Session) -> CRMPipeline | None:
        return session.scalar(
            select(CRMPipeline)
            .where(and_(CRMPipeline.is_default.is_(True), CRMPipeline.is_active.is_(True)))
            .order_by(CRMPipeline.created_at)
            .limit(1)
        )

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return session.get(CRMPipelineStage, stage_id)

    def list_stages(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        include_hidden: bool = True,
    ) -> list[CRMPipelineStage]:
        stmt = select(CRMPipelineStage).where(CRMPipelineStage.pipeline_id == pipeline_id)
        if not include_hidden:
            stmt = stmt.where(CRMPipelineStage.is_hidden.is_(False))
        stages = session.scalars(stmt).all()
        return sorted(stages, key=stage_sort_key)

    def first_stage(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        stage_type: str | None = None,
    ) -> CRMPipelineStage | None:
        stages = self.list_stages(session, pipeline_id)
        if stage_type is not None:
            stages = [stage for stage in stages if stage.stage_type == stage_type]
        return stages[0] if stages else None

    def stage_of_type(self, session: Session, pipeline_id: uuid.UUID, stage_type: str) -> CRMPipelineStage | None:
        return self.first_stage(session, pipeline_id, stage_type)

    def entry_stage(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipelineStage | None:
        stages = [stage for stage in self.list_stages(session, pipeline_id) if stage.stage_type == STAGE_TYPE_NORMAL]
        flagged = [stage for stage in stages if stage.is_default]
        if flagged:
            return flagged[0]
        return stages[0] if stages else None

    def position_taken(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        position: int,
        exclude_stage_id: uuid.UUID | None = None,
    ) -> bool:
        stmt = select(func.count(CRMPipelineStage.id)).where(
            and_(CRMPipelineStage.pipeline_id == pipeline_id, CRMPipelineStage.position == position)
        )
        if exclude_stage_id is not None:
            stmt = stmt.where(CRMPipelineStage.id != exclude_stage_id)
        return (session.scalar(stmt) or 0) > 0

    def count_deals_in_stage(self, session: Session, stage_id: uuid.UUID) -> int:
        return session.scalar(select(func.count(CRMDeal.id)).where(CRMDeal.stage_id == stage_id)) or 0

    def count_history_for_stage(self, session: Session, stage_id: uuid.UUID) -> int:
        return (
            session.scalar(select(func.count(CRMStageHistory.id)).where(CRMStageHistory.stage_id == stage_id)) or 0
        )

    def board_totals(self, session: Session, pipeline_id: uuid.UUID) -> dict[uuid.UUID, tuple[int, Decimal]]:
        rows = session.execute(
            select(CRMDeal.stage_id, func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0))
            .where(CRMDeal.pipeline_id == pipeline_id)
            .group_by(CRMDeal.stage_id)
        ).all()
        return {stage_id: (int(count), Decimal(str(total))) for stage_id, count, total in rows}


class DealRepository:
    def get(self, session: Session, deal_id: uuid.UUID) -> CRMDeal | None:
        return session.get(CRMDeal, deal_id)

    def list_deals(self, session: Session, filters: dict[str, Any], offset: int, limit: int) -> list[CRMDeal]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal)
        for field_name in ("pipeline_id", "stage_id", "lead_id", "sale_status", "status"):
            value = filters.get(field_name)
            if value is not None:
                stmt = stmt.where(getattr(CRMDeal, field_name) == value)
        if filters.get("q"):
            stmt = stmt.where(CRMDeal.name.ilike(f"%{filters['q']}%"))
        stmt = stmt.order_by(CRMDeal.position, CRMDeal.created_at.desc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def list_quote_items(self, session: Session, deal_id: uuid.UUID) -> list[CRMQuoteItem]:
        return list(
            session.scalars(
                select(CRMQuoteItem)
                .where(CRMQuoteItem.deal_id == deal_id)
                .order_by(CRMQuoteItem.created_at, CRMQuoteItem.id)
            ).all()
        )

    def get_quote_item(self, session: Session, item_id: uuid.UUID) -> CRMQuoteItem | None:
        return session.get(CRMQuoteItem, item_id)


class StageHistoryRepository:
    def current_entry(self, session: Session, deal_id: uuid.UUID) -> CRMStageHistory | None:
        return session.scalar(
            select(CRMStageHistory)
            .where(and_(CRMStageHistory.deal_id == deal_id, CRMStageHistory.left_at.is_(None)))
            .order_by(CRMStageHistory.entered_at.desc())
            .limit(1)
        )

    def close_open_entries(self, session: Session, deal_id: uuid.UUID, left_at: datetime) -> None:
        session.execute(
            update(CRMStageHistory)
            .where(and_(CRMStageHistory.deal_id == deal_id, CRMStageHistory.left_at.is_(None)))
            .values(left_at=left_at)
        )

    def start_entry(self, session: Session, deal_id: uuid.UUID, stage_id: uuid.UUID, entered_at: datetime) -> CRMStageHistory:
        entry = CRMStageHistory(deal_id=deal_id, stage_id=stage_id, entered_at=entered_at)
        session.add(entry)
        return entry

    def list_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[CRMStageHistory]:
        return list(
            session.scalars(
                select(CRMStageHistory)
                .where(CRMStageHistory.deal_id == deal_id)
                .order_by(CRMStageHistory.entered_at, CRMStageHistory.id)
            ).all()
        )


pipeline_repository = PipelineRepository()
deal_repository = DealRepository()
stage_history_repository = StageHistoryRepository()
