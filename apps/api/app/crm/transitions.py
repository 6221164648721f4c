from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id
from app.crm.activity import (
    ACTIVITY_DEAL_REOPENED,
    ACTIVITY_PIPELINE_CHANGED,
    ACTIVITY_SALE_LOST,
    ACTIVITY_SALE_WON,
    ACTIVITY_STAGE_CHANGED,
    ActivityRecorder,
    activity_recorder,
)
from app.crm.actor import ActorUser
from app.crm.models import (
    CRMDeal,
    CRMPipeline,
    CRMPipelineStage,
    CRMSalePerformanceReason,
    SALE_PERFORMANCE_VALUES,
    SALE_STATUS_LOST,
    SALE_STATUS_NEGOTIATION,
    SALE_STATUS_WON,
    STAGE_TYPE_COMPLETED,
    STAGE_TYPE_LOST,
    STAGE_TYPE_NORMAL,
    utcnow,
)
from app.crm.repositories import (
    PipelineRepository,
    StageHistoryRepository,
    atomic,
    pipeline_repository,
    stage_history_repository,
)
from app.crm.schemas import DealRead
from app.metrics import observe_deal_transition
from app.otel import deal_span


logger = logging.getLogger("app.crm.deals")

OUTCOME_STAGE_TYPES = {SALE_STATUS_WON: STAGE_TYPE_COMPLETED, SALE_STATUS_LOST: STAGE_TYPE_LOST}

# stage types a deal with the given sale status may never occupy; open deals
# reach a terminal stage only through the outcome flow
FORBIDDEN_STAGE_TYPES = {
    SALE_STATUS_WON: {STAGE_TYPE_LOST},
    SALE_STATUS_LOST: {STAGE_TYPE_COMPLETED},
    SALE_STATUS_NEGOTIATION: {STAGE_TYPE_COMPLETED, STAGE_TYPE_LOST},
}


@dataclass(frozen=True)
class MoveToStage:
    stage_id: uuid.UUID


@dataclass(frozen=True)
class SwitchPipeline:
    pipeline_id: uuid.UUID
    stage_id: uuid.UUID | None = None


@dataclass(frozen=True)
class SetSaleOutcome:
    outcome: str
    sale_performance: str | None = None
    lost_reason: str | None = None
    lost_notes: str | None = None
    value: Decimal | None = None


@dataclass(frozen=True)
class ReopenDeal:
    stage_id: uuid.UUID | None = None


DealEvent = MoveToStage | SwitchPipeline | SetSaleOutcome | ReopenDeal

_EVENT_KINDS: dict[type, str] = {
    MoveToStage: "move_to_stage",
    SwitchPipeline: "switch_pipeline",
    SetSaleOutcome: "set_sale_outcome",
    ReopenDeal: "reopen",
}


@dataclass
class TransitionResult:
    deal: DealRead
    transition: str
    degraded: bool = False
    changed: bool = True


@dataclass
class _Plan:
    pipeline: CRMPipeline
    stage: CRMPipelineStage
    sale_status: str
    sale_performance: str | None
    lost_reason: str | None
    lost_notes: str | None
    value: Decimal | None = None
    activity_type: str | None = None
    activity_description: str | None = None
    event_type: str | None = None
    degraded: bool = False
    payload: dict[str, str | bool | None] = field(default_factory=dict)


def stage_allowed(stage: CRMPipelineStage, sale_status: str) -> bool:
    return stage.stage_type not in FORBIDDEN_STAGE_TYPES.get(sale_status, set())


def validate_stage_outcome(stage: CRMPipelineStage, sale_status: str) -> None:
    if stage_allowed(stage, sale_status):
        return
    if sale_status == SALE_STATUS_NEGOTIATION:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"set the sale outcome via /outcome to place a deal in a {stage.stage_type} stage",
        )
    raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"a {sale_status} deal cannot be placed in a {stage.stage_type} stage",
        )


def validate_sale_performance(session: Session, value: str) -> None:
    known = set(
        session.scalars(
            select(CRMSalePerformanceReason.value).where(CRMSalePerformanceReason.active.is_(True))
        ).all()
    )
    if value not in (known or SALE_PERFORMANCE_VALUES):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unknown sale_performance")


class DealTransitionEngine:
    """State machine for a deal's (pipeline, stage, sale_status).

    Every change goes through ``transition``. The deal update, the stage
    history bookkeeping and the activity entry commit in one transaction; the
    domain event is published after commit.
    """

    def __init__(
        self,
        pipelines: PipelineRepository | None = None,
        history: StageHistoryRepository | None = None,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self.pipelines = pipelines or pipeline_repository
        self.history = history or stage_history_repository
        self.recorder = recorder or activity_recorder

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        event: DealEvent,
        expected_row_version: int | None = None,
    ) -> TransitionResult:
        kind = _EVENT_KINDS.get(type(event))
        if kind is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported deal transition")

        correlation_id = actor_user.correlation_id or get_correlation_id()
        started = time.perf_counter()
        with deal_span("crm.deal.transition", deal_id, correlation_id, transition=kind) as span:
            with atomic(session, conflict_detail="deal transition conflict"):
                deal = session.get(CRMDeal, deal_id)
                if deal is None:
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
                if expected_row_version is not None and deal.row_version != expected_row_version:
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

                from_stage = self._current_stage(session, deal)
                from_pipeline_id = deal.pipeline_id
                plan = self._plan(session, deal, from_stage, event)
                if plan is None:
                    changed = False
                    degraded = False
                else:
                    validate_stage_outcome(plan.stage, plan.sale_status)
                    self._apply(session, actor_user, deal, from_stage, plan)
                    changed = True
                    degraded = plan.degraded

            span.set_attribute("degraded", degraded)
            duration = time.perf_counter() - started
            observe_deal_transition(kind, degraded, duration)

        deal = session.get(CRMDeal, deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        read = DealRead.model_validate(deal)

        if plan is not None:
            if plan.degraded:
                logger.warning(
                    "deal.outcome_degraded",
                    extra={
                        "deal_id": str(deal_id),
                        "pipeline_id": str(read.pipeline_id),
                        "outcome": read.sale_status,
                        "degraded": True,
                    },
                )
            logger.info(
                "deal.transitioned",
                extra={
                    "deal_id": str(deal_id),
                    "transition": kind,
                    "from_stage_id": str(from_stage.id),
                    "to_stage_id": str(read.stage_id),
                    "from_pipeline_id": str(from_pipeline_id),
                    "to_pipeline_id": str(read.pipeline_id),
                    "outcome": read.sale_status,
                    "degraded": plan.degraded,
                    "duration_ms": round(duration * 1000, 2),
                    "user_id": actor_user.user_id,
                },
            )
            events.publish(
                events.build_envelope(
                    plan.event_type or "crm.deal.updated",
                    actor_user_id=actor_user.user_id,
                    correlation_id=correlation_id,
                    payload={
                        "deal_id": str(deal_id),
                        "from_stage_id": str(from_stage.id),
                        "stage_id": str(read.stage_id),
                        "from_pipeline_id": str(from_pipeline_id),
                        "pipeline_id": str(read.pipeline_id),
                        "sale_status": read.sale_status,
                        "row_version": read.row_version,
                        **plan.payload,
                    },
                )
            )

        return TransitionResult(deal=read, transition=kind, degraded=degraded, changed=changed)

    def move_to_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        row_version: int | None = None,
    ) -> TransitionResult:
        return self.transition(session, actor_user, deal_id, MoveToStage(stage_id=stage_id), row_version)

    def switch_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID | None = None,
        row_version: int | None = None,
    ) -> TransitionResult:
        event = SwitchPipeline(pipeline_id=pipeline_id, stage_id=stage_id)
        return self.transition(session, actor_user, deal_id, event, row_version)

    def set_sale_outcome(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        outcome: str,
        *,
        sale_performance: str | None = None,
        lost_reason: str | None = None,
        lost_notes: str | None = None,
        value: Decimal | None = None,
        row_version: int | None = None,
    ) -> TransitionResult:
        event = SetSaleOutcome(
            outcome=outcome,
            sale_performance=sale_performance,
            lost_reason=lost_reason,
            lost_notes=lost_notes,
            value=value,
        )
        return self.transition(session, actor_user, deal_id, event, row_version)

    def reopen(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID | None = None,
        row_version: int | None = None,
    ) -> TransitionResult:
        return self.transition(session, actor_user, deal_id, ReopenDeal(stage_id=stage_id), row_version)

    def _plan(
        self,
        session: Session,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        event: DealEvent,
    ) -> _Plan | None:
        if isinstance(event, MoveToStage):
            return self._plan_move(session, deal, from_stage, event)
        if isinstance(event, SwitchPipeline):
            return self._plan_switch(session, deal, from_stage, event)
        if isinstance(event, SetSaleOutcome):
            return self._plan_outcome(session, deal, from_stage, event)
        return self._plan_reopen(session, deal, from_stage, event)

    def _plan_move(
        self,
        session: Session,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        event: MoveToStage,
    ) -> _Plan | None:
        stage = self.pipelines.get_stage(session, event.stage_id)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        if stage.pipeline_id != deal.pipeline_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="stage must belong to the deal's pipeline",
            )
        if stage.id == from_stage.id:
            return None
        return self._stage_change_plan(deal, from_stage, stage)

    def _plan_switch(
        self,
        session: Session,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        event: SwitchPipeline,
    ) -> _Plan | None:
        pipeline = self.pipelines.get_pipeline(session, event.pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

        stages = self.pipelines.list_stages(session, pipeline.id)
        if not stages:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="pipeline has no stages")

        # an omitted or foreign stage falls back to the lowest stage the deal may occupy
        stage = next((item for item in stages if item.id == event.stage_id), None)
        if stage is None:
            stage = next((item for item in stages if stage_allowed(item, deal.sale_status)), None)
        if stage is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"pipeline has no stage for a {deal.sale_status} deal",
            )

        if pipeline.id == deal.pipeline_id:
            if stage.id == from_stage.id:
                return None
            return self._stage_change_plan(deal, from_stage, stage)

        from_pipeline = deal.pipeline
        plan = _Plan(
            pipeline=pipeline,
            stage=stage,
            sale_status=deal.sale_status,
            sale_performance=deal.sale_performance,
            lost_reason=deal.lost_reason,
            lost_notes=deal.lost_notes,
            activity_type=ACTIVITY_PIPELINE_CHANGED,
            activity_description=(
                f"Moved from pipeline {from_pipeline.name} ({from_stage.name}) "
                f"to pipeline {pipeline.name} ({stage.name})"
            ),
            event_type="crm.deal.pipeline_changed",
        )
        return plan

    def _plan_outcome(
        self,
        session: Session,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        event: SetSaleOutcome,
    ) -> _Plan:
        if event.outcome not in OUTCOME_STAGE_TYPES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="outcome must be won or lost")

        lost_reason = (event.lost_reason or "").strip() or None
        if event.outcome == SALE_STATUS_LOST and lost_reason is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="lost_reason is required")
        if event.value is not None and event.value < 0:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="value must be >= 0")
        if event.outcome == SALE_STATUS_WON and event.sale_performance:
            validate_sale_performance(session, event.sale_performance)

        reserved = self.pipelines.stage_of_type(session, deal.pipeline_id, OUTCOME_STAGE_TYPES[event.outcome])
        stage = reserved or from_stage
        if reserved is None and not stage_allowed(from_stage, event.outcome):
            # the opposite terminal stage cannot hold the new outcome
            stage = self.pipelines.first_stage(session, deal.pipeline_id, STAGE_TYPE_NORMAL)
            if stage is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"pipeline has no stage for a {event.outcome} deal",
                )

        if event.outcome == SALE_STATUS_WON:
            activity_type = ACTIVITY_SALE_WON
            summary = "Sale won"
            if event.sale_performance:
                summary = f"{summary} ({event.sale_performance.replace('_', ' ')})"
        else:
            activity_type = ACTIVITY_SALE_LOST
            summary = f"Sale lost: {lost_reason}"

        if stage.id != from_stage.id:
            description = f"{summary}; moved from {from_stage.name} to {stage.name}"
        else:
            description = f"{summary}; stage {stage.name} unchanged"

        return _Plan(
            pipeline=deal.pipeline,
            stage=stage,
            sale_status=event.outcome,
            sale_performance=event.sale_performance if event.outcome == SALE_STATUS_WON else None,
            lost_reason=lost_reason if event.outcome == SALE_STATUS_LOST else None,
            lost_notes=event.lost_notes if event.outcome == SALE_STATUS_LOST else None,
            value=event.value,
            activity_type=activity_type,
            activity_description=description,
            event_type="crm.deal.outcome_set",
            degraded=reserved is None,
            payload={"degraded": reserved is None},
        )

    def _plan_reopen(
        self,
        session: Session,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        event: ReopenDeal,
    ) -> _Plan:
        if event.stage_id is not None:
            stage = self.pipelines.get_stage(session, event.stage_id)
            if stage is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
            if stage.pipeline_id != deal.pipeline_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="stage must belong to the deal's pipeline",
                )
            if stage.stage_type != STAGE_TYPE_NORMAL:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="a reopened deal must land in a normal stage",
                )
        elif from_stage.stage_type != STAGE_TYPE_NORMAL:
            stage = self.pipelines.first_stage(session, deal.pipeline_id, STAGE_TYPE_NORMAL)
            if stage is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="pipeline has no normal stage to reopen into",
                )
        else:
            stage = from_stage

        return _Plan(
            pipeline=deal.pipeline,
            stage=stage,
            sale_status=SALE_STATUS_NEGOTIATION,
            sale_performance=None,
            lost_reason=None,
            lost_notes=None,
            activity_type=ACTIVITY_DEAL_REOPENED,
            activity_description=f"Deal reopened in {stage.name}",
            event_type="crm.deal.reopened",
        )

    def _stage_change_plan(self, deal: CRMDeal, from_stage: CRMPipelineStage, stage: CRMPipelineStage) -> _Plan:
        return _Plan(
            pipeline=deal.pipeline,
            stage=stage,
            sale_status=deal.sale_status,
            sale_performance=deal.sale_performance,
            lost_reason=deal.lost_reason,
            lost_notes=deal.lost_notes,
            activity_type=ACTIVITY_STAGE_CHANGED,
            activity_description=f"Stage changed from {from_stage.name} to {stage.name}",
            event_type="crm.deal.stage_changed",
        )

    def _apply(
        self,
        session: Session,
        actor_user: ActorUser,
        deal: CRMDeal,
        from_stage: CRMPipelineStage,
        plan: _Plan,
    ) -> None:
        now = utcnow()
        if plan.stage.id != from_stage.id:
            self.history.close_open_entries(session, deal.id, now)
            self.history.start_entry(session, deal.id, plan.stage.id, now)

        deal.pipeline_id = plan.pipeline.id
        deal.stage_id = plan.stage.id
        deal.sale_status = plan.sale_status
        deal.sale_performance = plan.sale_performance
        deal.lost_reason = plan.lost_reason
        deal.lost_notes = plan.lost_notes
        if plan.value is not None:
            deal.value = plan.value
        deal.updated_at = now
        deal.row_version = deal.row_version + 1
        session.flush()

        if plan.activity_type and plan.activity_description:
            self.recorder.record(
                session,
                deal.id,
                plan.activity_type,
                plan.activity_description,
                created_by=actor_user.label,
            )

    def _current_stage(self, session: Session, deal: CRMDeal) -> CRMPipelineStage:
        stage = self.pipelines.get_stage(session, deal.stage_id)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="current stage not found")
        return stage


deal_transition_engine = DealTransitionEngine()
