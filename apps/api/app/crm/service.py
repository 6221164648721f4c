from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.orm import Session

from app import events
from app.crm.actor import SYSTEM_ACTOR, ActorUser
from app.crm.models import (
    CRMClientMachine,
    CRMDeal,
    CRMLead,
    CRMLossReason,
    CRMMachineBrand,
    CRMMachineModel,
    CRMPipeline,
    CRMPipelineStage,
    CRMSalePerformanceReason,
    CRMStageHistory,
    SALE_STATUS_LOST,
    SALE_STATUS_NEGOTIATION,
    SALE_STATUS_WON,
    STAGE_TYPE_COMPLETED,
    STAGE_TYPE_LOST,
    utcnow,
)
from app.crm.repositories import (
    DealRepository,
    PipelineRepository,
    StageHistoryRepository,
    atomic,
    deal_repository,
    pipeline_repository,
    stage_history_repository,
)
from app.crm.schemas import (
    ClientMachineCreate,
    ClientMachineRead,
    ClientMachineUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    LossReasonRead,
    MachineBrandRead,
    MachineModelRead,
    PipelineBoardColumnRead,
    PipelineBoardRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    SalePerformanceReasonRead,
    StageHistoryRead,
)
from app.crm.transitions import FORBIDDEN_STAGE_TYPES, validate_sale_performance, validate_stage_outcome

__all__ = [
    "ActorUser",
    "SYSTEM_ACTOR",
    "LeadService",
    "PipelineService",
    "DealService",
    "ClientMachineService",
    "ReferenceDataService",
    "lead_service",
    "pipeline_service",
    "deal_service",
    "client_machine_service",
    "reference_data_service",
]


logger = logging.getLogger("app.crm.deals")

TERMINAL_STAGE_TYPES = {STAGE_TYPE_COMPLETED, STAGE_TYPE_LOST}
# fixed pipelines keep their reserved stages after any user stage
FIXED_STAGE_POSITION = 1000
FIXED_STAGES = (
    ("Completed", STAGE_TYPE_COMPLETED),
    ("Lost", STAGE_TYPE_LOST),
)


def _publish(actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
    events.publish(
        events.build_envelope(
            event_type,
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
            payload=payload,
        )
    )


def _clean_text(value: str | None, field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} is required")
    return cleaned


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        values = dto.model_dump()
        values["name"] = _clean_text(dto.name, "name")
        values["email"] = str(dto.email) if dto.email is not None else None
        with atomic(session):
            lead = CRMLead(**values)
            session.add(lead)
            session.flush()
            lead_id = lead.id

        _publish(actor_user, "crm.lead.created", {"lead_id": str(lead_id)})
        return self.get_lead(session, lead_id)

    def list_leads(
        self,
        session: Session,
        filters: dict[str, Any],
        offset: int,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead)
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                or_(
                    CRMLead.name.ilike(f"%{q}%"),
                    CRMLead.company_name.ilike(f"%{q}%"),
                    CRMLead.email.ilike(f"%{q}%"),
                )
            )
        if filters.get("city"):
            stmt = stmt.where(CRMLead.city == filters["city"])
        if filters.get("state"):
            stmt = stmt.where(CRMLead.state == filters["state"])
        if filters.get("external_contact_id"):
            stmt = stmt.where(CRMLead.external_contact_id == filters["external_contact_id"])

        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc(), CRMLead.id).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(lead) for lead in leads]

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get(session, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload:
            payload["name"] = _clean_text(payload["name"], "name")
        if payload.get("email") is not None:
            payload["email"] = str(payload["email"])
        for key in ("client_category", "client_type"):
            if key in payload and payload[key] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{key} cannot be null")

        with atomic(session):
            lead = self._get(session, lead_id)
            for key, value in payload.items():
                setattr(lead, key, value)
            lead.row_version = lead.row_version + 1
            lead.updated_at = utcnow()

        _publish(actor_user, "crm.lead.updated", {"lead_id": str(lead_id), "fields": sorted(payload)})
        return self.get_lead(session, lead_id)

    def list_deals(self, session: Session, lead_id: uuid.UUID) -> list[DealRead]:
        self._get(session, lead_id)
        deals = session.scalars(
            select(CRMDeal).where(CRMDeal.lead_id == lead_id).order_by(CRMDeal.created_at.desc(), CRMDeal.id)
        ).all()
        return [DealRead.model_validate(deal) for deal in deals]

    def _get(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(self, pipelines: PipelineRepository | None = None) -> None:
        self.pipelines = pipelines or pipeline_repository

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        with atomic(session):
            pipeline = CRMPipeline(
                name=_clean_text(dto.name, "name"),
                description=dto.description,
                is_default=dto.is_default,
                has_fixed_stages=dto.has_fixed_stages,
                is_active=dto.is_active,
            )
            session.add(pipeline)
            session.flush()

            if dto.is_default:
                self._unset_other_defaults(session, pipeline.id)
            if dto.has_fixed_stages:
                for offset, (name, stage_type) in enumerate(FIXED_STAGES):
                    session.add(
                        CRMPipelineStage(
                            pipeline_id=pipeline.id,
                            name=name,
                            position=FIXED_STAGE_POSITION + offset,
                            stage_type=stage_type,
                            is_system=True,
                        )
                    )
            pipeline_id = pipeline.id

        _publish(actor_user, "crm.pipeline.created", {"pipeline_id": str(pipeline_id)})
        return self.get_pipeline(session, pipeline_id)

    def list_pipelines(self, session: Session, include_inactive: bool = False) -> list[PipelineRead]:
        stmt = select(CRMPipeline)
        if not include_inactive:
            stmt = stmt.where(CRMPipeline.is_active.is_(True))
        pipelines = session.scalars(stmt.order_by(CRMPipeline.is_default.desc(), CRMPipeline.name)).all()
        return [self._to_pipeline_read(session, pipeline) for pipeline in pipelines]

    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> PipelineRead:
        return self._to_pipeline_read(session, self._get_pipeline(session, pipeline_id))

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload:
            payload["name"] = _clean_text(payload["name"], "name")
        for key in ("is_default", "is_active"):
            if key in payload and payload[key] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{key} cannot be null")

        with atomic(session):
            pipeline = self._get_pipeline(session, pipeline_id)
            if payload.get("is_active") is False and (payload.get("is_default") or pipeline.is_default):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="default pipeline cannot be deactivated",
                )
            for key, value in payload.items():
                setattr(pipeline, key, value)
            if payload.get("is_default"):
                self._unset_other_defaults(session, pipeline.id)
            pipeline.row_version = pipeline.row_version + 1
            pipeline.updated_at = utcnow()

        _publish(actor_user, "crm.pipeline.updated", {"pipeline_id": str(pipeline_id), "fields": sorted(payload)})
        return self.get_pipeline(session, pipeline_id)

    def list_stages(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        include_hidden: bool = True,
    ) -> list[PipelineStageRead]:
        self._get_pipeline(session, pipeline_id)
        return [
            PipelineStageRead.model_validate(stage)
            for stage in self.pipelines.list_stages(session, pipeline_id, include_hidden=include_hidden)
        ]

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        with atomic(session, conflict_detail="stage position already used"):
            pipeline = self._get_pipeline(session, pipeline_id)
            if pipeline.has_fixed_stages and dto.stage_type in TERMINAL_STAGE_TYPES:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="pipeline with fixed stages already has its completed and lost stages",
                )
            self._ensure_position_free(session, pipeline_id, dto.position)

            stage = CRMPipelineStage(
                pipeline_id=pipeline_id,
                name=_clean_text(dto.name, "name"),
                position=dto.position,
                stage_type=dto.stage_type,
                is_default=dto.is_default,
                is_hidden=dto.is_hidden,
            )
            session.add(stage)
            session.flush()
            self._validate_terminal_stages(session, pipeline_id)
            if dto.is_default:
                self._unset_other_default_stages(session, pipeline_id, stage.id)
            stage_id = stage.id

        _publish(actor_user, "crm.pipeline.stage_added", {"pipeline_id": str(pipeline_id), "stage_id": str(stage_id)})
        return PipelineStageRead.model_validate(self._get_stage(session, stage_id))

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        payload = dto.model_dump(exclude_unset=True)
        for key, value in list(payload.items()):
            if value is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{key} cannot be null")
        if "name" in payload:
            payload["name"] = _clean_text(payload["name"], "name")

        with atomic(session, conflict_detail="stage position already used"):
            stage = self._get_stage(session, stage_id)
            if stage.is_system and {"name", "position", "stage_type"} & set(payload):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="system stages cannot be renamed, retyped or reordered",
                )
            if "position" in payload and payload["position"] != stage.position:
                self._ensure_position_free(session, stage.pipeline_id, payload["position"], exclude_stage_id=stage.id)
            new_type = payload.get("stage_type")
            if new_type is not None and new_type != stage.stage_type:
                self._ensure_retype_allowed(session, stage, new_type)

            for key, value in payload.items():
                setattr(stage, key, value)
            stage.row_version = stage.row_version + 1
            stage.updated_at = utcnow()
            session.flush()
            self._validate_terminal_stages(session, stage.pipeline_id)
            if payload.get("is_default"):
                self._unset_other_default_stages(session, stage.pipeline_id, stage.id)
            pipeline_id = stage.pipeline_id

        _publish(actor_user, "crm.pipeline.stage_updated", {"pipeline_id": str(pipeline_id), "stage_id": str(stage_id)})
        return PipelineStageRead.model_validate(self._get_stage(session, stage_id))

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        with atomic(session, conflict_detail="stage is in use"):
            stage = self._get_stage(session, stage_id)
            if stage.is_system:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="system stages cannot be deleted")
            if self.pipelines.count_deals_in_stage(session, stage_id) > 0:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage has deals; hide it instead")
            if self.pipelines.count_history_for_stage(session, stage_id) > 0:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage has history; hide it instead")
            pipeline_id = stage.pipeline_id
            session.delete(stage)

        _publish(actor_user, "crm.pipeline.stage_deleted", {"pipeline_id": str(pipeline_id), "stage_id": str(stage_id)})

    def board(self, session: Session, pipeline_id: uuid.UUID, include_hidden: bool = False) -> PipelineBoardRead:
        self._get_pipeline(session, pipeline_id)
        totals = self.pipelines.board_totals(session, pipeline_id)
        columns = []
        for stage in self.pipelines.list_stages(session, pipeline_id, include_hidden=include_hidden):
            count, total = totals.get(stage.id, (0, Decimal("0")))
            columns.append(
                PipelineBoardColumnRead(
                    stage=PipelineStageRead.model_validate(stage),
                    deal_count=count,
                    total_value=total,
                )
            )
        return PipelineBoardRead(pipeline_id=pipeline_id, columns=columns)

    def _unset_other_defaults(self, session: Session, pipeline_id: uuid.UUID) -> None:
        session.execute(
            update(CRMPipeline)
            .where(and_(CRMPipeline.id != pipeline_id, CRMPipeline.is_default.is_(True)))
            .values(is_default=False, updated_at=utcnow(), row_version=CRMPipeline.row_version + 1)
        )

    def _unset_other_default_stages(self, session: Session, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        session.execute(
            update(CRMPipelineStage)
            .where(
                and_(
                    CRMPipelineStage.pipeline_id == pipeline_id,
                    CRMPipelineStage.id != stage_id,
                    CRMPipelineStage.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow())
        )

    def _ensure_position_free(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        position: int,
        exclude_stage_id: uuid.UUID | None = None,
    ) -> None:
        if self.pipelines.position_taken(session, pipeline_id, position, exclude_stage_id=exclude_stage_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage position already used")

    def _ensure_retype_allowed(self, session: Session, stage: CRMPipelineStage, stage_type: str) -> None:
        clashing = {sale_status for sale_status, types in FORBIDDEN_STAGE_TYPES.items() if stage_type in types}
        if not clashing:
            return
        occupied = session.scalar(
            select(func.count(CRMDeal.id)).where(
                and_(CRMDeal.stage_id == stage.id, CRMDeal.sale_status.in_(clashing))
            )
        )
        if occupied:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"stage holds deals that cannot sit in a {stage_type} stage",
            )

    def _validate_terminal_stages(self, session: Session, pipeline_id: uuid.UUID) -> None:
        stages = self.pipelines.list_stages(session, pipeline_id)
        completed_count = sum(1 for stage in stages if stage.stage_type == STAGE_TYPE_COMPLETED)
        lost_count = sum(1 for stage in stages if stage.stage_type == STAGE_TYPE_LOST)
        if completed_count > 1 or lost_count > 1:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="pipeline can have at most one completed and one lost stage",
            )

    def _get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = self.pipelines.get_pipeline(session, pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        return pipeline

    def _get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = self.pipelines.get_stage(session, stage_id)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        return stage

    def _to_pipeline_read(self, session: Session, pipeline: CRMPipeline) -> PipelineRead:
        stages = self.pipelines.list_stages(session, pipeline.id)
        return PipelineRead.model_validate(
            {
                "id": pipeline.id,
                "name": pipeline.name,
                "description": pipeline.description,
                "is_default": pipeline.is_default,
                "has_fixed_stages": pipeline.has_fixed_stages,
                "is_active": pipeline.is_active,
                "created_at": pipeline.created_at,
                "updated_at": pipeline.updated_at,
                "row_version": pipeline.row_version,
                "stages": [PipelineStageRead.model_validate(stage).model_dump(mode="json") for stage in stages],
            }
        )


class DealService:
    entity_type = "crm.deal"

    def __init__(
        self,
        pipelines: PipelineRepository | None = None,
        deals: DealRepository | None = None,
        history: StageHistoryRepository | None = None,
    ) -> None:
        self.pipelines = pipelines or pipeline_repository
        self.deals = deals or deal_repository
        self.history = history or stage_history_repository

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        with atomic(session):
            if session.get(CRMLead, dto.lead_id) is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
            pipeline = self._resolve_pipeline(session, dto.pipeline_id)
            stage = self._resolve_stage(session, pipeline, dto.stage_id)

            now = utcnow()
            deal = CRMDeal(
                name=_clean_text(dto.name, "name"),
                lead_id=dto.lead_id,
                pipeline_id=pipeline.id,
                stage_id=stage.id,
                position=dto.position,
                value=dto.value,
                quote_value=Decimal("0"),
                status=dto.status,
                notes=dto.notes,
                external_conversation_id=dto.external_conversation_id,
                created_at=now,
                updated_at=now,
            )
            session.add(deal)
            session.flush()
            self.history.start_entry(session, deal.id, stage.id, now)
            deal_id = deal.id

        read = self.get_deal(session, deal_id)
        logger.info(
            "deal.created",
            extra={
                "deal_id": str(deal_id),
                "lead_id": str(read.lead_id),
                "pipeline_id": str(read.pipeline_id),
                "stage_id": str(read.stage_id),
                "user_id": actor_user.user_id,
            },
        )
        _publish(
            actor_user,
            "crm.deal.created",
            {
                "deal_id": str(deal_id),
                "lead_id": str(read.lead_id),
                "pipeline_id": str(read.pipeline_id),
                "stage_id": str(read.stage_id),
            },
        )
        return read

    def get_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._get(session, deal_id))

    def list_deals(self, session: Session, filters: dict[str, Any], offset: int, limit: int) -> list[DealRead]:
        return [DealRead.model_validate(deal) for deal in self.deals.list_deals(session, filters, offset, limit)]

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        payload = dto.model_dump(exclude_unset=True)
        expected_row_version = payload.pop("row_version", None)
        if "name" in payload:
            payload["name"] = _clean_text(payload["name"], "name")
        for key in ("lead_id", "position", "status"):
            if key in payload and payload[key] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{key} cannot be null")

        with atomic(session):
            deal = self._get(session, deal_id)
            if expected_row_version is not None and deal.row_version != expected_row_version:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
            if "lead_id" in payload and session.get(CRMLead, payload["lead_id"]) is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
            self._validate_outcome_fields(session, deal, payload)

            for key, value in payload.items():
                setattr(deal, key, value)
            deal.row_version = deal.row_version + 1
            deal.updated_at = utcnow()

        _publish(actor_user, "crm.deal.updated", {"deal_id": str(deal_id), "fields": sorted(payload)})
        return self.get_deal(session, deal_id)

    def list_stage_history(self, session: Session, deal_id: uuid.UUID) -> list[StageHistoryRead]:
        self._get(session, deal_id)
        rows = session.execute(
            select(CRMStageHistory, CRMPipelineStage.name)
            .join(CRMPipelineStage, CRMPipelineStage.id == CRMStageHistory.stage_id)
            .where(CRMStageHistory.deal_id == deal_id)
            .order_by(CRMStageHistory.entered_at, CRMStageHistory.id)
        ).all()
        return [
            StageHistoryRead.model_validate(
                {
                    "id": entry.id,
                    "deal_id": entry.deal_id,
                    "stage_id": entry.stage_id,
                    "stage_name": stage_name,
                    "entered_at": entry.entered_at,
                    "left_at": entry.left_at,
                }
            )
            for entry, stage_name in rows
        ]

    def _validate_outcome_fields(self, session: Session, deal: CRMDeal, payload: dict[str, Any]) -> None:
        if payload.get("sale_performance") is not None:
            if deal.sale_status != SALE_STATUS_WON:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="sale_performance only applies to won deals",
                )
            validate_sale_performance(session, payload["sale_performance"])
        if {"lost_reason", "lost_notes"} & set(payload) and deal.sale_status != SALE_STATUS_LOST:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="lost_reason and lost_notes only apply to lost deals",
            )
        if "lost_reason" in payload:
            payload["lost_reason"] = _clean_text(payload["lost_reason"], "lost_reason")

    def _resolve_pipeline(self, session: Session, pipeline_id: uuid.UUID | None) -> CRMPipeline:
        if pipeline_id is not None:
            pipeline = self.pipelines.get_pipeline(session, pipeline_id)
            if pipeline is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
            return pipeline
        pipeline = self.pipelines.get_default_pipeline(session)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no default pipeline configured")
        return pipeline

    def _resolve_stage(
        self,
        session: Session,
        pipeline: CRMPipeline,
        stage_id: uuid.UUID | None,
    ) -> CRMPipelineStage:
        if stage_id is not None:
            stage = self.pipelines.get_stage(session, stage_id)
            if stage is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
            if stage.pipeline_id != pipeline.id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="stage must belong to the deal's pipeline",
                )
            validate_stage_outcome(stage, SALE_STATUS_NEGOTIATION)
            return stage
        stage = self.pipelines.entry_stage(session, pipeline.id)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="pipeline has no open stages")
        return stage

    def _get(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.deals.get(session, deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal


class ClientMachineService:
    def list_machines(self, session: Session, deal_id: uuid.UUID) -> list[ClientMachineRead]:
        self._get_deal(session, deal_id)
        machines = session.scalars(
            select(CRMClientMachine)
            .where(CRMClientMachine.deal_id == deal_id)
            .order_by(CRMClientMachine.created_at, CRMClientMachine.id)
        ).all()
        return [ClientMachineRead.model_validate(machine) for machine in machines]

    def create_machine(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: ClientMachineCreate,
    ) -> ClientMachineRead:
        with atomic(session):
            self._get_deal(session, deal_id)
            machine = CRMClientMachine(
                deal_id=deal_id,
                name=_clean_text(dto.name, "name"),
                brand=dto.brand,
                model=dto.model,
                year=dto.year,
            )
            session.add(machine)
            session.flush()
            machine_id = machine.id

        _publish(actor_user, "crm.deal.machine_added", {"deal_id": str(deal_id), "machine_id": str(machine_id)})
        return ClientMachineRead.model_validate(self._get_machine(session, machine_id))

    def update_machine(
        self,
        session: Session,
        actor_user: ActorUser,
        machine_id: uuid.UUID,
        dto: ClientMachineUpdate,
    ) -> ClientMachineRead:
        payload = dto.model_dump(exclude_unset=True)
        if "name" in payload:
            payload["name"] = _clean_text(payload["name"], "name")
        with atomic(session):
            machine = self._get_machine(session, machine_id)
            for key, value in payload.items():
                setattr(machine, key, value)
            machine.updated_at = utcnow()
            deal_id = machine.deal_id

        _publish(actor_user, "crm.deal.machine_updated", {"deal_id": str(deal_id), "machine_id": str(machine_id)})
        return ClientMachineRead.model_validate(self._get_machine(session, machine_id))

    def delete_machine(self, session: Session, actor_user: ActorUser, machine_id: uuid.UUID) -> None:
        with atomic(session):
            machine = self._get_machine(session, machine_id)
            deal_id = machine.deal_id
            session.delete(machine)

        _publish(actor_user, "crm.deal.machine_removed", {"deal_id": str(deal_id), "machine_id": str(machine_id)})

    def _get_deal(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.get(CRMDeal, deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _get_machine(self, session: Session, machine_id: uuid.UUID) -> CRMClientMachine:
        machine = session.get(CRMClientMachine, machine_id)
        if machine is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="machine not found")
        return machine


@dataclass(frozen=True)
class _Registry:
    model: type[Any]
    read_schema: type[BaseModel]
    label_field: str
    not_found: str


REGISTRIES: dict[str, _Registry] = {
    "loss_reason": _Registry(CRMLossReason, LossReasonRead, "reason", "loss reason not found"),
    "sale_performance_reason": _Registry(
        CRMSalePerformanceReason,
        SalePerformanceReasonRead,
        "reason",
        "sale performance reason not found",
    ),
    "machine_brand": _Registry(CRMMachineBrand, MachineBrandRead, "name", "machine brand not found"),
    "machine_model": _Registry(CRMMachineModel, MachineModelRead, "name", "machine model not found"),
}


class ReferenceDataService:
    """Soft-delete registries backing deal forms.

    Rows are never removed; deactivated rows drop out of default listings but
    keep resolving for historical deals.
    """

    def list_items(
        self,
        session: Session,
        kind: str,
        include_inactive: bool = False,
        brand_id: uuid.UUID | None = None,
    ) -> list[Any]:
        registry = self._registry(kind)
        model = registry.model
        stmt = select(model)
        if not include_inactive:
            stmt = stmt.where(model.active.is_(True))
        if kind == "machine_model":
            if brand_id is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="brand_id is required")
            self._get(session, "machine_brand", brand_id)
            stmt = stmt.where(model.brand_id == brand_id)
        rows = session.scalars(stmt.order_by(getattr(model, registry.label_field), model.id)).all()
        return [registry.read_schema.model_validate(row) for row in rows]

    def create_item(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: str,
        dto: BaseModel,
        brand_id: uuid.UUID | None = None,
    ) -> Any:
        registry = self._registry(kind)
        values = dto.model_dump()
        values[registry.label_field] = _clean_text(values.get(registry.label_field), registry.label_field)

        with atomic(session, conflict_detail=f"{kind} already exists"):
            if kind == "machine_model":
                if brand_id is None:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="brand_id is required")
                self._get(session, "machine_brand", brand_id)
                values["brand_id"] = brand_id
            if kind == "sale_performance_reason":
                self._ensure_value_free(session, values["value"])
            row = registry.model(**values)
            session.add(row)
            session.flush()
            row_id = row.id

        _publish(actor_user, "crm.reference.created", {"kind": kind, "id": str(row_id)})
        return registry.read_schema.model_validate(self._get(session, kind, row_id))

    def update_item(
        self,
        session: Session,
        actor_user: ActorUser,
        kind: str,
        item_id: uuid.UUID,
        dto: BaseModel,
    ) -> Any:
        registry = self._registry(kind)
        payload = dto.model_dump(exclude_unset=True)
        if registry.label_field in payload:
            payload[registry.label_field] = _clean_text(payload[registry.label_field], registry.label_field)
        if "active" in payload and payload["active"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="active cannot be null")

        with atomic(session):
            row = self._get(session, kind, item_id)
            if payload.get("active") is False:
                self._ensure_deactivatable(kind, row)
            for key, value in payload.items():
                setattr(row, key, value)
            row.updated_at = utcnow()

        _publish(actor_user, "crm.reference.updated", {"kind": kind, "id": str(item_id), "fields": sorted(payload)})
        return registry.read_schema.model_validate(self._get(session, kind, item_id))

    def deactivate_item(self, session: Session, actor_user: ActorUser, kind: str, item_id: uuid.UUID) -> Any:
        registry = self._registry(kind)
        with atomic(session):
            row = self._get(session, kind, item_id)
            self._ensure_deactivatable(kind, row)
            row.active = False
            row.updated_at = utcnow()

        _publish(actor_user, "crm.reference.deactivated", {"kind": kind, "id": str(item_id)})
        return registry.read_schema.model_validate(self._get(session, kind, item_id))

    def _ensure_deactivatable(self, kind: str, row: Any) -> None:
        if kind == "sale_performance_reason" and row.is_system:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="system sale performance reasons cannot be deactivated",
            )

    def _ensure_value_free(self, session: Session, value: str) -> None:
        existing = session.scalar(
            select(func.count(CRMSalePerformanceReason.id)).where(CRMSalePerformanceReason.value == value)
        )
        if existing:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="sale performance value already exists")

    def _registry(self, kind: str) -> _Registry:
        registry = REGISTRIES.get(kind)
        if registry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown registry")
        return registry

    def _get(self, session: Session, kind: str, item_id: uuid.UUID) -> Any:
        registry = self._registry(kind)
        row = session.get(registry.model, item_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=registry.not_found)
        return row


lead_service = LeadService()
pipeline_service = PipelineService()
deal_service = DealService()
client_machine_service = ClientMachineService()
reference_data_service = ReferenceDataService()
