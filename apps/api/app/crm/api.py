from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.activity import activity_recorder
from app.crm.cascade import deal_cascade_deleter
from app.crm.quotes import quote_service
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ClientMachineCreate,
    ClientMachineRead,
    ClientMachineUpdate,
    DealCreate,
    DealMoveStageRequest,
    DealOutcomeRequest,
    DealRead,
    DealReopenRequest,
    DealStatus,
    DealSwitchPipelineRequest,
    DealTransitionRead,
    DealUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    LossReasonCreate,
    LossReasonRead,
    LossReasonUpdate,
    MachineBrandCreate,
    MachineBrandRead,
    MachineBrandUpdate,
    MachineModelCreate,
    MachineModelRead,
    MachineModelUpdate,
    PipelineBoardRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    QuotationRead,
    QuoteItemCreate,
    QuoteItemRead,
    QuoteItemUpdate,
    SalePerformanceReasonCreate,
    SalePerformanceReasonRead,
    SalePerformanceReasonUpdate,
    SaleStatus,
    SelectQuoteRequest,
    StageHistoryRead,
)
from app.crm.service import (
    ActorUser,
    client_machine_service,
    deal_service,
    lead_service,
    pipeline_service,
    reference_data_service,
)
from app.crm.transitions import TransitionResult, deal_transition_engine

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
quotes_router = APIRouter(prefix="/api/crm", tags=["crm.quotes"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
machines_router = APIRouter(prefix="/api/crm", tags=["crm.machines"])
reference_router = APIRouter(prefix="/api/crm", tags=["crm.reference"])

ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.write",
    "crm.pipelines.read",
    "crm.pipelines.manage",
    "crm.deals.read",
    "crm.deals.write",
    "crm.deals.change_stage",
    "crm.deals.set_outcome",
    "crm.deals.delete",
    "crm.quotes.write",
    "crm.activities.write",
    "crm.reference.read",
    "crm.reference.manage",
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    permissions = set(auth_user.roles)
    if "admin" in normalized_roles or "crm.admin" in normalized_roles:
        permissions |= ALL_PERMISSIONS

    return ActorUser(
        user_id=auth_user.sub,
        permissions=permissions,
        display_name=auth_user.name,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _transition_read(result: TransitionResult) -> DealTransitionRead:
    return DealTransitionRead(**result.deal.model_dump(), degraded=result.degraded)


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    q: str | None = Query(default=None),
    city: str | None = Query(default=None),
    state: str | None = Query(default=None),
    external_contact_id: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            filters={"q": q, "city": city, "state": state, "external_contact_id": external_contact_id},
            offset=offset,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/deals", response_model=list[DealRead])
def list_lead_deals(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        require_permission(user, "crm.deals.read")
        return lead_service.list_deals(db, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_deals_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_pipelines(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline(db, pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.patch("/pipelines/{pipeline_id}", response_model=PipelineRead)
def patch_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}/stages", response_model=list[PipelineStageRead])
def list_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    include_hidden: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_stages(db, pipeline_id, include_hidden=include_hidden)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}/board", response_model=PipelineBoardRead)
def get_board(
    request: Request,
    pipeline_id: uuid.UUID,
    include_hidden: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineBoardRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        require_permission(user, "crm.deals.read")
        return pipeline_service.board(db, pipeline_id, include_hidden=include_hidden)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_board_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.patch("/stages/{stage_id}", response_model=PipelineStageRead)
def patch_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_stage(db, user, stage_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.delete("/stages/{stage_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_stage(db, user, stage_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    sale_status: SaleStatus | None = Query(default=None),
    status_filter: DealStatus | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(
            db,
            filters={
                "pipeline_id": pipeline_id,
                "stage_id": stage_id,
                "lead_id": lead_id,
                "sale_status": sale_status,
                "status": status_filter,
                "q": q,
            },
            offset=offset,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.delete")
        if not deal_cascade_deleter.delete_deal(db, user, deal_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/move-stage", response_model=DealTransitionRead)
def move_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealTransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.change_stage")
        result = deal_transition_engine.move_to_stage(db, user, deal_id, dto.stage_id, row_version=dto.row_version)
        return _transition_read(result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_move_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/switch-pipeline", response_model=DealTransitionRead)
def switch_deal_pipeline(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealSwitchPipelineRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealTransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.change_stage")
        result = deal_transition_engine.switch_pipeline(
            db,
            user,
            deal_id,
            dto.pipeline_id,
            stage_id=dto.stage_id,
            row_version=dto.row_version,
        )
        return _transition_read(result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_switch_pipeline_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/outcome", response_model=DealTransitionRead)
def set_deal_outcome(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealOutcomeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealTransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.set_outcome")
        result = deal_transition_engine.set_sale_outcome(
            db,
            user,
            deal_id,
            dto.sale_status,
            sale_performance=dto.sale_performance,
            lost_reason=dto.lost_reason,
            lost_notes=dto.lost_notes,
            value=dto.value,
            row_version=dto.row_version,
        )
        return _transition_read(result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_outcome_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/reopen", response_model=DealTransitionRead)
def reopen_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealReopenRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealTransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.set_outcome")
        result = deal_transition_engine.reopen(db, user, deal_id, stage_id=dto.stage_id, row_version=dto.row_version)
        return _transition_read(result)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_reopen_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}/stage-history", response_model=list[StageHistoryRead])
def list_stage_history(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_stage_history(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_stage_history_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("/deals/{deal_id}/quote-items", response_model=list[QuoteItemRead])
def list_quote_items(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuoteItemRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return quote_service.list_items(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_item_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post(
    "/deals/{deal_id}/quote-items",
    response_model=QuoteItemRead,
    status_code=status.HTTP_201_CREATED,
)
def add_quote_item(
    request: Request,
    deal_id: uuid.UUID,
    dto: QuoteItemCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteItemRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.write")
        return quote_service.add_item(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_item_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.patch("/quote-items/{item_id}", response_model=QuoteItemRead)
def patch_quote_item(
    request: Request,
    item_id: uuid.UUID,
    dto: QuoteItemUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteItemRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.write")
        return quote_service.update_item(db, user, item_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_item_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.delete("/quote-items/{item_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_quote_item(
    request: Request,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.quotes.write")
        quote_service.remove_item(db, user, item_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_item_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("/deals/{deal_id}/quotations", response_model=list[QuotationRead])
def list_quotations(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuotationRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return quote_service.list_quotations(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quotation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("/deals/{deal_id}/select-quote", response_model=DealRead)
def select_quote(
    request: Request,
    deal_id: uuid.UUID,
    dto: SelectQuoteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.write")
        return quote_service.select_quote_as_deal_value(db, user, deal_id, dto.item_ids)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_select_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("/deals/{deal_id}/recompute-value", response_model=DealRead)
def recompute_deal_value(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.write")
        return quote_service.recompute_deal_value(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_recompute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/deals/{deal_id}/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return activity_recorder.list_for_deal(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post(
    "/deals/{deal_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def log_activity(
    request: Request,
    deal_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_recorder.log_manual_activity(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@machines_router.get("/deals/{deal_id}/machines", response_model=list[ClientMachineRead])
def list_machines(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientMachineRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return client_machine_service.list_machines(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@machines_router.post(
    "/deals/{deal_id}/machines",
    response_model=ClientMachineRead,
    status_code=status.HTTP_201_CREATED,
)
def create_machine(
    request: Request,
    deal_id: uuid.UUID,
    dto: ClientMachineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientMachineRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return client_machine_service.create_machine(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@machines_router.patch("/machines/{machine_id}", response_model=ClientMachineRead)
def patch_machine(
    request: Request,
    machine_id: uuid.UUID,
    dto: ClientMachineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientMachineRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return client_machine_service.update_machine(db, user, machine_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@machines_router.delete("/machines/{machine_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_machine(
    request: Request,
    machine_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.write")
        client_machine_service.delete_machine(db, user, machine_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.get("/loss-reasons", response_model=list[LossReasonRead])
def list_loss_reasons(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LossReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.reference.read")
        return reference_data_service.list_items(db, "loss_reason", include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_loss_reason_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.post("/loss-reasons", response_model=LossReasonRead, status_code=status.HTTP_201_CREATED)
def create_loss_reason(
    request: Request,
    dto: LossReasonCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LossReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.create_item(db, user, "loss_reason", dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_loss_reason_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.patch("/loss-reasons/{item_id}", response_model=LossReasonRead)
def patch_loss_reason(
    request: Request,
    item_id: uuid.UUID,
    dto: LossReasonUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LossReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.update_item(db, user, "loss_reason", item_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_loss_reason_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.delete("/loss-reasons/{item_id}", response_model=LossReasonRead)
def deactivate_loss_reason(
    request: Request,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LossReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.deactivate_item(db, user, "loss_reason", item_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_loss_reason_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.get("/sale-performance-reasons", response_model=list[SalePerformanceReasonRead])
def list_sale_performance_reasons(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SalePerformanceReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.reference.read")
        return reference_data_service.list_items(db, "sale_performance_reason", include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_sale_performance_reason_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.post(
    "/sale-performance-reasons",
    response_model=SalePerformanceReasonRead,
    status_code=status.HTTP_201_CREATED,
)
def create_sale_performance_reason(
    request: Request,
    dto: SalePerformanceReasonCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SalePerformanceReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.create_item(db, user, "sale_performance_reason", dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_sale_performance_reason_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.patch("/sale-performance-reasons/{item_id}", response_model=SalePerformanceReasonRead)
def patch_sale_performance_reason(
    request: Request,
    item_id: uuid.UUID,
    dto: SalePerformanceReasonUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SalePerformanceReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.update_item(db, user, "sale_performance_reason", item_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_sale_performance_reason_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.delete("/sale-performance-reasons/{item_id}", response_model=SalePerformanceReasonRead)
def deactivate_sale_performance_reason(
    request: Request,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SalePerformanceReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.deactivate_item(db, user, "sale_performance_reason", item_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_sale_performance_reason_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.get("/machine-brands", response_model=list[MachineBrandRead])
def list_machine_brands(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MachineBrandRead] | JSONResponse:
    try:
        require_permission(user, "crm.reference.read")
        return reference_data_service.list_items(db, "machine_brand", include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_brand_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.post("/machine-brands", response_model=MachineBrandRead, status_code=status.HTTP_201_CREATED)
def create_machine_brand(
    request: Request,
    dto: MachineBrandCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineBrandRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.create_item(db, user, "machine_brand", dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_brand_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.patch("/machine-brands/{item_id}", response_model=MachineBrandRead)
def patch_machine_brand(
    request: Request,
    item_id: uuid.UUID,
    dto: MachineBrandUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineBrandRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.update_item(db, user, "machine_brand", item_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_brand_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.delete("/machine-brands/{item_id}", response_model=MachineBrandRead)
def deactivate_machine_brand(
    request: Request,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineBrandRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.deactivate_item(db, user, "machine_brand", item_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_brand_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.get("/machine-brands/{brand_id}/models", response_model=list[MachineModelRead])
def list_machine_models(
    request: Request,
    brand_id: uuid.UUID,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MachineModelRead] | JSONResponse:
    try:
        require_permission(user, "crm.reference.read")
        return reference_data_service.list_items(
            db,
            "machine_model",
            include_inactive=include_inactive,
            brand_id=brand_id,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_model_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.post(
    "/machine-brands/{brand_id}/models",
    response_model=MachineModelRead,
    status_code=status.HTTP_201_CREATED,
)
def create_machine_model(
    request: Request,
    brand_id: uuid.UUID,
    dto: MachineModelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineModelRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.create_item(db, user, "machine_model", dto, brand_id=brand_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_model_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.patch("/machine-models/{item_id}", response_model=MachineModelRead)
def patch_machine_model(
    request: Request,
    item_id: uuid.UUID,
    dto: MachineModelUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineModelRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.update_item(db, user, "machine_model", item_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_model_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reference_router.delete("/machine-models/{item_id}", response_model=MachineModelRead)
def deactivate_machine_model(
    request: Request,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MachineModelRead | JSONResponse:
    try:
        require_permission(user, "crm.reference.manage")
        return reference_data_service.deactivate_item(db, user, "machine_model", item_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_machine_model_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


routers = [
    leads_router,
    pipelines_router,
    deals_router,
    quotes_router,
    activities_router,
    machines_router,
    reference_router,
]
