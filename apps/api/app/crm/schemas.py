from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


StageType = Literal["normal", "completed", "lost"]
SaleStatus = Literal["negotiation", "won", "lost"]
SaleOutcome = Literal["won", "lost"]
DealStatus = Literal["in_progress", "waiting", "completed", "canceled"]
ClientCategory = Literal["final_consumer", "reseller"]
ClientType = Literal["person", "company"]
ManualActivityType = Literal["email_sent", "call_made", "proposal_created", "meeting_scheduled", "note_added"]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    company_name: str | None = None
    corporate_name: str | None = None
    client_category: ClientCategory = "final_consumer"
    client_type: ClientType = "person"
    cpf: str | None = None
    cnpj: str | None = None
    state_registration: str | None = None
    client_code: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    address_number: str | None = None
    address_complement: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    notes: str | None = None
    external_contact_id: str | None = None
    external_agent_id: str | None = None
    external_agent_name: str | None = None


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    company_name: str | None = None
    corporate_name: str | None = None
    client_category: ClientCategory | None = None
    client_type: ClientType | None = None
    cpf: str | None = None
    cnpj: str | None = None
    state_registration: str | None = None
    client_code: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    address_number: str | None = None
    address_complement: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    notes: str | None = None
    external_contact_id: str | None = None
    external_agent_id: str | None = None
    external_agent_name: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company_name: str | None
    corporate_name: str | None
    client_category: str
    client_type: str
    cpf: str | None
    cnpj: str | None
    state_registration: str | None
    client_code: str | None
    email: str | None
    phone: str | None
    address: str | None
    address_number: str | None
    address_complement: str | None
    neighborhood: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    notes: str | None
    external_contact_id: str | None
    external_agent_id: str | None
    external_agent_name: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    is_default: bool = False
    has_fixed_stages: bool = False
    is_active: bool = True


class PipelineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    is_default: bool | None = None
    is_active: bool | None = None


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=0)
    stage_type: StageType = "normal"
    is_default: bool = False
    is_hidden: bool = False


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    position: int | None = Field(default=None, ge=0)
    stage_type: StageType | None = None
    is_default: bool | None = None
    is_hidden: bool | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    stage_type: str
    is_default: bool
    is_hidden: bool
    is_system: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_default: bool
    has_fixed_stages: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int
    stages: list[PipelineStageRead] = Field(default_factory=list)


class PipelineBoardColumnRead(BaseModel):
    stage: PipelineStageRead
    deal_count: int
    total_value: Decimal


class PipelineBoardRead(BaseModel):
    pipeline_id: UUID
    columns: list[PipelineBoardColumnRead]


class DealCreate(BaseModel):
    name: str = Field(min_length=1)
    lead_id: UUID
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    position: int = 0
    value: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    status: DealStatus = "in_progress"
    notes: str | None = None
    external_conversation_id: str | None = None


class DealUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    lead_id: UUID | None = None
    position: int | None = None
    status: DealStatus | None = None
    sale_performance: str | None = Field(default=None, min_length=1)
    lost_reason: str | None = None
    lost_notes: str | None = None
    notes: str | None = None
    external_conversation_id: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    lead_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    position: int
    value: Decimal
    quote_value: Decimal
    status: str
    sale_status: str
    sale_performance: str | None
    lost_reason: str | None
    lost_notes: str | None
    notes: str | None
    external_conversation_id: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class DealTransitionRead(DealRead):
    degraded: bool = False


class DealMoveStageRequest(BaseModel):
    stage_id: UUID
    row_version: int | None = Field(default=None, ge=1)


class DealSwitchPipelineRequest(BaseModel):
    pipeline_id: UUID
    stage_id: UUID | None = None
    row_version: int | None = Field(default=None, ge=1)


class DealOutcomeRequest(BaseModel):
    sale_status: SaleOutcome
    sale_performance: str | None = Field(default=None, min_length=1)
    lost_reason: str | None = None
    lost_notes: str | None = None
    value: Decimal | None = Field(default=None, ge=Decimal("0"))
    row_version: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_outcome_fields(self) -> DealOutcomeRequest:
        if self.sale_status == "won" and self.sale_performance is None:
            raise ValueError("sale_performance is required when sale_status is won")
        if self.sale_status == "lost" and not (self.lost_reason or "").strip():
            raise ValueError("lost_reason is required when sale_status is lost")
        return self


class DealReopenRequest(BaseModel):
    stage_id: UUID | None = None
    row_version: int | None = Field(default=None, ge=1)


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    stage_id: UUID
    stage_name: str | None = None
    entered_at: datetime
    left_at: datetime | None


class QuoteItemCreate(BaseModel):
    description: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=Decimal("0"), decimal_places=2)


class QuoteItemUpdate(BaseModel):
    description: str | None = Field(default=None, min_length=1)
    quantity: int | None = Field(default=None, ge=1)
    unit_price: Decimal | None = Field(default=None, ge=Decimal("0"), decimal_places=2)


class QuoteItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    description: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    created_at: datetime


class QuotationRead(BaseModel):
    quoted_on: date
    items: list[QuoteItemRead]
    total: Decimal


class SelectQuoteRequest(BaseModel):
    item_ids: list[UUID] = Field(default_factory=list)


class ActivityCreate(BaseModel):
    activity_type: ManualActivityType
    description: str = Field(min_length=1)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    activity_type: str
    description: str
    created_by: str | None
    created_at: datetime


class ClientMachineCreate(BaseModel):
    name: str = Field(min_length=1)
    brand: str | None = None
    model: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)


class ClientMachineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    brand: str | None = None
    model: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)


class ClientMachineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    name: str
    brand: str | None
    model: str | None
    year: int | None
    created_at: datetime
    updated_at: datetime


class LossReasonCreate(BaseModel):
    reason: str = Field(min_length=1)


class LossReasonUpdate(BaseModel):
    reason: str | None = Field(default=None, min_length=1)
    active: bool | None = None


class LossReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reason: str
    active: bool
    created_at: datetime
    updated_at: datetime


class SalePerformanceReasonCreate(BaseModel):
    reason: str = Field(min_length=1)
    value: str = Field(min_length=1, pattern=r"^[a-z][a-z0-9_]*$")
    description: str | None = None


class SalePerformanceReasonUpdate(BaseModel):
    reason: str | None = Field(default=None, min_length=1)
    description: str | None = None
    active: bool | None = None


class SalePerformanceReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reason: str
    value: str
    description: str | None
    active: bool
    is_system: bool
    created_at: datetime
    updated_at: datetime


class MachineBrandCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class MachineBrandUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    active: bool | None = None


class MachineBrandRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    active: bool
    created_at: datetime
    updated_at: datetime


class MachineModelCreate(BaseModel):
    name: str = Field(min_length=1)


class MachineModelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    active: bool | None = None


class MachineModelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    brand_id: UUID
    name: str
    active: bool
    created_at: datetime
    updated_at: datetime
