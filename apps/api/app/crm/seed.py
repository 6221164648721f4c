from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.crm.models import (
    CRMLossReason,
    CRMMachineBrand,
    CRMPipeline,
    CRMPipelineStage,
    CRMSalePerformanceReason,
    STAGE_TYPE_NORMAL,
)
from app.crm.repositories import atomic
from app.crm.service import FIXED_STAGE_POSITION, FIXED_STAGES


logger = logging.getLogger("app.lifecycle")

DEFAULT_PIPELINES = (
    {
        "name": "Commercial",
        "description": "Sales pipeline with fixed completed and lost stages",
        "is_default": True,
        "has_fixed_stages": True,
        "stages": ("Prospecting", "Qualification", "Proposal", "Negotiation"),
    },
    {
        "name": "Purchasing and Logistics",
        "description": "Purchasing and logistics pipeline without fixed stages",
        "is_default": False,
        "has_fixed_stages": False,
        "stages": ("Supplier", "Pickup", "Picking", "Invoicing", "Shipping"),
    },
)
DEFAULT_LOSS_REASONS = ("Price too high", "Competitor", "Client gave up")
DEFAULT_SALE_PERFORMANCE_REASONS = (
    ("Below quote", "below_quote", "Sale closed below the initially quoted value"),
    ("According to quote", "according_to_quote", "Sale closed at the initially quoted value"),
    ("Above quote", "above_quote", "Sale closed above the initially quoted value"),
)
DEFAULT_MACHINE_BRANDS = (
    ("JCB", "JCB Construction Equipment"),
    ("Caterpillar", "Caterpillar Inc."),
    ("John Deere", "John Deere Construction & Forestry"),
)


def seed_reference_data(session: Session) -> dict[str, int]:
    """Insert default pipelines and registries; rows that already exist are left alone."""
    inserted = {"pipelines": 0, "loss_reasons": 0, "sale_performance_reasons": 0, "machine_brands": 0}
    with atomic(session):
        has_default = (
            session.scalar(select(func.count(CRMPipeline.id)).where(CRMPipeline.is_default.is_(True))) or 0
        ) > 0
        for definition in DEFAULT_PIPELINES:
            if session.scalar(select(CRMPipeline.id).where(CRMPipeline.name == definition["name"])) is not None:
                continue
            pipeline = CRMPipeline(
                name=definition["name"],
                description=definition["description"],
                is_default=bool(definition["is_default"]) and not has_default,
                has_fixed_stages=definition["has_fixed_stages"],
            )
            session.add(pipeline)
            session.flush()
            for position, name in enumerate(definition["stages"], start=1):
                session.add(
                    CRMPipelineStage(
                        pipeline_id=pipeline.id,
                        name=name,
                        position=position,
                        stage_type=STAGE_TYPE_NORMAL,
                        is_default=position == 1,
                    )
                )
            if definition["has_fixed_stages"]:
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
            inserted["pipelines"] += 1

        for reason in DEFAULT_LOSS_REASONS:
            if session.scalar(select(CRMLossReason.id).where(CRMLossReason.reason == reason)) is None:
                session.add(CRMLossReason(reason=reason))
                inserted["loss_reasons"] += 1

        for reason, value, description in DEFAULT_SALE_PERFORMANCE_REASONS:
            if session.scalar(select(CRMSalePerformanceReason.id).where(CRMSalePerformanceReason.value == value)) is None:
                session.add(
                    CRMSalePerformanceReason(reason=reason, value=value, description=description, is_system=True)
                )
                inserted["sale_performance_reasons"] += 1

        for name, description in DEFAULT_MACHINE_BRANDS:
            if session.scalar(select(CRMMachineBrand.id).where(CRMMachineBrand.name == name)) is None:
                session.add(CRMMachineBrand(name=name, description=description))
                inserted["machine_brands"] += 1

    logger.info("reference_data.seeded", extra={"rows": sum(inserted.values())})
    return inserted
