"""
Default production stage templates.

Each job type maps to an ordered list of stage descriptors. A job that
enters production with no stages gets one ProductionStage per descriptor,
numbered 1..N in list order. Unknown job types fall back to ``default``.
"""

import logging

from sqlalchemy import func, select

from app.models import db
from app.models.production import ProductionStage, StageStatus

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_KEY = "default"


def _stage(name: str, minutes: int, approval: bool = False) -> dict:
    return {
        "stage_name": name,
        "estimated_duration": minutes,
        "requires_customer_approval": approval,
    }


# ── Stage Templates ──────────────────────────────────────────────────────────

STAGE_TEMPLATES = {
    "business_cards": [
        _stage("design_review", 30),
        _stage("customer_approval", 60, approval=True),
        _stage("pre_press_setup", 45),
        _stage("printing_process", 120),
        _stage("cutting", 60),
        _stage("quality_inspection", 30),
        _stage("packaging", 30),
    ],
    "brochures": [
        _stage("design_review", 60),
        _stage("customer_approval", 120, approval=True),
        _stage("pre_press_setup", 90),
        _stage("printing_process", 180),
        _stage("folding", 90),
        _stage("quality_inspection", 45),
        _stage("packaging", 45),
    ],
    "flyers": [
        _stage("design_review", 30),
        _stage("customer_approval", 60, approval=True),
        _stage("pre_press_setup", 30),
        _stage("printing_process", 90),
        _stage("cutting", 45),
        _stage("quality_inspection", 30),
        _stage("packaging", 30),
    ],
    "posters": [
        _stage("design_review", 45),
        _stage("customer_approval", 90, approval=True),
        _stage("pre_press_setup", 60),
        _stage("printing_process", 120),
        _stage("cutting", 45),
        _stage("quality_inspection", 30),
        _stage("packaging", 30),
    ],
    "banners": [
        _stage("design_review", 60),
        _stage("customer_approval", 120, approval=True),
        _stage("material_preparation", 45),
        _stage("printing_process", 180),
        _stage("finishing", 90),
        _stage("quality_inspection", 45),
        _stage("packaging", 45),
    ],
    DEFAULT_TEMPLATE_KEY: [
        _stage("design_review", 45),
        _stage("customer_approval", 90, approval=True),
        _stage("pre_press_setup", 60),
        _stage("printing_process", 120),
        _stage("finishing", 60),
        _stage("quality_inspection", 30),
        _stage("packaging", 30),
    ],
}


def get_stage_template(job_type: str | None) -> list[dict]:
    """Return a copy of the stage descriptors for *job_type* (or the default)."""
    template = STAGE_TEMPLATES.get(job_type) or STAGE_TEMPLATES[DEFAULT_TEMPLATE_KEY]
    return [dict(entry) for entry in template]


def estimated_total_minutes(job_type: str | None) -> int:
    return sum(entry["estimated_duration"] for entry in get_stage_template(job_type))


def create_default_stages(job, actor_id: int | None = None) -> list[ProductionStage]:
    """Create the template stages for *job* if it has none yet.

    Idempotent: returns an empty list when the job already has stages.
    Flushes but does not commit; the caller owns the transaction.
    """
    existing = db.session.execute(
        select(func.count(ProductionStage.id)).where(ProductionStage.job_id == job.id)
    ).scalar()
    if existing:
        return []

    stages = []
    for order, entry in enumerate(get_stage_template(job.job_type), start=1):
        stage = ProductionStage(
            job_id=job.id,
            stage_order=order,
            stage_status=StageStatus.PENDING,
            updated_by=actor_id,
            **entry,
        )
        stages.append(stage)
        db.session.add(stage)

    db.session.flush()
    db.session.expire(job, ["stages"])
    logger.info(
        "Default production stages created",
        extra={"tenant_id": job.tenant_id, "job_id": job.id, "count": len(stages)},
    )
    return stages
