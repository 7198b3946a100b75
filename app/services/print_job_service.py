"""
Print Production Platform
Print Job Service: job provisioning.

Creates jobs, starts production (provisioning the template stages on first
start), assigns staff, changes priority and builds the branch production
queue. Stage status changes after provisioning belong to the stage
sequencer (production_stage_service).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, select
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.production import (
    CLOSED_JOB_STATUSES,
    JOB_PRIORITIES,
    JOB_TYPES,
    PRIORITY_RANK,
    JobStatus,
    ProductionJob,
    ProductionStage,
    StageStatus,
)
from app.services.helpers.scoped_queries import get_scoped
from app.services.production_stage_service import entry_status_for
from app.services.stage_templates import create_default_stages

logger = logging.getLogger(__name__)

# Turnaround used when a job is created without an estimated completion
_TURNAROUND_HOURS = {
    "business_cards": 4,
    "flyers": 6,
    "brochures": 12,
    "posters": 8,
    "banners": 24,
    "stickers": 6,
    "custom": 24,
}
_DEFAULT_TURNAROUND_HOURS = 12


def _now():
    return datetime.now(timezone.utc)


def _validate_enum(value: str, allowed: set[str], field_name: str) -> str | None:
    """Return error message if value not in allowed set, else None."""
    if value and value not in allowed:
        return f"Invalid {field_name}: '{value}'. Allowed: {sorted(allowed)}"
    return None


def _get_job(job_id: int, tenant_id: int | None, *, for_update: bool = False) -> ProductionJob:
    if tenant_id is not None:
        return get_scoped(ProductionJob, job_id, tenant_id=tenant_id, for_update=for_update)
    stmt = select(ProductionJob).where(ProductionJob.id == job_id)
    if for_update:
        stmt = stmt.with_for_update()
    job = db.session.execute(stmt).scalar_one_or_none()
    if job is None:
        raise NotFoundError(resource="ProductionJob", resource_id=job_id)
    return job


def _commit(action: str, job: ProductionJob, actor_id: int | None) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Print job %s failed", action,
            extra={"tenant_id": job.tenant_id, "job_id": job.id, "actor_id": actor_id},
        )
        raise


def _ready_first_pending_stage(job: ProductionJob, actor_id: int, now: datetime):
    """Make the job's earliest unfinished stage actionable if it is still pending.

    Later pending stages are left for the sequencer to advance.
    """
    first = db.session.execute(
        select(ProductionStage)
        .where(
            ProductionStage.job_id == job.id,
            ProductionStage.stage_status != StageStatus.COMPLETED,
        )
        .order_by(ProductionStage.stage_order)
        .limit(1)
    ).scalar_one_or_none()
    if first is None:
        logger.warning("No open production stages for job", extra={"job_id": job.id})
        return None
    if first.stage_status != StageStatus.PENDING:
        return None
    first.stage_status = entry_status_for(first)
    first.updated_by = actor_id
    first.append_note("Stage ready for production", first.stage_name, at=now)
    return first


# ═════════════════════════════════════════════════════════════════════════════
# Job creation
# ═════════════════════════════════════════════════════════════════════════════


def generate_job_number(branch_id: int, branch_code: str | None = None,
                        now: datetime | None = None) -> str:
    """Next ``<BRANCH>-YYYYMMDD-NNN`` number for the branch on that day.

    The sequence is the highest numeric suffix in use plus one; it widens
    past three digits instead of wrapping.
    """
    now = now or _now()
    prefix = f"{branch_code or 'JOB'}-{now:%Y%m%d}-"
    numbers = db.session.execute(
        select(ProductionJob.job_number)
        .where(
            ProductionJob.branch_id == branch_id,
            ProductionJob.job_number.like(f"{prefix}%"),
        )
    ).scalars().all()
    suffixes = [int(n[len(prefix):]) for n in numbers if n[len(prefix):].isdigit()]
    sequence = max(suffixes, default=0) + 1
    return f"{prefix}{sequence:03d}"


def create_job(data: dict[str, Any], *, tenant_id: int, actor_id: int | None = None) -> ProductionJob:
    """Create a pending print job.

    Args:
        data: branch_id (required), job_type, priority, assigned_to,
              job_number, branch_code, estimated_completion, notes.
        tenant_id: Owning company.
        actor_id: Acting user, recorded in the notes log.

    Raises:
        ValidationError: Missing branch or unknown job_type / priority.
    """
    branch_id = data.get("branch_id")
    if not branch_id:
        raise ValidationError("branch_id is required", details={"branch_id": "required"})

    job_type = data.get("job_type") or "custom"
    if err := _validate_enum(job_type, JOB_TYPES, "job_type"):
        raise ValidationError(err, details={"job_type": "invalid"})

    priority = data.get("priority") or "normal"
    if err := _validate_enum(priority, JOB_PRIORITIES, "priority"):
        raise ValidationError(err, details={"priority": "invalid"})

    now = _now()
    estimated = data.get("estimated_completion") or now + timedelta(
        hours=_TURNAROUND_HOURS.get(job_type, _DEFAULT_TURNAROUND_HOURS)
    )
    job = ProductionJob(
        tenant_id=tenant_id,
        branch_id=branch_id,
        job_number=data.get("job_number") or generate_job_number(branch_id, data.get("branch_code"), now),
        job_type=job_type,
        priority=priority,
        assigned_to=data.get("assigned_to"),
        production_status=JobStatus.PENDING,
        estimated_completion=estimated,
    )
    job.append_note("Created", data.get("notes"), at=now)
    db.session.add(job)
    _commit("create", job, actor_id)
    logger.info(
        "Print job created",
        extra={"tenant_id": tenant_id, "job_id": job.id, "actor_id": actor_id},
    )
    return job


# ═════════════════════════════════════════════════════════════════════════════
# Production lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def start_production(job_id: int, actor_id: int, tenant_id: int | None = None) -> bool:
    """Put a job into production.

    Moves the job to ``design_review``, stamps started_at on the first
    start, creates the job-type template stages if the job has none and
    makes the first pending stage actionable (``ready`` unless gated).

    Raises:
        NotFoundError: Job does not exist (in the tenant).
        InvalidStateError: Job is completed or cancelled.
    """
    job = _get_job(job_id, tenant_id, for_update=True)
    if job.is_closed:
        raise InvalidStateError(
            "ProductionJob", job.id,
            current_status=str(job.production_status),
            action="start production",
            allowed=[str(s) for s in JobStatus if s not in CLOSED_JOB_STATUSES],
        )

    now = _now()
    job.production_status = JobStatus.DESIGN_REVIEW
    if job.started_at is None:
        job.started_at = now
    job.append_note("Production started", f"user {actor_id}", at=now)
    db.session.flush()

    create_default_stages(job, actor_id)
    first = _ready_first_pending_stage(job, actor_id, now)

    _commit("start production", job, actor_id)
    logger.info(
        "Production started",
        extra={"tenant_id": job.tenant_id, "job_id": job.id, "actor_id": actor_id,
               "stage_id": first.id if first else None, "event_type": "production_started"},
    )
    return True


def assign_to_staff(job_id: int, staff_id: int, actor_id: int, notes: str | None = None,
                    *, tenant_id: int | None = None) -> bool:
    """Assign a job to a staff member and make its first pending stage actionable."""
    job = _get_job(job_id, tenant_id, for_update=True)
    if job.is_closed:
        raise InvalidStateError(
            "ProductionJob", job.id,
            current_status=str(job.production_status),
            action="assign",
            allowed=[str(s) for s in JobStatus if s not in CLOSED_JOB_STATUSES],
        )

    now = _now()
    job.assigned_to = staff_id
    job.production_status = JobStatus.ASSIGNED
    job.append_note(f"Assigned to user {staff_id}", notes, at=now)
    _ready_first_pending_stage(job, actor_id, now)

    _commit("assign", job, actor_id)
    logger.info(
        "Print job assigned to %s", staff_id,
        extra={"tenant_id": job.tenant_id, "job_id": job.id, "actor_id": actor_id},
    )
    return True


def update_priority(job_id: int, priority: str, actor_id: int, reason: str | None = None,
                    *, tenant_id: int | None = None) -> bool:
    if err := _validate_enum(priority, JOB_PRIORITIES, "priority"):
        raise ValidationError(err, details={"priority": "invalid"})
    job = _get_job(job_id, tenant_id, for_update=True)
    job.priority = priority
    job.append_note(f"Priority changed to {priority}", reason)
    _commit("priority update", job, actor_id)
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Queue
# ═════════════════════════════════════════════════════════════════════════════


def get_production_queue(branch_id: int, assigned_to: int | None = None) -> dict[str, list[dict]]:
    """Open jobs of a branch grouped by production_status.

    Within a group, jobs are ordered by priority (urgent first), then by
    estimated completion (jobs without one last).
    """
    stmt = select(ProductionJob).where(
        ProductionJob.branch_id == branch_id,
        ProductionJob.production_status.not_in(list(CLOSED_JOB_STATUSES)),
    )
    if assigned_to is not None:
        stmt = stmt.where(ProductionJob.assigned_to == assigned_to)
    stmt = stmt.order_by(
        case(PRIORITY_RANK, value=ProductionJob.priority, else_=len(PRIORITY_RANK)),
        ProductionJob.estimated_completion.is_(None),
        ProductionJob.estimated_completion,
        ProductionJob.id,
    )

    queue: dict[str, list[dict]] = {}
    for job in db.session.execute(stmt).scalars():
        queue.setdefault(str(job.production_status), []).append(job.to_dict())
    return queue
