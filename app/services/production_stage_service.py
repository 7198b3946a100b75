"""
Print Production Platform
Production Stage Sequencer.

Validates and applies stage transitions, then advances the successor stage
and recomputes the parent job inside the same unit of work.

Unit of work per transition:
    1. Lock stage (and job for complete/approve) with SELECT ... FOR UPDATE
    2. Check input, then check the action is allowed from the current status
    3. Mutate the stage and flush
    4. SAVEPOINT: advance successor (conditional UPDATE ... WHERE status='pending')
    5. SAVEPOINT: completion tracker recompute
    6. COMMIT
    7. Notifications (failures logged, never raised)

Steps 4 and 5 are best-effort: a failure rolls back only its own savepoint,
is logged as AdvancementWarning / CompletionTrackingWarning, and the stage
transition still commits. Validation and state errors raise before step 3.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    AdvancementWarning,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.production import (
    STAGE_ACTIONS,
    ProductionJob,
    ProductionStage,
    StageStatus,
    as_utc,
    validate_stage_action,
)
from app.services.completion_tracker import check_job_completion
from app.services.notification import NotificationService
from app.services.side_effects import dispatch_notification, run_in_savepoint

logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    "start": "stage_started",
    "complete": "stage_completed",
    "approve": "stage_approved",
    "reject": "stage_rejected",
    "hold": "stage_held",
    "resume": "stage_resumed",
}


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Lookup & Guards
# ═════════════════════════════════════════════════════════════════════════════


def _load_stage(stage_id: int, tenant_id: int | None = None) -> ProductionStage:
    """Fetch and lock a stage; scoped through its job when tenant_id is given."""
    stmt = select(ProductionStage).where(ProductionStage.id == stage_id)
    if tenant_id is not None:
        stmt = stmt.join(ProductionJob, ProductionJob.id == ProductionStage.job_id).where(
            ProductionJob.tenant_id == tenant_id,
        )
    stage = db.session.execute(stmt.with_for_update()).scalar_one_or_none()
    if stage is None:
        raise NotFoundError(resource="ProductionStage", resource_id=stage_id, tenant_id=tenant_id)
    return stage


def _lock_job(job_id: int) -> ProductionJob:
    return db.session.execute(
        select(ProductionJob).where(ProductionJob.id == job_id).with_for_update()
    ).scalar_one()


def _require_action(stage: ProductionStage, action: str) -> None:
    if not validate_stage_action(stage.stage_status, action):
        raise InvalidStateError(
            "ProductionStage",
            stage.id,
            current_status=str(stage.stage_status),
            action=action,
            allowed=[str(s) for s in STAGE_ACTIONS[action]],
        )


def _require_reason(reason, action: str) -> str:
    if reason is None or not str(reason).strip():
        raise ValidationError(
            f"A reason is required to {action} a production stage",
            details={"reason": "required"},
        )
    return str(reason).strip()


# ═════════════════════════════════════════════════════════════════════════════
# Navigation
# ═════════════════════════════════════════════════════════════════════════════


def get_next_stage(stage: ProductionStage) -> ProductionStage | None:
    """Stage with stage_order + 1 in the same job, or None."""
    return db.session.execute(
        select(ProductionStage).where(
            ProductionStage.job_id == stage.job_id,
            ProductionStage.stage_order == stage.stage_order + 1,
        )
    ).scalar_one_or_none()


def get_previous_stage(stage: ProductionStage) -> ProductionStage | None:
    """Stage with stage_order - 1 in the same job, or None."""
    return db.session.execute(
        select(ProductionStage).where(
            ProductionStage.job_id == stage.job_id,
            ProductionStage.stage_order == stage.stage_order - 1,
        )
    ).scalar_one_or_none()


def entry_status_for(stage: ProductionStage) -> StageStatus:
    """Status a pending stage takes when it becomes reachable."""
    if stage.requires_customer_approval:
        return StageStatus.REQUIRES_APPROVAL
    return StageStatus.READY


def advance_from(stage: ProductionStage, actor_id: int, now: datetime | None = None):
    """Promote the successor of a completed stage if it is still pending.

    The UPDATE only matches while the successor's status is ``pending``, so
    a successor an operator already acted on (or a concurrent completion
    already advanced) is left as it is.

    Returns:
        The advanced successor, or None when nothing changed.
    """
    successor = get_next_stage(stage)
    if successor is None or successor.stage_status != StageStatus.PENDING:
        return None

    now = now or _now()
    entry = entry_status_for(successor)
    result = db.session.execute(
        update(ProductionStage)
        .where(
            ProductionStage.id == successor.id,
            ProductionStage.stage_status == StageStatus.PENDING,
        )
        .values(stage_status=entry, updated_by=actor_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    db.session.refresh(successor)
    successor.append_note(f"Auto-advanced from {stage.stage_name}", at=now)
    db.session.flush()
    logger.info(
        "Stage %s advanced to %s", successor.stage_name, entry,
        extra={"job_id": stage.job_id, "stage_id": successor.id, "actor_id": actor_id,
               "event_type": "stage_advanced"},
    )
    return successor


# ═════════════════════════════════════════════════════════════════════════════
# Commit & Dispatch
# ═════════════════════════════════════════════════════════════════════════════


def _commit_transition(stage: ProductionStage, action: str, actor_id: int) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Stage %s commit failed", action,
            extra={"stage_id": stage.id, "actor_id": actor_id},
        )
        raise
    logger.info(
        "Production stage %s: %s", stage.id, action,
        extra={"job_id": stage.job_id, "stage_id": stage.id, "actor_id": actor_id,
               "event_type": _EVENT_TYPES[action]},
    )


def _notify(stage: ProductionStage, successor=None, job_completed=False) -> None:
    job = stage.job
    fields = {"job_id": job.id, "tenant_id": job.tenant_id}
    dispatch_notification(NotificationService.notify_stage_changed, stage,
                          stage_id=stage.id, **fields)
    if successor is not None:
        dispatch_notification(NotificationService.notify_stage_changed, successor,
                              stage_id=successor.id, **fields)
    if job_completed:
        dispatch_notification(NotificationService.notify_job_completed, job, **fields)


def _finish_completion(stage: ProductionStage, job: ProductionJob, action: str,
                       actor_id: int, now: datetime) -> bool:
    """Shared tail of complete/approve: advance, recompute, commit, notify."""
    db.session.flush()
    successor = run_in_savepoint(
        AdvancementWarning,
        f"Auto-advance after stage {stage.id} failed",
        advance_from, stage, actor_id, now,
        job_id=job.id, stage_id=stage.id, tenant_id=job.tenant_id, actor_id=actor_id,
    )
    job_completed = check_job_completion(job, now, actor_id=actor_id)
    _commit_transition(stage, action, actor_id)
    _notify(stage, successor=successor, job_completed=job_completed)
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def start_stage(stage_id: int, actor_id: int, notes: str | None = None,
                *, tenant_id: int | None = None) -> bool:
    """pending/ready → in_progress."""
    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "start")

    now = _now()
    stage.stage_status = StageStatus.IN_PROGRESS
    stage.started_at = now
    stage.updated_by = actor_id
    stage.append_note("Started", notes, at=now)
    db.session.flush()

    _commit_transition(stage, "start", actor_id)
    _notify(stage)
    return True


def complete_stage(stage_id: int, actor_id: int, notes: str | None = None,
                   stage_data: dict | None = None, *, tenant_id: int | None = None) -> bool:
    """in_progress/requires_approval → completed, then advance and recompute the job.

    actual_duration is whole minutes since started_at, or None when the
    stage was never started. stage_data is merged over the existing payload.
    """
    if stage_data is not None and not isinstance(stage_data, dict):
        raise ValidationError("stage_data must be an object", details={"stage_data": "invalid"})

    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "complete")
    job = _lock_job(stage.job_id)

    now = _now()
    if stage.started_at:
        stage.actual_duration = int((now - as_utc(stage.started_at)).total_seconds() // 60)
    else:
        stage.actual_duration = None
    stage.stage_status = StageStatus.COMPLETED
    stage.completed_at = now
    stage.updated_by = actor_id
    stage.merge_stage_data(stage_data)
    stage.append_note("Completed", notes, at=now)

    return _finish_completion(stage, job, "complete", actor_id, now)


def approve_stage(stage_id: int, actor_id: int, notes: str | None = None,
                  *, tenant_id: int | None = None) -> bool:
    """requires_approval → completed, then advance and recompute the job."""
    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "approve")
    job = _lock_job(stage.job_id)

    now = _now()
    stage.stage_status = StageStatus.COMPLETED
    stage.completed_at = now
    stage.approved_by = actor_id
    stage.approval_status = "approved"
    stage.updated_by = actor_id
    if stage.requires_customer_approval:
        stage.customer_approved_at = now
    stage.append_note("Approved", notes, at=now)

    return _finish_completion(stage, job, "approve", actor_id, now)


def reject_stage(stage_id: int, actor_id: int, reason: str,
                 *, tenant_id: int | None = None) -> bool:
    """in_progress/requires_approval → rejected. The pipeline does not continue."""
    reason = _require_reason(reason, "reject")
    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "reject")

    now = _now()
    stage.stage_status = StageStatus.REJECTED
    stage.rejection_reason = reason
    stage.approval_status = "rejected"
    stage.updated_by = actor_id
    stage.append_note("Rejected", reason, at=now)
    db.session.flush()

    _commit_transition(stage, "reject", actor_id)
    _notify(stage)
    return True


def hold_stage(stage_id: int, actor_id: int, reason: str,
               *, tenant_id: int | None = None) -> bool:
    """pending/ready/in_progress → on_hold."""
    reason = _require_reason(reason, "hold")
    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "hold")

    now = _now()
    stage.stage_status = StageStatus.ON_HOLD
    stage.updated_by = actor_id
    stage.append_note("Put on hold", reason, at=now)
    db.session.flush()

    _commit_transition(stage, "hold", actor_id)
    _notify(stage)
    return True


def resume_stage(stage_id: int, actor_id: int, notes: str | None = None,
                 *, tenant_id: int | None = None) -> bool:
    """on_hold → in_progress if the stage had started, else pending."""
    stage = _load_stage(stage_id, tenant_id)
    _require_action(stage, "resume")

    now = _now()
    stage.stage_status = StageStatus.IN_PROGRESS if stage.started_at else StageStatus.PENDING
    stage.updated_by = actor_id
    stage.append_note("Resumed", notes, at=now)
    db.session.flush()

    _commit_transition(stage, "resume", actor_id)
    _notify(stage)
    return True
