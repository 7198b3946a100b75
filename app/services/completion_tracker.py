"""
Print Production Platform
Job Completion Tracker.

Recomputes a job's completion_percentage from its stage counts and flips
production_status to ``completed`` exactly when every stage is completed.
Safe to call any number of times: the same stage state always yields the
same job state, and actual_completion is stamped once.

Called from the stage sequencer inside the transition's unit of work, and
from the ``production_completion_reconcile`` scheduled job as a sweep.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import case, func, select

from app.core.exceptions import CompletionTrackingWarning
from app.models import db
from app.models.production import (
    CLOSED_JOB_STATUSES,
    JobStatus,
    ProductionJob,
    ProductionStage,
    StageStatus,
)
from app.services.notification import NotificationService
from app.services.side_effects import dispatch_notification, run_in_savepoint

logger = logging.getLogger(__name__)


def completion_percentage(completed: int, total: int) -> int:
    """100 * completed / total rounded half up; 0 when there are no stages."""
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def count_stages(job_id: int) -> tuple[int, int]:
    """Return (total, completed) stage counts for a job."""
    total, completed = db.session.execute(
        select(
            func.count(ProductionStage.id),
            func.coalesce(
                func.sum(case((ProductionStage.stage_status == StageStatus.COMPLETED, 1), else_=0)),
                0,
            ),
        ).where(ProductionStage.job_id == job_id)
    ).one()
    return int(total), int(completed)


def recompute_job(job: ProductionJob, now: datetime | None = None) -> bool:
    """Apply the current stage counts to *job*.

    Raises on database errors; use check_job_completion() for the
    best-effort variant.

    Returns:
        True if this call moved the job into ``completed``.
    """
    total, completed = count_stages(job.id)

    if total > 0 and completed == total:
        newly_completed = job.production_status != JobStatus.COMPLETED
        job.production_status = JobStatus.COMPLETED
        job.completion_percentage = 100
        if job.actual_completion is None:
            job.actual_completion = now or datetime.now(timezone.utc)
        db.session.flush()
        if newly_completed:
            logger.info(
                "Production job completed",
                extra={"tenant_id": job.tenant_id, "job_id": job.id,
                       "event_type": "job_completed"},
            )
        return newly_completed

    job.completion_percentage = completion_percentage(completed, total)
    db.session.flush()
    return False


def check_job_completion(job: ProductionJob, now: datetime | None = None,
                         actor_id: int | None = None) -> bool:
    """Best-effort recompute inside a SAVEPOINT.

    Failures are logged as CompletionTrackingWarning and never raised.

    Returns:
        True if the job just completed (caller sends the notification
        after commit).
    """
    result = run_in_savepoint(
        CompletionTrackingWarning,
        f"Completion tracking failed for job {job.id}",
        recompute_job, job, now,
        job_id=job.id, tenant_id=job.tenant_id, actor_id=actor_id,
    )
    return bool(result)


def reconcile_job_completion(tenant_id: int | None = None) -> dict:
    """Re-run the tracker for every started, still-open job.

    Repairs jobs whose completion bookkeeping failed during a transition.
    Commits once at the end; sends job-completed notifications for jobs
    this sweep completed.

    Returns:
        Dict with jobs_checked, jobs_completed and failures counts.
    """
    stmt = select(ProductionJob).where(
        ProductionJob.started_at.is_not(None),
        ProductionJob.production_status.not_in(list(CLOSED_JOB_STATUSES)),
    )
    if tenant_id is not None:
        stmt = stmt.where(ProductionJob.tenant_id == tenant_id)
    jobs = db.session.execute(stmt.order_by(ProductionJob.id)).scalars().all()

    results = {"jobs_checked": 0, "jobs_completed": 0, "failures": 0}
    completed_jobs = []
    for job in jobs:
        results["jobs_checked"] += 1
        outcome = run_in_savepoint(
            CompletionTrackingWarning,
            f"Completion reconcile failed for job {job.id}",
            recompute_job, job,
            job_id=job.id, tenant_id=job.tenant_id,
        )
        if outcome is None:
            # recompute_job returns a bool; None means the savepoint failed
            results["failures"] += 1
        elif outcome:
            completed_jobs.append(job)

    db.session.commit()
    results["jobs_completed"] = len(completed_jobs)

    for job in completed_jobs:
        dispatch_notification(NotificationService.notify_job_completed, job,
                              job_id=job.id, tenant_id=job.tenant_id)

    logger.info("Completion reconcile: %s", results, extra={"tenant_id": tenant_id})
    return results
