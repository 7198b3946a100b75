"""
Print Production Platform
Production read models.

Read-only queries over jobs and stages for dashboards, queues and the
kanban board. Nothing here changes a status; results are snapshots and may
trail an in-flight transition.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select

from app.models import db
from app.models.production import ProductionJob, ProductionStage, StageStatus
from app.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

KANBAN_COLUMNS = (
    StageStatus.PENDING,
    StageStatus.READY,
    StageStatus.IN_PROGRESS,
    StageStatus.REQUIRES_APPROVAL,
    StageStatus.ON_HOLD,
    StageStatus.COMPLETED,
)


def _stage_card(stage: ProductionStage, now: datetime | None = None) -> dict:
    """Compact stage + job summary used by list views."""
    job = stage.job
    d = stage.to_dict()
    d["is_overdue"] = stage.is_overdue(now)
    d["job"] = {
        "id": job.id,
        "job_number": job.job_number,
        "job_type": job.job_type,
        "priority": job.priority,
        "branch_id": job.branch_id,
        "assigned_to": job.assigned_to,
    }
    return d


def _stage_query():
    return select(ProductionStage).join(
        ProductionJob, ProductionJob.id == ProductionStage.job_id,
    )


# ── Per-job views ────────────────────────────────────────────────────────────


def get_stage_timeline(job_id: int, *, tenant_id: int | None = None) -> list[dict]:
    """All stages of a job in stage_order."""
    if tenant_id is not None:
        get_scoped(ProductionJob, job_id, tenant_id=tenant_id)
    stages = db.session.execute(
        select(ProductionStage)
        .where(ProductionStage.job_id == job_id)
        .order_by(ProductionStage.stage_order)
    ).scalars().all()
    return [s.to_dict() for s in stages]


def get_current_active_stage(job_id: int) -> ProductionStage | None:
    """Lowest-ordered in-progress stage of the job."""
    return db.session.execute(
        select(ProductionStage)
        .where(
            ProductionStage.job_id == job_id,
            ProductionStage.stage_status == StageStatus.IN_PROGRESS,
        )
        .order_by(ProductionStage.stage_order)
        .limit(1)
    ).scalar_one_or_none()


def get_next_ready_stage(job_id: int) -> ProductionStage | None:
    """Lowest-ordered stage that is ready or still pending."""
    return db.session.execute(
        select(ProductionStage)
        .where(
            ProductionStage.job_id == job_id,
            ProductionStage.stage_status.in_([StageStatus.READY, StageStatus.PENDING]),
        )
        .order_by(ProductionStage.stage_order)
        .limit(1)
    ).scalar_one_or_none()


# ── Cross-job views ──────────────────────────────────────────────────────────


def get_pending_approvals(tenant_id: int) -> dict[str, list[dict]]:
    """Stages awaiting approval, split into customer and internal approvals."""
    stages = db.session.execute(
        _stage_query()
        .where(
            ProductionJob.tenant_id == tenant_id,
            ProductionStage.stage_status == StageStatus.REQUIRES_APPROVAL,
        )
        .order_by(ProductionStage.created_at, ProductionStage.id)
    ).scalars().all()

    result = {"customer_approvals": [], "internal_approvals": []}
    for stage in stages:
        key = "customer_approvals" if stage.requires_customer_approval else "internal_approvals"
        result[key].append(_stage_card(stage))
    return result


def get_active_stages_for_user(user_id: int) -> dict[str, list[dict]]:
    """In-progress stages of jobs assigned to the user, grouped by stage_name."""
    stages = db.session.execute(
        _stage_query()
        .where(
            ProductionJob.assigned_to == user_id,
            ProductionStage.stage_status == StageStatus.IN_PROGRESS,
        )
        .order_by(ProductionStage.started_at, ProductionStage.id)
    ).scalars().all()

    grouped: dict[str, list[dict]] = {}
    for stage in stages:
        grouped.setdefault(stage.stage_name, []).append(_stage_card(stage))
    return grouped


def get_overdue_stages(tenant_id: int | None, now: datetime | None = None,
                       grace_minutes: int | None = None) -> list[ProductionStage]:
    """In-progress stages whose started_at + estimated_duration is past.

    ``grace_minutes`` defaults to the OVERDUE_GRACE_MINUTES setting.
    Pass tenant_id=None to scan every tenant (scheduled scanner).
    """
    now = now or datetime.now(timezone.utc)
    if grace_minutes is None:
        grace_minutes = current_app.config.get("OVERDUE_GRACE_MINUTES", 0)
    cutoff = now - timedelta(minutes=grace_minutes)

    stmt = _stage_query().where(
        ProductionStage.stage_status == StageStatus.IN_PROGRESS,
        ProductionStage.started_at.is_not(None),
        ProductionStage.estimated_duration.is_not(None),
    )
    if tenant_id is not None:
        stmt = stmt.where(ProductionJob.tenant_id == tenant_id)
    candidates = db.session.execute(
        stmt.order_by(ProductionStage.started_at, ProductionStage.id)
    ).scalars().all()
    return [s for s in candidates if s.is_overdue(cutoff)]


def get_stage_stats(tenant_id: int, branch_id: int | None = None,
                    date_from: datetime | None = None, date_to: datetime | None = None) -> dict:
    """Stage counts by status and name, average actual duration, overdue count."""
    filters = [ProductionJob.tenant_id == tenant_id]
    if branch_id is not None:
        filters.append(ProductionJob.branch_id == branch_id)
    if date_from is not None:
        filters.append(ProductionStage.created_at >= date_from)
    if date_to is not None:
        filters.append(ProductionStage.created_at <= date_to)

    def _grouped(column):
        rows = db.session.execute(
            select(column, func.count(ProductionStage.id))
            .join(ProductionJob, ProductionJob.id == ProductionStage.job_id)
            .where(*filters)
            .group_by(column)
        ).all()
        return {str(key): count for key, count in rows}

    by_status = _grouped(ProductionStage.stage_status)
    by_name = _grouped(ProductionStage.stage_name)

    customer_approvals = db.session.execute(
        select(func.count(ProductionStage.id))
        .join(ProductionJob, ProductionJob.id == ProductionStage.job_id)
        .where(
            *filters,
            ProductionStage.requires_customer_approval.is_(True),
            ProductionStage.stage_status == StageStatus.REQUIRES_APPROVAL,
        )
    ).scalar()

    avg_duration = db.session.execute(
        select(func.avg(ProductionStage.actual_duration))
        .join(ProductionJob, ProductionJob.id == ProductionStage.job_id)
        .where(*filters, ProductionStage.actual_duration > 0)
    ).scalar()

    in_progress = db.session.execute(
        _stage_query().where(
            *filters,
            ProductionStage.stage_status == StageStatus.IN_PROGRESS,
        )
    ).scalars().all()

    stats = {status.value: by_status.get(status.value, 0) for status in StageStatus}
    stats.update({
        "total": sum(by_status.values()),
        "customer_approvals": customer_approvals or 0,
        "average_duration": round(float(avg_duration), 1) if avg_duration is not None else None,
        "overdue": sum(1 for s in in_progress if s.is_overdue()),
        "by_stage_name": by_name,
    })
    return stats


def get_kanban_board(branch_id: int) -> dict[str, list[dict]]:
    """Branch stages by status column, most recently updated first."""
    stages = db.session.execute(
        _stage_query()
        .where(
            ProductionJob.branch_id == branch_id,
            ProductionStage.stage_status.in_(list(KANBAN_COLUMNS)),
        )
        .order_by(ProductionStage.updated_at.desc(), ProductionStage.id.desc())
    ).scalars().all()

    board = {column.value: [] for column in KANBAN_COLUMNS}
    now = datetime.now(timezone.utc)
    for stage in stages:
        board[str(stage.stage_status)].append(_stage_card(stage, now))
    return board
