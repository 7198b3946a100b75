"""
Print Production Platform
Notification Service.

Central service for creating and marking read in-app
notifications. The production engine calls the notify_* helpers after a
stage transition has committed.
"""

from flask import current_app

from app.models import db
from app.models.notification import Notification
from app.models.production import StageStatus

_STAGE_SEVERITY = {
    StageStatus.COMPLETED: "success",
    StageStatus.REJECTED: "error",
    StageStatus.ON_HOLD: "warning",
    StageStatus.REQUIRES_APPROVAL: "warning",
}


def _notifications_enabled():
    return current_app.config.get("PRODUCTION_NOTIFICATIONS_ENABLED", True)


def _job_recipient(job):
    return str(job.assigned_to) if job.assigned_to else "all"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", tenant_id=None, entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            tenant_id=tenant_id,
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    # ── Production Helpers ────────────────────────────────────────────────

    @staticmethod
    def notify_stage_changed(stage):
        """Tell the job's assignee (or everyone) that a stage changed status."""
        if not _notifications_enabled():
            return None
        job = stage.job
        status_label = str(stage.stage_status).replace("_", " ")
        category = "approval" if stage.stage_status == StageStatus.REQUIRES_APPROVAL else "production"
        message = f"Stage {stage.stage_order} of job {job.job_number} is now {status_label}."
        if stage.stage_status == StageStatus.REJECTED and stage.rejection_reason:
            message += f" Reason: {stage.rejection_reason}"
        return NotificationService.create(
            title=f"Job {job.job_number}: {stage.stage_name_label} {status_label}",
            message=message,
            category=category,
            severity=_STAGE_SEVERITY.get(stage.stage_status, "info"),
            recipient=_job_recipient(job),
            tenant_id=job.tenant_id,
            entity_type="production_stage",
            entity_id=stage.id,
        )

    @staticmethod
    def notify_job_completed(job):
        """Create notification when every stage of a job has completed."""
        if not _notifications_enabled():
            return None
        return NotificationService.create(
            title=f"Job {job.job_number} completed",
            message=f"All {job.total_stages} production stages are complete.",
            category="job",
            severity="success",
            recipient=_job_recipient(job),
            tenant_id=job.tenant_id,
            entity_type="production_job",
            entity_id=job.id,
        )

    @staticmethod
    def notify_stage_overdue(stage):
        """Create an overdue warning unless an unread one already exists."""
        if not _notifications_enabled():
            return None
        existing = Notification.query.filter_by(
            entity_type="production_stage",
            entity_id=stage.id,
            category="overdue",
            is_read=False,
        ).first()
        if existing:
            return None
        job = stage.job
        return NotificationService.create(
            title=f"Job {job.job_number}: {stage.stage_name_label} is overdue",
            message=f"Started {stage.started_at:%Y-%m-%d %H:%M}, "
                    f"estimated {stage.estimated_duration} minutes.",
            category="overdue",
            severity="warning",
            recipient=_job_recipient(job),
            tenant_id=job.tenant_id,
            entity_type="production_stage",
            entity_id=stage.id,
        )
