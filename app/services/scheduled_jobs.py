"""
Print Production Platform
Scheduled Jobs.

Concrete job implementations triggered through SchedulerService.run_job().

Jobs:
    - production_completion_reconcile: re-runs the completion tracker for
      every started, open job
    - overdue_stage_scanner: notifies on in-progress stages past their
      estimated duration
    - stale_notification_cleanup: deletes old read notifications
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models import db
from app.models.notification import Notification
from app.services.completion_tracker import reconcile_job_completion
from app.services.notification import NotificationService
from app.services.scheduler_service import register_job
from app.services.stage_queries import get_overdue_stages

logger = logging.getLogger(__name__)

STALE_NOTIFICATION_DAYS = 30


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Completion Reconcile
# ═══════════════════════════════════════════════════════════════════════════

@register_job("production_completion_reconcile")
def reconcile_production_completion(app) -> dict[str, Any]:
    """Recompute completion for started jobs whose bookkeeping may have failed."""
    return reconcile_job_completion()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Overdue Stage Scanner
# ═══════════════════════════════════════════════════════════════════════════

@register_job("overdue_stage_scanner")
def scan_overdue_stages(app) -> dict[str, Any]:
    """Create overdue notifications for in-progress stages past their estimate."""
    results = {"stages_overdue": 0, "notifications_created": 0, "errors": 0}

    for stage in get_overdue_stages(None):
        results["stages_overdue"] += 1
        try:
            if NotificationService.notify_stage_overdue(stage):
                results["notifications_created"] += 1
        except Exception as e:
            db.session.rollback()
            results["errors"] += 1
            logger.error("Overdue notification failed for stage %s: %s", stage.id, e,
                         extra={"stage_id": stage.id, "event_type": "notification_failed"})

    logger.info("Overdue stage scanner: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Stale Notification Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_notification_cleanup")
def cleanup_stale_notifications(app) -> dict[str, Any]:
    """Delete read notifications older than 30 days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=STALE_NOTIFICATION_DAYS)

    deleted = Notification.query.filter(
        Notification.is_read.is_(True),
        Notification.read_at < cutoff,
    ).delete(synchronize_session="fetch")

    db.session.commit()
    logger.info("Stale notification cleanup: deleted %d old read notifications", deleted)
    return {"deleted": deleted, "cutoff": cutoff.isoformat()}
