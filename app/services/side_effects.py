"""
Best-effort side effects of a stage transition.

Auto-advance and completion tracking run inside a SAVEPOINT so a failure
rolls back only their own writes; notifications run after the commit.
Failures are logged at WARNING with an ``event_type`` extra field and
counted in an in-memory tally readable via get_failure_counts().
"""

import logging
from collections import Counter

from app.core.exceptions import NotificationWarning
from app.models import db

logger = logging.getLogger(__name__)

# ── In-memory failure tally ─────────────────────────────────────────────────
side_effect_failures: Counter = Counter()


def report_failure(warning, *, tenant_id=None, actor_id=None):
    """Log a SideEffectWarning and count it under its event_type."""
    side_effect_failures[warning.event_type] += 1
    logger.warning(
        "%s", warning,
        extra={
            "event_type": warning.event_type,
            "tenant_id": tenant_id,
            "job_id": warning.job_id,
            "stage_id": warning.stage_id,
            "actor_id": actor_id,
        },
    )


def run_in_savepoint(warning_cls, message, fn, *args, job_id=None, stage_id=None,
                     tenant_id=None, actor_id=None, **kwargs):
    """Run *fn* in a SAVEPOINT; on failure roll it back, report, return None."""
    try:
        with db.session.begin_nested():
            return fn(*args, **kwargs)
    except Exception as exc:
        report_failure(
            warning_cls(message, job_id=job_id, stage_id=stage_id, cause=exc),
            tenant_id=tenant_id, actor_id=actor_id,
        )
        return None


def dispatch_notification(fn, *args, job_id=None, stage_id=None, tenant_id=None):
    """Call a NotificationService helper after commit, swallowing failures."""
    try:
        return fn(*args)
    except Exception as exc:
        db.session.rollback()
        report_failure(
            NotificationWarning("Notification dispatch failed", job_id=job_id,
                                stage_id=stage_id, cause=exc),
            tenant_id=tenant_id,
        )
        return None


def get_failure_counts() -> dict:
    return dict(side_effect_failures)


def reset_failure_counts():
    """Clear the failure tally (for testing)."""
    side_effect_failures.clear()
