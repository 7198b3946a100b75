"""
Integration tests for the production stage sequencer and completion tracker.

Stage lifecycle walkthroughs:
  - business_cards job with no stages → start_production → 7 template stages, stage 1 ready
  - stage 1 start → complete → stage 2 (customer-gated) requires_approval, job at 14 %
  - stage 2 rejected → no advancement, stage 3 stays pending
  - all 7 stages complete → job completed once, 100 %
  - hold an in-progress stage → resume returns to in_progress

Plus: advance properties, invalid transitions without mutation, tenant scoping,
best-effort side-effect failures (advance, tracker, notification) and the
reconcile sweep.
"""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update

from app.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.notification import Notification
from app.models.production import JobStatus, ProductionJob, ProductionStage, StageStatus
from app.services import production_stage_service as svc
from app.services.completion_tracker import check_job_completion, reconcile_job_completion
from app.services.side_effects import get_failure_counts

TENANT = 1
OTHER_TENANT = 2
ACTOR = 100


# ── Helpers ──────────────────────────────────────────────────────────────────


def _stages(job_id):
    db.session.expire_all()
    return (
        ProductionStage.query.filter_by(job_id=job_id)
        .order_by(ProductionStage.stage_order)
        .all()
    )


def _job(job_id):
    db.session.expire_all()
    return db.session.get(ProductionJob, job_id)


def _finish(stage_id):
    """Drive one stage to completed the way an operator would."""
    stage = db.session.get(ProductionStage, stage_id)
    if stage.stage_status == StageStatus.REQUIRES_APPROVAL:
        svc.approve_stage(stage_id, ACTOR, "customer ok")
    else:
        svc.start_stage(stage_id, ACTOR)
        svc.complete_stage(stage_id, ACTOR)


# ═════════════════════════════════════════════════════════════════════════════
# Stage lifecycle walkthroughs
# ═════════════════════════════════════════════════════════════════════════════


class TestProvisioning:
    def test_template_stages_created_and_first_ready(self, provisioned_job):
        stages = _stages(provisioned_job.id)

        assert [s.stage_order for s in stages] == [1, 2, 3, 4, 5, 6, 7]
        assert [s.stage_name for s in stages] == [
            "design_review", "customer_approval", "pre_press_setup",
            "printing_process", "cutting", "quality_inspection", "packaging",
        ]
        assert [s.estimated_duration for s in stages] == [30, 60, 45, 120, 60, 30, 30]
        assert [s.requires_customer_approval for s in stages] == [
            False, True, False, False, False, False, False,
        ]
        assert stages[0].stage_status == StageStatus.READY
        assert all(s.stage_status == StageStatus.PENDING for s in stages[1:])

    def test_job_moves_to_design_review(self, provisioned_job):
        job = _job(provisioned_job.id)
        assert job.production_status == JobStatus.DESIGN_REVIEW
        assert job.started_at is not None
        assert job.completion_percentage == 0
        assert "Production started" in job.production_notes

    def test_first_stage_note(self, provisioned_job):
        first = _stages(provisioned_job.id)[0]
        assert first.notes.endswith("Stage ready for production - design_review")
        assert first.updated_by == ACTOR


class TestStartAndComplete:
    def test_start_then_complete_advances_gated_successor(self, provisioned_job):
        s1, s2 = _stages(provisioned_job.id)[:2]

        assert svc.start_stage(s1.id, ACTOR, "on it") is True
        s1 = _stages(provisioned_job.id)[0]
        assert s1.stage_status == StageStatus.IN_PROGRESS
        assert s1.started_at is not None

        # Pretend the work took 42 minutes
        s1.started_at = datetime.now(timezone.utc) - timedelta(minutes=42, seconds=5)
        db.session.commit()

        assert svc.complete_stage(s1.id, ACTOR, "done", {"proof": "v2"}) is True

        s1, s2, s3 = _stages(provisioned_job.id)[:3]
        assert s1.stage_status == StageStatus.COMPLETED
        assert s1.completed_at is not None
        assert s1.actual_duration == 42
        assert s1.stage_data == {"proof": "v2"}
        assert s2.stage_status == StageStatus.REQUIRES_APPROVAL
        assert s2.updated_by == ACTOR
        assert "Auto-advanced from design_review" in s2.notes
        assert s3.stage_status == StageStatus.PENDING
        assert _job(provisioned_job.id).completion_percentage == 14


class TestRejection:
    def test_reject_does_not_advance(self, provisioned_job):
        s1_id = _stages(provisioned_job.id)[0].id
        _finish(s1_id)
        s2 = _stages(provisioned_job.id)[1]
        assert s2.stage_status == StageStatus.REQUIRES_APPROVAL

        assert svc.reject_stage(s2.id, ACTOR, "design rejected") is True

        s2, s3 = _stages(provisioned_job.id)[1:3]
        assert s2.stage_status == StageStatus.REJECTED
        assert s2.rejection_reason == "design rejected"
        assert s2.approval_status == "rejected"
        assert s2.notes.endswith("Rejected - design rejected")
        assert s3.stage_status == StageStatus.PENDING
        assert _job(provisioned_job.id).production_status == JobStatus.DESIGN_REVIEW


class TestFullPipeline:
    def test_all_stages_complete_job_once(self, provisioned_job):
        for stage in _stages(provisioned_job.id):
            _finish(stage.id)

        job = _job(provisioned_job.id)
        assert job.production_status == JobStatus.COMPLETED
        assert job.completion_percentage == 100
        assert job.actual_completion is not None
        first_completion = job.actual_completion

        # Tracker re-run and reconcile sweep leave the job as it is
        assert check_job_completion(job) is False
        db.session.commit()
        reconcile_job_completion(TENANT)

        job = _job(provisioned_job.id)
        assert job.actual_completion == first_completion
        assert job.completion_percentage == 100
        assert Notification.query.filter_by(
            category="job", entity_type="production_job", entity_id=job.id,
        ).count() == 1

    def test_percentage_tracks_each_completion(self, provisioned_job):
        seen = []
        for stage in _stages(provisioned_job.id):
            _finish(stage.id)
            seen.append(_job(provisioned_job.id).completion_percentage)
        assert seen == [14, 29, 43, 57, 71, 86, 100]

    def test_rerunning_tracker_on_partial_job_changes_nothing(self, provisioned_job):
        _finish(_stages(provisioned_job.id)[0].id)

        for _ in range(2):
            assert check_job_completion(_job(provisioned_job.id)) is False
            db.session.commit()

            job = _job(provisioned_job.id)
            assert job.production_status == JobStatus.DESIGN_REVIEW
            assert job.completion_percentage == 14
            assert job.actual_completion is None


class TestHoldAndResume:
    def test_hold_and_resume_started_stage(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        svc.start_stage(s1.id, ACTOR)

        assert svc.hold_stage(s1.id, ACTOR, "paper jam") is True
        s1 = _stages(provisioned_job.id)[0]
        assert s1.stage_status == StageStatus.ON_HOLD
        assert s1.notes.endswith("Put on hold - paper jam")

        assert svc.resume_stage(s1.id, ACTOR) is True
        s1 = _stages(provisioned_job.id)[0]
        assert s1.stage_status == StageStatus.IN_PROGRESS
        assert s1.notes.endswith(": Resumed")

    def test_resume_never_started_stage_returns_to_pending(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        svc.hold_stage(s1.id, ACTOR, "waiting on files")
        svc.resume_stage(s1.id, ACTOR, "files arrived")

        s1 = _stages(provisioned_job.id)[0]
        assert s1.stage_status == StageStatus.PENDING
        assert s1.started_at is None
        assert svc.start_stage(s1.id, ACTOR) is True


# ═════════════════════════════════════════════════════════════════════════════
# Advance properties
# ═════════════════════════════════════════════════════════════════════════════


class TestAdvance:
    def test_ungated_successor_becomes_ready(self, provisioned_job):
        _finish(_stages(provisioned_job.id)[0].id)
        svc.approve_stage(_stages(provisioned_job.id)[1].id, ACTOR)

        s2, s3 = _stages(provisioned_job.id)[1:3]
        assert s2.stage_status == StageStatus.COMPLETED
        assert s2.approved_by == ACTOR
        assert s2.approval_status == "approved"
        assert s2.customer_approved_at is not None
        assert s2.actual_duration is None
        assert s3.stage_status == StageStatus.READY
        assert "Auto-advanced from customer_approval" in s3.notes

    def test_successor_already_acted_on_is_left_alone(self, provisioned_job):
        s1, s2 = _stages(provisioned_job.id)[:2]
        svc.hold_stage(s2.id, ACTOR, "customer on vacation")
        _finish(s1.id)

        s2 = _stages(provisioned_job.id)[1]
        assert s2.stage_status == StageStatus.ON_HOLD
        assert "Auto-advanced" not in s2.notes

    def test_last_stage_has_no_successor(self, make_job, make_stage):
        job = make_job(job_type="custom")
        only = make_stage(job, 1, "packaging", status=StageStatus.READY)

        _finish(only.id)

        assert _stages(job.id)[0].stage_status == StageStatus.COMPLETED
        assert _job(job.id).production_status == JobStatus.COMPLETED
        assert get_failure_counts() == {}

    def test_advance_is_conditional_on_pending(self, make_job, make_stage):
        job = make_job()
        done = make_stage(job, 1, "cutting", status=StageStatus.COMPLETED)
        nxt = make_stage(job, 2, "packaging")

        first = svc.advance_from(done, ACTOR)
        second = svc.advance_from(done, ACTOR)
        db.session.commit()

        assert first is not None and first.id == nxt.id
        assert second is None
        assert _stages(job.id)[1].notes.count("Auto-advanced") == 1

    def test_concurrent_change_wins_over_advance(self, make_job, make_stage):
        job = make_job()
        done = make_stage(job, 1, "cutting", status=StageStatus.COMPLETED)
        nxt = make_stage(job, 2, "packaging")

        # Another writer moves the successor between our read and our update
        db.session.execute(
            update(ProductionStage)
            .where(ProductionStage.id == nxt.id)
            .values(stage_status=StageStatus.ON_HOLD)
            .execution_options(synchronize_session=False)
        )
        assert svc.advance_from(done, ACTOR) is None
        db.session.commit()
        assert _stages(job.id)[1].stage_status == StageStatus.ON_HOLD

    def test_navigation_helpers(self, provisioned_job):
        s1, s2, s3 = _stages(provisioned_job.id)[:3]
        assert svc.get_next_stage(s2).id == s3.id
        assert svc.get_previous_stage(s2).id == s1.id
        assert svc.get_previous_stage(s1) is None
        assert svc.get_next_stage(_stages(provisioned_job.id)[-1]) is None


# ═════════════════════════════════════════════════════════════════════════════
# Rejected transitions leave no trace
# ═════════════════════════════════════════════════════════════════════════════


class TestRejectedTransitions:
    def test_start_on_completed_stage(self, provisioned_job):
        s1_id = _stages(provisioned_job.id)[0].id
        _finish(s1_id)
        before = _stages(provisioned_job.id)[0].to_dict()

        with pytest.raises(InvalidStateError) as exc:
            svc.start_stage(s1_id, ACTOR + 1)
        db.session.rollback()

        assert exc.value.current_status == "completed"
        assert exc.value.action == "start"
        assert _stages(provisioned_job.id)[0].to_dict() == before

    def test_complete_on_pending_stage(self, provisioned_job):
        s3 = _stages(provisioned_job.id)[2]
        with pytest.raises(InvalidStateError):
            svc.complete_stage(s3.id, ACTOR)
        db.session.rollback()
        assert _stages(provisioned_job.id)[2].stage_status == StageStatus.PENDING

    def test_approve_requires_requires_approval(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        with pytest.raises(InvalidStateError):
            svc.approve_stage(s1.id, ACTOR)

    def test_resume_requires_on_hold(self, provisioned_job):
        with pytest.raises(InvalidStateError):
            svc.resume_stage(_stages(provisioned_job.id)[0].id, ACTOR)

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reject_requires_reason(self, provisioned_job, reason):
        s1 = _stages(provisioned_job.id)[0]
        svc.start_stage(s1.id, ACTOR)
        before = _stages(provisioned_job.id)[0].to_dict()

        with pytest.raises(ValidationError):
            svc.reject_stage(s1.id, ACTOR, reason)

        assert _stages(provisioned_job.id)[0].to_dict() == before

    def test_hold_requires_reason(self, provisioned_job):
        with pytest.raises(ValidationError):
            svc.hold_stage(_stages(provisioned_job.id)[0].id, ACTOR, "")
        assert _stages(provisioned_job.id)[0].stage_status == StageStatus.READY

    def test_stage_data_must_be_mapping(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        svc.start_stage(s1.id, ACTOR)
        with pytest.raises(ValidationError):
            svc.complete_stage(s1.id, ACTOR, stage_data=["not", "a", "dict"])
        assert _stages(provisioned_job.id)[0].stage_status == StageStatus.IN_PROGRESS

    def test_unknown_stage(self):
        with pytest.raises(NotFoundError):
            svc.start_stage(999_999, ACTOR)

    def test_other_tenant_cannot_touch_stage(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        with pytest.raises(NotFoundError):
            svc.start_stage(s1.id, ACTOR, tenant_id=OTHER_TENANT)
        assert svc.start_stage(s1.id, ACTOR, tenant_id=TENANT) is True


# ═════════════════════════════════════════════════════════════════════════════
# Best-effort side effects
# ═════════════════════════════════════════════════════════════════════════════


class TestSideEffectFailures:
    def test_advance_failure_keeps_completion(self, provisioned_job, caplog):
        caplog.set_level(logging.WARNING, logger="app.services.side_effects")
        s1 = _stages(provisioned_job.id)[0]
        svc.start_stage(s1.id, ACTOR)

        with patch("app.services.production_stage_service.advance_from",
                   side_effect=RuntimeError("successor lookup failed")):
            assert svc.complete_stage(s1.id, ACTOR) is True

        s1, s2 = _stages(provisioned_job.id)[:2]
        assert s1.stage_status == StageStatus.COMPLETED
        assert s2.stage_status == StageStatus.PENDING
        assert _job(provisioned_job.id).completion_percentage == 14
        assert get_failure_counts() == {"stage_advance_failed": 1}
        records = [r for r in caplog.records if getattr(r, "event_type", None) == "stage_advance_failed"]
        assert len(records) == 1
        assert "successor lookup failed" in records[0].getMessage()

    def test_tracker_failure_keeps_transition_and_reconcile_repairs(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        svc.start_stage(s1.id, ACTOR)

        with patch("app.services.completion_tracker.recompute_job",
                   side_effect=RuntimeError("aggregate update failed")):
            assert svc.complete_stage(s1.id, ACTOR) is True

        s1, s2 = _stages(provisioned_job.id)[:2]
        assert s1.stage_status == StageStatus.COMPLETED
        assert s2.stage_status == StageStatus.REQUIRES_APPROVAL
        assert _job(provisioned_job.id).completion_percentage == 0
        assert get_failure_counts() == {"completion_tracking_failed": 1}

        result = reconcile_job_completion(TENANT)

        assert result["jobs_checked"] == 1
        assert result["failures"] == 0
        assert _job(provisioned_job.id).completion_percentage == 14

    def test_notification_failure_is_swallowed(self, provisioned_job):
        s1 = _stages(provisioned_job.id)[0]
        with patch("app.services.notification.NotificationService.notify_stage_changed",
                   side_effect=RuntimeError("mail relay down")):
            assert svc.start_stage(s1.id, ACTOR) is True

        assert _stages(provisioned_job.id)[0].stage_status == StageStatus.IN_PROGRESS
        assert get_failure_counts() == {"notification_failed": 1}


# ═════════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionNotifications:
    def test_completion_notifies_stage_and_gated_successor(self, provisioned_job):
        _finish(_stages(provisioned_job.id)[0].id)

        approval = Notification.query.filter_by(category="approval").all()
        assert len(approval) == 1
        assert approval[0].entity_id == _stages(provisioned_job.id)[1].id
        assert approval[0].tenant_id == TENANT
        assert Notification.query.filter_by(severity="success", category="production").count() == 1

    def test_notifications_can_be_disabled(self, app, provisioned_job, monkeypatch):
        monkeypatch.setitem(app.config, "PRODUCTION_NOTIFICATIONS_ENABLED", False)
        _finish(_stages(provisioned_job.id)[0].id)
        assert Notification.query.count() == 0
        assert get_failure_counts() == {}

    def test_assignee_is_recipient(self, make_job, make_stage):
        job = make_job(assigned_to=55)
        stage = make_stage(job, 1, "cutting", status=StageStatus.READY)
        svc.start_stage(stage.id, ACTOR)
        notif = Notification.query.one()
        assert notif.recipient == "55"
        assert "Cutting" in notif.title
