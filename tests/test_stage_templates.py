"""Tests for the job-type stage templates and default stage provisioning."""

import pytest

from app.models import db
from app.models.production import ProductionJob, ProductionStage, StageStatus
from app.services.stage_templates import (
    STAGE_TEMPLATES,
    create_default_stages,
    estimated_total_minutes,
    get_stage_template,
)


def _job(job_type="flyers"):
    job = ProductionJob(tenant_id=1, branch_id=10, job_number=f"TPL-{job_type}", job_type=job_type)
    db.session.add(job)
    db.session.flush()
    return job


class TestTemplates:
    @pytest.mark.parametrize("job_type", sorted(STAGE_TEMPLATES))
    def test_every_template_has_seven_stages_gated_at_two(self, job_type):
        template = get_stage_template(job_type)
        assert len(template) == 7
        gated = [i for i, s in enumerate(template, start=1) if s["requires_customer_approval"]]
        assert gated == [2]
        assert template[0]["stage_name"] == "design_review"
        assert template[-1]["stage_name"] == "packaging"

    def test_brochures_fold_instead_of_cut(self):
        names = [s["stage_name"] for s in get_stage_template("brochures")]
        assert "folding" in names
        assert "cutting" not in names

    def test_banners_prepare_material(self):
        assert get_stage_template("banners")[2]["stage_name"] == "material_preparation"

    @pytest.mark.parametrize("job_type", ["stickers", "custom", None, "unknown"])
    def test_unknown_types_fall_back_to_default(self, job_type):
        assert get_stage_template(job_type) == STAGE_TEMPLATES["default"]

    def test_template_is_a_copy(self):
        template = get_stage_template("flyers")
        template[0]["estimated_duration"] = 999
        assert STAGE_TEMPLATES["flyers"][0]["estimated_duration"] == 30

    def test_estimated_total_minutes(self):
        assert estimated_total_minutes("business_cards") == 30 + 60 + 45 + 120 + 60 + 30 + 30
        assert estimated_total_minutes("posters") == 420


class TestCreateDefaultStages:
    def test_creates_pending_stages_in_order(self):
        job = _job("posters")
        created = create_default_stages(job, actor_id=7)

        assert [s.stage_order for s in created] == list(range(1, 8))
        assert all(s.stage_status == StageStatus.PENDING for s in created)
        assert all(s.updated_by == 7 for s in created)
        assert created[1].requires_customer_approval is True
        assert created[3].estimated_duration == 120
        assert job.total_stages == 7

    def test_idempotent(self):
        job = _job()
        create_default_stages(job)
        assert create_default_stages(job) == []
        assert ProductionStage.query.filter_by(job_id=job.id).count() == 7

    def test_existing_custom_stages_are_kept(self):
        job = _job()
        db.session.add(ProductionStage(job_id=job.id, stage_order=1, stage_name="final_review"))
        db.session.flush()

        assert create_default_stages(job) == []
        stages = ProductionStage.query.filter_by(job_id=job.id).all()
        assert [s.stage_name for s in stages] == ["final_review"]
