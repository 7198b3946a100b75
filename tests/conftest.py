"""
Shared pytest fixtures for the Print Production Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - make_job / make_stage: ORM factories for jobs and stages
    - provisioned_job: business_cards job already in production (7 stages)
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.production import JobStatus, ProductionJob, ProductionStage, StageStatus
from app.services.side_effects import reset_failure_counts

TENANT_ID = 1
OTHER_TENANT_ID = 2
BRANCH_ID = 10
ACTOR_ID = 100


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        reset_failure_counts()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Factories ────────────────────────────────────────────────────────────

_job_seq = {"n": 0}


def _make_job(tenant_id=TENANT_ID, branch_id=BRANCH_ID, job_type="business_cards",
              status=JobStatus.PENDING, commit=True, **kwargs):
    _job_seq["n"] += 1
    job_number = kwargs.pop("job_number", f"TST-20260101-{_job_seq['n']:03d}")
    job = ProductionJob(
        tenant_id=tenant_id,
        branch_id=branch_id,
        job_number=job_number,
        job_type=job_type,
        production_status=status,
        **kwargs,
    )
    _db.session.add(job)
    if commit:
        _db.session.commit()
    else:
        _db.session.flush()
    return job


def _make_stage(job, order, name="stage", status=StageStatus.PENDING, approval=False,
                commit=True, **kwargs):
    stage = ProductionStage(
        job_id=job.id,
        stage_order=order,
        stage_name=name,
        stage_status=status,
        requires_customer_approval=approval,
        **kwargs,
    )
    _db.session.add(stage)
    if commit:
        _db.session.commit()
    else:
        _db.session.flush()
    return stage


@pytest.fixture()
def make_job():
    return _make_job


@pytest.fixture()
def make_stage():
    return _make_stage


@pytest.fixture()
def provisioned_job():
    """business_cards job after start_production: stage 1 ready, 2..7 pending."""
    from app.services.print_job_service import start_production

    job = _make_job(job_type="business_cards")
    start_production(job.id, ACTOR_ID, tenant_id=TENANT_ID)
    return _db.session.get(ProductionJob, job.id)

