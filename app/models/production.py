"""
Print Production Platform
Production tracking domain models.

Models:
    - ProductionJob:    one unit of print work (job number unique per branch)
    - ProductionStage:  one ordered step of a job's production pipeline

Architecture:
    ProductionJob ──1:N──▶ ProductionStage   (stage_order 1..N, gapless)

Lifecycle states:
    ProductionJob:    pending → assigned → design_review → in_progress → completed
                      (on_hold / cancelled set by the surrounding application)
    ProductionStage:  pending → ready → in_progress → completed
                      ready/pending → requires_approval (approval-gated successors)
                      in_progress/requires_approval → rejected
                      pending/ready/in_progress → on_hold → in_progress | pending
"""

import enum
from datetime import datetime, timedelta, timezone

from app.models import db
from app.models.base import TenantModel


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def append_log_line(existing, label, text=None, at=None):
    """Append a timestamped ``<ts>: <label> - <text>`` line to a notes log."""
    at = at or _utcnow()
    line = f"{at:%Y-%m-%d %H:%M:%S}: {label}"
    if text:
        line += f" - {text}"
    return f"{existing}\n{line}" if existing else line


# ── Constants ────────────────────────────────────────────────────────────────


class StageStatus(str, enum.Enum):
    """Closed set of ProductionStage states."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REQUIRES_APPROVAL = "requires_approval"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    REJECTED = "rejected"

    def __str__(self):
        return self.value


class JobStatus(str, enum.Enum):
    """Closed set of ProductionJob production states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    DESIGN_REVIEW = "design_review"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"

    def __str__(self):
        return self.value


TERMINAL_STAGE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.REJECTED})

CLOSED_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

JOB_TYPES = {
    "business_cards", "brochures", "flyers", "posters", "banners",
    "stickers", "letterheads", "envelopes", "books", "magazines",
    "packaging", "labels", "custom",
}

JOB_PRIORITIES = {"low", "normal", "high", "urgent"}

# Lower rank sorts first in the production queue
PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}

STAGE_NAME_LABELS = {
    "design_review": "Design Review",
    "customer_approval": "Customer Approval",
    "pre_press_setup": "Pre-Press Setup",
    "material_preparation": "Material Preparation",
    "printing_setup": "Printing Setup",
    "printing_process": "Printing Process",
    "color_matching": "Color Matching",
    "first_proof": "First Proof",
    "customer_proof_approval": "Customer Proof Approval",
    "production_run": "Production Run",
    "cutting": "Cutting",
    "folding": "Folding",
    "binding": "Binding",
    "laminating": "Laminating",
    "coating": "Coating",
    "die_cutting": "Die Cutting",
    "embossing": "Embossing",
    "foil_stamping": "Foil Stamping",
    "finishing": "Finishing",
    "quality_inspection": "Quality Inspection",
    "packaging": "Packaging",
    "final_review": "Final Review",
    "ready_for_delivery": "Ready for Delivery",
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

STAGE_ACTIONS = {
    "start":    {StageStatus.PENDING, StageStatus.READY},
    "complete": {StageStatus.IN_PROGRESS, StageStatus.REQUIRES_APPROVAL},
    "approve":  {StageStatus.REQUIRES_APPROVAL},
    "reject":   {StageStatus.IN_PROGRESS, StageStatus.REQUIRES_APPROVAL},
    "hold":     {StageStatus.PENDING, StageStatus.READY, StageStatus.IN_PROGRESS},
    "resume":   {StageStatus.ON_HOLD},
}


def validate_stage_action(status, action):
    """Return True if *action* may be applied to a stage in *status*."""
    try:
        status = StageStatus(status)
    except ValueError:
        return False
    return status in STAGE_ACTIONS.get(action, set())


def format_minutes(minutes):
    """Render a minute count as ``2h 5m`` / ``45m``."""
    if not minutes:
        return None
    hours, mins = divmod(int(minutes), 60)
    return f"{hours}h {mins}m" if hours else f"{mins}m"


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProductionJob
# ═════════════════════════════════════════════════════════════════════════════


class ProductionJob(TenantModel):
    """
    One unit of print work.

    production_status, completion_percentage and actual_completion are
    written by job provisioning and the completion tracker only.
    """

    __tablename__ = "production_jobs"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "job_number", name="uq_production_jobs_branch_number"),
        db.Index("ix_production_jobs_branch_status", "branch_id", "production_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, nullable=False, index=True)
    job_number = db.Column(db.String(50), nullable=False)
    job_type = db.Column(db.String(30), nullable=False, default="custom",
                         comment="Stage template key: business_cards, brochures, ...")
    assigned_to = db.Column(db.Integer, nullable=True, index=True, comment="User id")
    priority = db.Column(db.String(10), nullable=False, default="normal")

    production_status = db.Column(
        db.Enum(JobStatus, name="job_production_status", native_enum=False, length=20,
                values_callable=_enum_values, validate_strings=True),
        nullable=False, default=JobStatus.PENDING,
    )
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    estimated_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    production_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stages = db.relationship(
        "ProductionStage",
        back_populates="job",
        order_by="ProductionStage.stage_order",
        cascade="all, delete-orphan",
    )

    @property
    def total_stages(self):
        return len(self.stages)

    @property
    def completed_stages(self):
        return sum(1 for s in self.stages if s.stage_status == StageStatus.COMPLETED)

    @property
    def is_closed(self):
        return self.production_status in CLOSED_JOB_STATUSES

    def append_note(self, label, text=None, at=None):
        self.production_notes = append_log_line(self.production_notes, label, text, at)

    def to_dict(self, include_stages=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "branch_id": self.branch_id,
            "job_number": self.job_number,
            "job_type": self.job_type,
            "assigned_to": self.assigned_to,
            "priority": self.priority,
            "production_status": str(self.production_status),
            "completion_percentage": self.completion_percentage,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            "actual_completion": self.actual_completion.isoformat() if self.actual_completion else None,
            "production_notes": self.production_notes,
            "total_stages": self.total_stages,
            "completed_stages": self.completed_stages,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d

    def __repr__(self):
        return f"<ProductionJob {self.job_number} [{self.production_status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProductionStage
# ═════════════════════════════════════════════════════════════════════════════


class ProductionStage(db.Model):
    """
    One ordered step within a job's production pipeline.

    Created in bulk from the job-type template; never deleted. Status fields
    are written only by the stage sequencer.
    """

    __tablename__ = "production_stages"
    __table_args__ = (
        db.UniqueConstraint("job_id", "stage_order", name="uq_production_stages_job_order"),
        db.Index("ix_production_stages_job_status", "job_id", "stage_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("production_jobs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_order = db.Column(db.Integer, nullable=False, comment="1-based, gapless within a job")
    stage_name = db.Column(db.String(50), nullable=False)
    stage_status = db.Column(
        db.Enum(StageStatus, name="production_stage_status", native_enum=False, length=30,
                values_callable=_enum_values, validate_strings=True),
        nullable=False, default=StageStatus.PENDING,
    )
    requires_customer_approval = db.Column(db.Boolean, nullable=False, default=False)

    estimated_duration = db.Column(db.Integer, nullable=True, comment="minutes")
    actual_duration = db.Column(db.Integer, nullable=True, comment="minutes")
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True, comment="Append-only operator log")
    stage_data = db.Column(db.JSON, nullable=True)
    approval_status = db.Column(db.String(20), nullable=True, comment="approved / rejected")
    rejection_reason = db.Column(db.Text, nullable=True)
    customer_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    updated_by = db.Column(db.Integer, nullable=True, comment="Acting user id")
    approved_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    job = db.relationship("ProductionJob", back_populates="stages")

    @property
    def stage_name_label(self):
        return STAGE_NAME_LABELS.get(self.stage_name, self.stage_name.replace("_", " ").capitalize())

    def append_note(self, label, text=None, at=None):
        self.notes = append_log_line(self.notes, label, text, at)

    def merge_stage_data(self, data):
        """Merge operator-supplied key/values over the existing payload."""
        if data:
            self.stage_data = {**(self.stage_data or {}), **data}

    def expected_completion(self):
        if not self.started_at or not self.estimated_duration:
            return None
        return as_utc(self.started_at) + timedelta(minutes=self.estimated_duration)

    def is_overdue(self, now=None):
        """True when an in-progress stage has run past its estimated duration."""
        if self.stage_status != StageStatus.IN_PROGRESS:
            return False
        expected = self.expected_completion()
        if expected is None:
            return False
        return expected < (now or _utcnow())

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "stage_order": self.stage_order,
            "stage_name": self.stage_name,
            "stage_name_label": self.stage_name_label,
            "stage_status": str(self.stage_status),
            "requires_customer_approval": self.requires_customer_approval,
            "estimated_duration": self.estimated_duration,
            "estimated_duration_formatted": format_minutes(self.estimated_duration),
            "actual_duration": self.actual_duration,
            "actual_duration_formatted": format_minutes(self.actual_duration),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes,
            "stage_data": self.stage_data,
            "approval_status": self.approval_status,
            "rejection_reason": self.rejection_reason,
            "customer_approved_at": (
                self.customer_approved_at.isoformat() if self.customer_approved_at else None
            ),
            "updated_by": self.updated_by,
            "approved_by": self.approved_by,
            "is_overdue": self.is_overdue(),
        }

    def __repr__(self):
        return f"<ProductionStage {self.job_id}#{self.stage_order} {self.stage_name} [{self.stage_status}]>"
