"""
TenantModel: abstract base class for tenant-scoped models.

All models that need tenant isolation inherit from TenantModel instead of
db.Model directly. This adds a tenant_id column with index (the owning
company; companies live in the surrounding business application, so there
is no FK here). Lookups scope on it through get_scoped(..., tenant_id=...).
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(db.Integer, nullable=False, index=True)
