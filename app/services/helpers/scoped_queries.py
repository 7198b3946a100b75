"""
Scoped query helper.

Every get-by-id that takes a tenant or branch scope goes through this
helper instead of db.session.get(Model, pk), so a caller holding another
tenant's id gets a NotFoundError rather than the row.

Usage:
    # Scope by tenant_id (TenantModel subclasses)
    job = get_scoped(ProductionJob, job_id, tenant_id=tenant_id)

    # Scope by job_id (stages of a known job)
    stage = get_scoped(ProductionStage, stage_id, job_id=job_id)

    # Lock the row for the rest of the transaction (SELECT ... FOR UPDATE)
    job = get_scoped(ProductionJob, job_id, tenant_id=tenant_id, for_update=True)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, a ValueError is raised at
    call time so the bug surfaces during development and testing.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)

_SCOPE_KWARGS = ("tenant_id", "branch_id", "job_id")


def get_scoped(
    model,
    pk: int,
    *,
    tenant_id: int | None = None,
    branch_id: int | None = None,
    job_id: int | None = None,
    for_update: bool = False,
):
    """Fetch a single entity by PK with a mandatory scope filter.

    At least one scope parameter MUST be provided and MUST correspond to a
    column that exists on the model. A missing record and a record outside
    the scope both raise NotFoundError.

    Args:
        model: SQLAlchemy model class with an `id` PK column.
        pk: Primary key value to look up.
        tenant_id: Scope by tenant_id column.
        branch_id: Scope by branch_id column.
        job_id: Scope by job_id column.
        for_update: Lock the row until the surrounding transaction ends.

    Returns:
        The model instance if found within the given scope.

    Raises:
        ValueError: If no scope parameter is provided, or none of the
                    provided scope fields exists on the model.
        NotFoundError: If the entity does not exist or is out of scope.
    """
    provided_scopes = {
        "tenant_id": tenant_id,
        "branch_id": branch_id,
        "job_id": job_id,
    }
    provided_scopes = {k: v for k, v in provided_scopes.items() if v is not None}

    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            f"({', '.join(_SCOPE_KWARGS)})."
        )

    applicable_scopes = {
        field: value
        for field, value in provided_scopes.items()
        if hasattr(model, field)
    }

    missing_fields = set(provided_scopes) - set(applicable_scopes)
    if missing_fields:
        logger.warning(
            "get_scoped(%s, %s): scope field(s) %s not found on model; "
            "those filters were NOT applied.",
            model.__name__,
            pk,
            sorted(missing_fields),
        )

    if not applicable_scopes:
        raise ValueError(
            f"{model.__name__} id={pk}: none of the scope fields "
            f"{sorted(provided_scopes)} exist on {model.__name__}."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in applicable_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)
    if for_update:
        stmt = stmt.with_for_update()

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            applicable_scopes,
        )
        raise NotFoundError(resource=model.__name__, resource_id=pk,
                            tenant_id=applicable_scopes.get("tenant_id"))

    return result
