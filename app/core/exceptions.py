"""
Platform-wide exception hierarchy.

Services raise these types; callers (controllers, CLI commands, scheduled
jobs) map them to their own error surface once instead of importing
service-specific exception classes.

Usage:
    from app.core.exceptions import InvalidStateError, NotFoundError, ValidationError

    raise NotFoundError(resource="ProductionStage", resource_id=42)
    raise ValidationError("Rejection reason is required", details={"reason": "required"})
    raise InvalidStateError("ProductionStage", 42, current_status="pending", action="complete")

Non-fatal side-effect failures (auto-advance, completion bookkeeping) are
modelled as ``UserWarning`` subclasses. They are logged and counted, never
raised out of a stage transition.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a caller cannot probe for the existence of another tenant's jobs.

    Args:
        resource: Human-readable model/entity name (e.g. "ProductionJob").
        resource_id: The PK that was looked up. Included in logs.
        tenant_id: Optional; the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when required input is missing or malformed.

    Nothing is mutated when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an action is not permitted from the entity's current status.

    Nothing is mutated when this is raised.

    Args:
        resource: Model name ("ProductionStage", "ProductionJob").
        resource_id: PK of the entity.
        current_status: Status the entity was in when the action was attempted.
        action: The rejected action (start, complete, approve, ...).
        allowed: Statuses from which the action would have been accepted.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | None,
        *,
        current_status: str,
        action: str,
        allowed: list[str] | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_status = current_status
        self.action = action
        self.allowed = sorted(allowed or [])
        msg = f"Cannot {action} {resource} id={resource_id} in status '{current_status}'"
        if self.allowed:
            msg += f" (allowed: {', '.join(self.allowed)})"
        super().__init__(msg)


class SideEffectWarning(UserWarning):
    """Base for best-effort side effects that failed after a valid transition.

    Attributes:
        event_type: Stable key used in structured logs and failure counters.
    """

    event_type = "side_effect_failed"

    def __init__(self, message: str, *, job_id: int | None = None,
                 stage_id: int | None = None, cause: BaseException | None = None) -> None:
        self.job_id = job_id
        self.stage_id = stage_id
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class AdvancementWarning(SideEffectWarning):
    """Successor-stage lookup or update failed during auto-advance."""

    event_type = "stage_advance_failed"


class CompletionTrackingWarning(SideEffectWarning):
    """Job percentage / completion recompute failed."""

    event_type = "completion_tracking_failed"


class NotificationWarning(SideEffectWarning):
    """Notification dispatch failed after the transition committed."""

    event_type = "notification_failed"
