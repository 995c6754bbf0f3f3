"""
Tracker-wide exception hierarchy.

Services raise these; blueprints register handlers against them once (see
``tracker.utils.errors.register_error_handlers``) and get consistent HTTP
status codes everywhere.

Two families:
  - Generic resource errors (``NotFoundError``, ``ValidationError``,
    ``ConflictError``) shared by every service.
  - Delivery-rule errors (``TrackerError`` subclasses), one per named
    business rule. Each carries a machine-readable ``error_code`` and a
    message the UI can show verbatim.

None of these are retried automatically. ``StaleVersionError`` is the one
kind a caller is expected to retry after re-reading current state.

Usage:
    from tracker.core.exceptions import NotFoundError, TypeConstraintError

    raise NotFoundError(resource="WorkItem", resource_id=42)
    raise TypeConstraintError("A deliverable must sit directly under a milestone.")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for both genuinely missing records and cross-tenant lookups, so a
    caller cannot probe for the existence of another tenant's rows.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkItem").
        resource_id: The PK that was looked up.
        tenant_id: Optional scope that was enforced. For debug logging only.
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
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique resource.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Delivery-rule errors ─────────────────────────────────────────────────────


class TrackerError(Exception):
    """Base for caller-facing delivery-rule violations."""

    error_code = "ERR_TRACKER"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class TypeConstraintError(TrackerError):
    """Milestone → Deliverable → Task nesting rule violated."""

    error_code = "ERR_TYPE_CONSTRAINT"


class NoValidParentError(TrackerError):
    """Demotion has no preceding sibling to receive the item."""

    error_code = "ERR_NO_VALID_PARENT"


class PromotionBlockedError(TrackerError):
    """Promotion or demotion would orphan or silently re-type descendants."""

    error_code = "ERR_PROMOTION_BLOCKED"


class AlreadySignedError(TrackerError):
    """The party slot has already been signed."""

    error_code = "ERR_ALREADY_SIGNED"
    http_status = 409


class NotEligibleError(TrackerError):
    """The acting user's role may not perform this action for this party."""

    error_code = "ERR_NOT_ELIGIBLE"
    http_status = 403


class CertificateNotReadyError(TrackerError):
    """Certificate generated or signed while some deliverable is not Delivered."""

    error_code = "ERR_CERTIFICATE_NOT_READY"


class StaleVersionError(TrackerError):
    """Optimistic concurrency conflict: re-read the record and retry."""

    error_code = "ERR_STALE_VERSION"
    http_status = 409


class InvalidTransitionError(TrackerError):
    """Lifecycle transition not allowed from the current status."""

    error_code = "ERR_INVALID_TRANSITION"


class VariationPendingError(TrackerError):
    """Another variation touching the same milestone is already in flight."""

    error_code = "ERR_VARIATION_PENDING"
    http_status = 409
