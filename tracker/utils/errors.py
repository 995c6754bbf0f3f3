"""Standardised API error responses.

Usage
-----
    from tracker.utils.errors import api_error, E, register_error_handlers

    return api_error(E.NOT_FOUND, "Milestone not found")
    return api_error(E.VALIDATION_REQUIRED, "user_id is required")

    bp = Blueprint(...)
    register_error_handlers(bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from tracker.core.exceptions import (
    ConflictError,
    NotFoundError,
    TrackerError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Domain rule errors carry their own code on the exception class
    (``TrackerError.error_code``); these cover the generic cases.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach the service-exception → HTTP mapping to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(TrackerError)
    def _handle_tracker_error(error: TrackerError):
        return api_error(
            error.error_code, error.message,
            status=error.http_status, details=error.details,
        )

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
