"""Standardised API error responses.

Every error body has the same shape::

    {"error": "<human message>", "code": "<E.* constant>", "details": {...}}

``details`` is omitted when empty.

Usage
-----
    from salesflow.utils.errors import api_error, exception_response, E

    return api_error(E.VALIDATION_REQUIRED, "project_id is required")
    return exception_response(exc)      # any salesflow.core.exceptions type
"""

from __future__ import annotations

from flask import jsonify

from salesflow.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    DuplicateWorkflowError,
    GatingViolationError,
    NotFoundError,
    StepAlreadyCompletedError,
    TerminalStateError,
    UnauthorizedError,
    ValidationError,
)


class E:
    """Machine-readable error codes.

    ``ERR_`` codes are generic request/resource errors; ``WORKFLOW_`` codes
    name the specific state-machine conflict.
    """

    # 400: the request itself is malformed
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 422: well-formed but breaks a business rule
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    NOT_FOUND = "ERR_NOT_FOUND"
    FORBIDDEN = "ERR_FORBIDDEN"

    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    GATING = "WORKFLOW_GATING_VIOLATION"
    TERMINAL = "WORKFLOW_TERMINAL_STATE"
    STEP_COMPLETED = "WORKFLOW_STEP_ALREADY_COMPLETED"
    CONCURRENT = "WORKFLOW_CONCURRENT_MODIFICATION"

    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.GATING: 409,
    E.TERMINAL: 409,
    E.STEP_COMPLETED: 409,
    E.CONCURRENT: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}

# Most specific first: the workflow conflicts subclass ConflictError.
_EXCEPTION_CODES: tuple[tuple[type, str], ...] = (
    (GatingViolationError, E.GATING),
    (TerminalStateError, E.TERMINAL),
    (StepAlreadyCompletedError, E.STEP_COMPLETED),
    (ConcurrentModificationError, E.CONCURRENT),
    (DuplicateWorkflowError, E.CONFLICT_DUPLICATE),
    (ConflictError, E.CONFLICT_STATE),
    (NotFoundError, E.NOT_FOUND),
    (ValidationError, E.VALIDATION_RULE),
    (UnauthorizedError, E.FORBIDDEN),
)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return ``(jsonify(body), http_status)`` for a Flask view.

    ``status`` overrides the default status of ``code`` (400 if unmapped).
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), http_status


def code_for(exc: Exception) -> str:
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return E.INTERNAL


def exception_response(exc: Exception):
    """Render a platform exception with its code, message and details."""
    return api_error(code_for(exc), str(exc), details=getattr(exc, "details", None))
