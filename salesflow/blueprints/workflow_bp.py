"""
Sales Project Workflow Blueprint.

HTTP surface of the workflow engine. The acting user is taken from the
``X-User`` and ``X-User-Role`` request headers.

Endpoints:
    POST   /api/v1/workflows                              Body: { "project_id": <int> }
    GET    /api/v1/workflows?created_by=<user>
    GET    /api/v1/workflows/<wid>
    GET    /api/v1/workflows/<wid>/steps
    GET    /api/v1/workflows/<wid>/missing-items
    POST   /api/v1/workflows/<wid>/deactivate
    GET    /api/v1/projects/<pid>/workflow
    POST   /api/v1/workflows/<wid>/steps/<n>/<action>     Body: action payload
    POST   /api/v1/missing-items/<item_id>/approve
    GET    /api/v1/external-actions/<module>
    GET    /api/v1/delayed-steps
    GET    /api/v1/users/<username>/steps?pending=true
    GET    /api/v1/roles/<role>/unassigned-steps

Step actions:
    1  complete {document} | request | submit {document}
    2  skip | request | submit {document}
    3  skip | request | submit {document}
    4  skip | elements-added {count} | missing-items {item_name, quantity_needed, item_description}
    5  accept | reject {reason} | notify-completion
    6  confirm-finished {document} | complete {success, explanation} | hold {reason} | release
    7  skip | request | complete {notes}
    8  complete
    any step: assign {assignee} | start | delay {expected_date, details} | alarm

Layer contract:
    - Blueprint: parse + validate input, build the Actor, call the engine,
      return JSON.
    - NO db.session calls here; all writes are owned by the engine.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from salesflow.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from salesflow.models.workflow import ExternalModule, Role
from salesflow.services.documents import STEP_DOCUMENT_KINDS
from salesflow.services.workflow_engine import Actor
from salesflow.utils.errors import E, api_error, exception_response
from salesflow.utils.helpers import parse_date, parse_positive_int

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


class BadRequest(Exception):
    """Malformed request input; answered with HTTP 400."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


# ── Error handlers ─────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(BadRequest)
def _handle_bad_request(error: BadRequest):
    return api_error(error.code, str(error))


@workflow_bp.errorhandler(NotFoundError)
@workflow_bp.errorhandler(ValidationError)
@workflow_bp.errorhandler(ConflictError)
@workflow_bp.errorhandler(UnauthorizedError)
def _handle_domain_error(error):
    if isinstance(error, ConflictError):
        logger.info("Workflow conflict: %s", error, extra={"action": request.endpoint})
    return exception_response(error)


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ────────────────────────────────────────────────────────────────────


def _engine():
    return current_app.extensions["workflow_engine"]


def _actor() -> Actor:
    username = (request.headers.get("X-User") or "").strip()
    role_name = (request.headers.get("X-User-Role") or "").strip().upper()
    if not username or not role_name:
        raise BadRequest(E.VALIDATION_REQUIRED, "X-User and X-User-Role headers are required")
    try:
        role = Role(role_name)
    except ValueError:
        raise BadRequest(E.VALIDATION_INVALID, f"Unknown role '{role_name}'") from None
    return Actor(username=username, role=role)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data


def _document(step_number: int, body: dict):
    payload = body.get("document")
    if payload is None:
        raise BadRequest(E.VALIDATION_REQUIRED, "document is required")
    return _engine().document_validator.validate(STEP_DOCUMENT_KINDS[step_number], payload)


def _int_field(body: dict, field: str) -> int:
    if field not in body:
        raise BadRequest(E.VALIDATION_REQUIRED, f"{field} is required")
    try:
        return parse_positive_int(body[field], field)
    except ValueError as exc:
        raise BadRequest(E.VALIDATION_INVALID, str(exc)) from exc


def _date_field(body: dict, field: str):
    try:
        return parse_date(body.get(field))
    except ValueError as exc:
        raise BadRequest(E.VALIDATION_INVALID, f"{field}: {exc}") from exc


def _bool_field(body: dict, field: str, default: bool) -> bool:
    value = body.get(field, default)
    if not isinstance(value, bool):
        raise BadRequest(E.VALIDATION_INVALID, f"{field} must be a JSON boolean")
    return value


# ── Step action table ──────────────────────────────────────────────────────────
# (step, action) -> handler(engine, workflow_id, actor, body)

STEP_ACTIONS = {
    (1, "complete"): lambda e, wid, a, b: e.complete_site_survey(wid, a, _document(1, b)),
    (1, "request"): lambda e, wid, a, b: e.request_site_survey(wid, a),
    (1, "submit"): lambda e, wid, a, b: e.submit_site_survey(wid, a, _document(1, b)),
    (2, "skip"): lambda e, wid, a, b: e.mark_selection_design_not_needed(wid, a),
    (2, "request"): lambda e, wid, a, b: e.request_selection_design(wid, a),
    (2, "submit"): lambda e, wid, a, b: e.submit_selection_design(wid, a, _document(2, b)),
    (3, "skip"): lambda e, wid, a, b: e.mark_bank_guarantee_not_needed(wid, a),
    (3, "request"): lambda e, wid, a, b: e.request_bank_guarantee(wid, a),
    (3, "submit"): lambda e, wid, a, b: e.submit_bank_guarantee(wid, a, _document(3, b)),
    (4, "skip"): lambda e, wid, a, b: e.mark_no_missing_items(wid, a),
    (4, "elements-added"): lambda e, wid, a, b: e.complete_with_elements_added(wid, a, _int_field(b, "count")),
    (4, "missing-items"): lambda e, wid, a, b: e.submit_missing_item(
        wid, a, b.get("item_name"), _int_field(b, "quantity_needed"), b.get("item_description"),
    ),
    (5, "accept"): lambda e, wid, a, b: e.mark_tender_accepted(wid, a),
    (5, "reject"): lambda e, wid, a, b: e.mark_tender_rejected(wid, a, b.get("reason")),
    (5, "notify-completion"): lambda e, wid, a, b: e.notify_project_completion(wid, a),
    (6, "confirm-finished"): lambda e, wid, a, b: e.confirm_project_finished(wid, a, _document(6, b)),
    (6, "complete"): lambda e, wid, a, b: e.mark_execution_completed(
        wid, a, success=_bool_field(b, "success", default=True), explanation=b.get("explanation"),
    ),
    (6, "hold"): lambda e, wid, a, b: e.hold_execution(wid, a, b.get("reason")),
    (6, "release"): lambda e, wid, a, b: e.release_execution(wid, a),
    (7, "skip"): lambda e, wid, a, b: e.mark_after_sales_not_needed(wid, a),
    (7, "request"): lambda e, wid, a, b: e.request_after_sales_check(wid, a),
    (7, "complete"): lambda e, wid, a, b: e.complete_after_sales_check(wid, a, b.get("notes")),
    (8, "complete"): lambda e, wid, a, b: e.complete_workflow(wid, a),
}

ANY_STEP_ACTIONS = {
    "assign": lambda e, wid, n, a, b: e.assign_step(wid, n, b.get("assignee"), a),
    "start": lambda e, wid, n, a, b: e.start_step(wid, n, a),
    "delay": lambda e, wid, n, a, b: e.report_delay(
        wid, a, _date_field(b, "expected_date"), b.get("details"), step_number=n,
    ),
    "alarm": lambda e, wid, n, a, b: e.trigger_alarm(wid, a, step_number=n),
}


# ── Routes ─────────────────────────────────────────────────────────────────────


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    actor = _actor()
    body = _body()
    project_id = _int_field(body, "project_id")
    result = _engine().create(project_id, actor)
    return jsonify(result.to_dict()), 201


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    created_by = request.args.get("created_by") or None
    items = _engine().list_active_workflows(created_by)
    return jsonify({"items": [w.to_dict(include_steps=False) for w in items], "total": len(items)}), 200


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    return jsonify(_engine().get_workflow(workflow_id).to_dict()), 200


@workflow_bp.route("/workflows/<int:workflow_id>/steps", methods=["GET"])
def get_steps(workflow_id):
    return jsonify({"items": [s.to_dict() for s in _engine().get_steps(workflow_id)]}), 200


@workflow_bp.route("/workflows/<int:workflow_id>/missing-items", methods=["GET"])
def get_missing_items(workflow_id):
    items = _engine().get_missing_items(workflow_id)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@workflow_bp.route("/workflows/<int:workflow_id>/deactivate", methods=["POST"])
def deactivate_workflow(workflow_id):
    result = _engine().deactivate(workflow_id, _actor())
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/projects/<int:project_id>/workflow", methods=["GET"])
def get_project_workflow(project_id):
    return jsonify(_engine().get_workflow_for_project(project_id).to_dict()), 200


@workflow_bp.route("/workflows/<int:workflow_id>/steps/<int:step_number>/<action>", methods=["POST"])
def step_action(workflow_id, step_number, action):
    actor = _actor()
    body = _body()
    engine = _engine()

    handler = STEP_ACTIONS.get((step_number, action))
    if handler is not None:
        result = handler(engine, workflow_id, actor, body)
    elif action in ANY_STEP_ACTIONS:
        result = ANY_STEP_ACTIONS[action](engine, workflow_id, step_number, actor, body)
    else:
        return api_error(E.NOT_FOUND, f"Unknown action '{action}' for step {step_number}")

    return jsonify(result.to_dict()), 200


@workflow_bp.route("/missing-items/<int:item_id>/approve", methods=["POST"])
def approve_missing_item(item_id):
    result = _engine().approve_missing_item(item_id, _actor())
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/external-actions/<module>", methods=["GET"])
def pending_external_actions(module):
    try:
        external_module = ExternalModule(module.upper())
    except ValueError:
        return api_error(E.VALIDATION_INVALID, f"Unknown module '{module}'")
    steps = _engine().pending_external_actions(external_module)
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)}), 200


@workflow_bp.route("/delayed-steps", methods=["GET"])
def delayed_steps():
    steps = _engine().delayed_steps()
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)}), 200


@workflow_bp.route("/users/<username>/steps", methods=["GET"])
def user_steps(username):
    pending_only = request.args.get("pending", "").lower() in ("1", "true", "yes")
    engine = _engine()
    steps = engine.steps_assigned_to(username, pending_only=pending_only)
    return jsonify({
        "items": [s.to_dict() for s in steps],
        "total": len(steps),
        "pending_count": engine.count_pending_steps_for(username),
    }), 200


@workflow_bp.route("/roles/<role>/unassigned-steps", methods=["GET"])
def unassigned_steps(role):
    try:
        target_role = Role(role.upper())
    except ValueError:
        return api_error(E.VALIDATION_INVALID, f"Unknown role '{role}'")
    steps = _engine().unassigned_steps_for_role(target_role)
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)}), 200
