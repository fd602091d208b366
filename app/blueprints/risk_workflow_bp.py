"""
Risk Workflow Blueprint.

Endpoints:
    POST   /api/v1/risks                          intake, creates risk_identified
    GET    /api/v1/risks                          list  (status, phase, limit, offset)
    GET    /api/v1/risks/<id>                     workflow state view
    GET    /api/v1/risks/<id>/history             history rows, newest first
    PATCH  /api/v1/risks/<id>                     role assignment
           Body: { "reporter_id"?, "grc_sme_id"?, "risk_assessor_id"?, "risk_owner_id"? }

    POST   /api/v1/risks/<id>/validate            { approved, reason?, risk_assessor_id?, grc_sme_id? }
    POST   /api/v1/risks/<id>/start-assessment    { risk_assessor_id }
    POST   /api/v1/risks/<id>/submit-assessment   { ...assessment fields }
    POST   /api/v1/risks/<id>/review-assessment   { approved, notes?, declined_reason? }
    POST   /api/v1/risks/<id>/complete-revision   { ...partial assessment fields }
    POST   /api/v1/risks/<id>/submit-treatment    { decision, justification, ...decision fields }
    POST   /api/v1/risks/<id>/assign-approver     { executive_approver_id }
    POST   /api/v1/risks/<id>/executive-approval  { approved, notes?, denied_reason? }
    POST   /api/v1/risks/<id>/update-mitigation   { status, progress?, notes?, ... }

Every mutating call takes the acting ``user_id`` and an optional ``version``
(or ``If-Match`` header). Success returns 200 with the workflow state view.

Layer contract:
    - Blueprint: parse input, pick the workflow action, render the result.
    - NO db.session calls here - writes are owned by the engine and store.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query
from app.core.exceptions import ValidationError, WorkflowError
from app.services import risk_service
from app.services.risk_workflow import ROLE_ACTIONS, RiskWorkflowEngine, WorkflowAction
from app.utils.errors import E, error_response
from app.utils.helpers import parse_int

logger = logging.getLogger(__name__)

risk_workflow_bp = Blueprint("risk_workflow", __name__, url_prefix="/api/v1")

_ROLE_FIELDS = {field: action for action, field in ROLE_ACTIONS.items()}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _expected_version(data: dict):
    """``version`` from the body, else the If-Match header. None if absent."""
    raw = data.get("version")
    if raw is None:
        header = request.headers.get("If-Match")
        if header:
            raw = header.strip().removeprefix("W/").strip('"')
    if raw is None or raw == "":
        return None
    try:
        return parse_int(raw, minimum=1)
    except ValueError as exc:
        raise ValidationError(f"Invalid version: {exc}", {"version": str(exc)}, code=E.VALIDATION_INVALID)


def _approved_flag(data: dict) -> bool:
    value = data.get("approved")
    if isinstance(value, bool):
        return value
    if value is None:
        raise ValidationError("Missing required field(s): approved", {"approved": "required"})
    raise ValidationError("Invalid approved: must be a boolean",
                          {"approved": "must be a boolean"}, code=E.VALIDATION_INVALID)


def _state_response(risk):
    resp = jsonify(risk_service.get_workflow_state(risk))
    resp.headers["ETag"] = f'"{risk.version}"'
    return resp, 200


def _run(risk_id: int, commands, data: dict):
    try:
        expected = _expected_version(data)
    except WorkflowError as err:
        return error_response(err)
    risk, err = RiskWorkflowEngine().execute_many(
        risk_id, commands, user_id=data.get("user_id"), expected_version=expected,
    )
    if err:
        return error_response(err)
    return _state_response(risk)


def _transition(risk_id: int, action: WorkflowAction):
    data = _body()
    return _run(risk_id, [(action, data)], data)


# ═══════════════════════════════════════════════════════════════════════════
#  INTAKE & QUERIES
# ═══════════════════════════════════════════════════════════════════════════

@risk_workflow_bp.route("/risks", methods=["POST"])
def create_risk():
    """Report a new risk. It starts in ``risk_identified``."""
    data = _body()
    try:
        risk = risk_service.create_risk(data, user_id=data.get("user_id"))
    except WorkflowError as err:
        return error_response(err)
    resp, _ = _state_response(risk)
    return resp, 201


@risk_workflow_bp.route("/risks", methods=["GET"])
def list_risks():
    try:
        q = risk_service.list_risks(
            status=request.args.get("status"),
            phase=request.args.get("phase"),
        )
    except WorkflowError as err:
        return error_response(err)
    items, total = paginate_query(q, default_limit=50, max_limit=500)
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@risk_workflow_bp.route("/risks/<int:risk_id>", methods=["GET"])
def get_risk(risk_id):
    try:
        risk = risk_service.get_risk(risk_id)
    except WorkflowError as err:
        return error_response(err)
    return _state_response(risk)


@risk_workflow_bp.route("/risks/<int:risk_id>/history", methods=["GET"])
def get_risk_history(risk_id):
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    try:
        items, total = risk_service.get_history(risk_id, limit=limit, offset=offset)
    except WorkflowError as err:
        return error_response(err)
    return jsonify({"items": [h.to_dict() for h in items], "total": total})


@risk_workflow_bp.route("/risks/<int:risk_id>", methods=["PATCH"])
def assign_roles(risk_id):
    """Role assignment. Each supplied field becomes one assignment command."""
    data = _body()
    commands = [
        (action, {"user_id": data[field]})
        for field, action in _ROLE_FIELDS.items() if field in data
    ]
    if not commands:
        return error_response(ValidationError(
            "No role field supplied",
            {field: "optional" for field in _ROLE_FIELDS},
        ))
    return _run(risk_id, commands, data)


# ═══════════════════════════════════════════════════════════════════════════
#  TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════

@risk_workflow_bp.route("/risks/<int:risk_id>/validate", methods=["POST"])
def validate_risk(risk_id):
    return _transition(risk_id, WorkflowAction.VALIDATE)


@risk_workflow_bp.route("/risks/<int:risk_id>/start-assessment", methods=["POST"])
def start_assessment(risk_id):
    return _transition(risk_id, WorkflowAction.START_ASSESSMENT)


@risk_workflow_bp.route("/risks/<int:risk_id>/submit-assessment", methods=["POST"])
def submit_assessment(risk_id):
    return _transition(risk_id, WorkflowAction.SUBMIT_ASSESSMENT)


@risk_workflow_bp.route("/risks/<int:risk_id>/review-assessment", methods=["POST"])
def review_assessment(risk_id):
    data = _body()
    try:
        approved = _approved_flag(data)
    except WorkflowError as err:
        return error_response(err)
    action = WorkflowAction.APPROVE_ASSESSMENT if approved else WorkflowAction.REQUEST_REVISION
    return _run(risk_id, [(action, data)], data)


@risk_workflow_bp.route("/risks/<int:risk_id>/complete-revision", methods=["POST"])
def complete_revision(risk_id):
    return _transition(risk_id, WorkflowAction.COMPLETE_REVISION)


@risk_workflow_bp.route("/risks/<int:risk_id>/submit-treatment", methods=["POST"])
def submit_treatment(risk_id):
    return _transition(risk_id, WorkflowAction.SUBMIT_TREATMENT)


@risk_workflow_bp.route("/risks/<int:risk_id>/assign-approver", methods=["POST"])
def assign_approver(risk_id):
    return _transition(risk_id, WorkflowAction.ASSIGN_APPROVER)


@risk_workflow_bp.route("/risks/<int:risk_id>/executive-approval", methods=["POST"])
def executive_approval(risk_id):
    data = _body()
    try:
        approved = _approved_flag(data)
    except WorkflowError as err:
        return error_response(err)
    action = WorkflowAction.EXECUTIVE_APPROVE if approved else WorkflowAction.EXECUTIVE_DENY
    return _run(risk_id, [(action, data)], data)


@risk_workflow_bp.route("/risks/<int:risk_id>/update-mitigation", methods=["POST"])
def update_mitigation(risk_id):
    return _transition(risk_id, WorkflowAction.UPDATE_MITIGATION)
