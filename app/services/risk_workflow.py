"""
GRC Risk Workflow - state machine engine.

A Risk moves through three ordered phases:

    Intake      risk_identified → actual_risk | not_a_risk
    Assessment  risk_assessor_analysis → grc_approval ⇄ grc_revision → done
    Treatment   treatment_decision_review → (identify_executive_approver →
                executive_approval →) mitigation in progress | terminal

Each operator action is a key in ``_HANDLERS``; the handler checks its
precondition, then required fields, then user references, and only then
mutates the aggregate. ``RiskWorkflowEngine.execute`` wraps the handler in
load → version check → save and returns ``(risk, None)`` or
``(None, WorkflowError)``; rejections never escape as exceptions.

Usage:
    from app.services.risk_workflow import RiskWorkflowEngine, WorkflowAction

    engine = RiskWorkflowEngine()
    risk, err = engine.execute(
        risk_id, WorkflowAction.VALIDATE, {"approved": True}, user_id="grc-1",
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConcurrentModification,
    InvalidStateTransition,
    ValidationError,
    WorkflowError,
)
from app.models import db
from app.models.risk import (
    ExecutiveApprovalStatus,
    Impact,
    Likelihood,
    MitigationStatus,
    Risk,
    RiskAssessment,
    RiskAssessmentStatus,
    RiskHistory,
    RiskIntakeStatus,
    RiskLevel,
    RiskTreatment,
    RiskTreatmentStatus,
    RiskTreatmentUpdate,
    TreatmentDecision,
    calculate_risk_level,
    enum_values,
    requires_executive_approval,
)
from app.services.notification import NotificationService
from app.services.risk_store import RiskStore
from app.services.user_service import UserDirectory
from app.utils.errors import E
from app.utils.helpers import clean_str, parse_date_input, parse_int

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Phases & actions
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowPhase(str, Enum):
    INTAKE = "intake"
    ASSESSMENT = "assessment"
    AWAITING_TREATMENT = "awaiting_treatment"
    TREATMENT = "treatment"
    CLOSED = "closed"


class WorkflowAction(str, Enum):
    VALIDATE = "validate"
    START_ASSESSMENT = "start_assessment"
    SUBMIT_ASSESSMENT = "submit_assessment"
    APPROVE_ASSESSMENT = "approve_assessment"
    REQUEST_REVISION = "request_revision"
    COMPLETE_REVISION = "complete_revision"
    SUBMIT_TREATMENT = "submit_treatment"
    ASSIGN_APPROVER = "assign_approver"
    EXECUTIVE_APPROVE = "executive_approve"
    EXECUTIVE_DENY = "executive_deny"
    UPDATE_MITIGATION = "update_mitigation"
    ASSIGN_REPORTER = "assign_reporter"
    ASSIGN_GRC_SME = "assign_grc_sme"
    ASSIGN_ASSESSOR = "assign_assessor"
    ASSIGN_OWNER = "assign_owner"


ROLE_ACTIONS = {
    WorkflowAction.ASSIGN_REPORTER: "reporter_id",
    WorkflowAction.ASSIGN_GRC_SME: "grc_sme_id",
    WorkflowAction.ASSIGN_ASSESSOR: "risk_assessor_id",
    WorkflowAction.ASSIGN_OWNER: "risk_owner_id",
}

_EARLY_INTAKE = frozenset({
    RiskIntakeStatus.RISK_IDENTIFIED.value,
    RiskIntakeStatus.ACTUAL_RISK.value,
})

# Terminal treatment status reached by a non-mitigate decision once it no
# longer needs (or has received) executive sign-off.
_DECISION_TERMINAL = {
    TreatmentDecision.ACCEPT.value: RiskTreatmentStatus.RISK_ACCEPT.value,
    TreatmentDecision.TRANSFER.value: RiskTreatmentStatus.RISK_TRANSFER.value,
    TreatmentDecision.AVOID.value: RiskTreatmentStatus.RISK_AVOID.value,
}

_DECISION_FIELD = {
    TreatmentDecision.MITIGATE.value: "mitigation_description",
    TreatmentDecision.ACCEPT.value: "acceptance_rationale",
    TreatmentDecision.TRANSFER.value: "transfer_to",
    TreatmentDecision.AVOID.value: "avoid_strategy",
}

_LOW_LEVELS = frozenset({RiskLevel.LOW.value, RiskLevel.VERY_LOW.value})


def derive_phase(risk: Risk) -> WorkflowPhase:
    """Current phase of ``risk``; first matching rule wins."""
    if risk.status == RiskIntakeStatus.NOT_A_RISK.value:
        return WorkflowPhase.CLOSED
    if risk.status in _EARLY_INTAKE:
        return WorkflowPhase.INTAKE
    assessment = risk.assessment
    if risk.status == RiskIntakeStatus.RISK_ANALYSIS_IN_PROGRESS.value or (
        assessment is not None and assessment.status != RiskAssessmentStatus.DONE.value
    ):
        return WorkflowPhase.ASSESSMENT
    if risk.treatment is not None:
        return WorkflowPhase.TREATMENT
    if assessment is not None:
        return WorkflowPhase.AWAITING_TREATMENT
    return WorkflowPhase.INTAKE


_ASSESSMENT_STAGES = {
    RiskAssessmentStatus.RISK_ASSESSOR_ANALYSIS.value: "assessment",
    RiskAssessmentStatus.GRC_APPROVAL.value: "grc_review",
    RiskAssessmentStatus.GRC_REVISION.value: "grc_revision",
}

_TREATMENT_STAGES = {
    RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value: "treatment_decision",
    RiskTreatmentStatus.IDENTIFY_EXECUTIVE_APPROVER.value: "identify_executive",
    RiskTreatmentStatus.EXECUTIVE_APPROVAL.value: "awaiting_executive_approval",
    RiskTreatmentStatus.RISK_MITIGATION_IN_PROGRESS.value: "mitigation_in_progress",
    RiskTreatmentStatus.RISK_MITIGATION_COMPLETE.value: "completed",
    RiskTreatmentStatus.RISK_ACCEPT.value: "treatment_final",
    RiskTreatmentStatus.RISK_TRANSFER.value: "treatment_final",
    RiskTreatmentStatus.RISK_AVOID.value: "treatment_final",
    RiskTreatmentStatus.RISK_AUTO_ACCEPT.value: "treatment_final",
}


def derive_stage(risk: Risk) -> str:
    """Fine-grained display stage, one step below the phase."""
    if risk.status == RiskIntakeStatus.NOT_A_RISK.value:
        return "declined"
    if risk.status == RiskIntakeStatus.RISK_IDENTIFIED.value:
        return "intake_review"
    if risk.status == RiskIntakeStatus.ACTUAL_RISK.value and risk.assessment is None:
        return "awaiting_assessor"
    if risk.treatment is not None:
        return _TREATMENT_STAGES.get(risk.treatment.status, "unknown")
    if risk.assessment is not None:
        if risk.assessment.status == RiskAssessmentStatus.DONE.value:
            return "treatment_decision"
        return _ASSESSMENT_STAGES.get(risk.assessment.status, "unknown")
    return "unknown"


def get_available_actions(risk: Risk) -> list[str]:
    """
    Ordered action keys permitted from the current compound state.

    Intake actions first, then assessment actions (independent of the
    intake status), then treatment actions. Terminal states yield [].
    """
    actions: list[WorkflowAction] = []

    if risk.status == RiskIntakeStatus.RISK_IDENTIFIED.value:
        actions.append(WorkflowAction.VALIDATE)
    elif risk.status == RiskIntakeStatus.ACTUAL_RISK.value and risk.assessment is None:
        actions.append(WorkflowAction.START_ASSESSMENT)

    assessment = risk.assessment
    if assessment is not None:
        if assessment.status == RiskAssessmentStatus.RISK_ASSESSOR_ANALYSIS.value:
            actions.append(WorkflowAction.SUBMIT_ASSESSMENT)
        elif assessment.status == RiskAssessmentStatus.GRC_APPROVAL.value:
            actions.extend([WorkflowAction.APPROVE_ASSESSMENT, WorkflowAction.REQUEST_REVISION])
        elif assessment.status == RiskAssessmentStatus.GRC_REVISION.value:
            actions.append(WorkflowAction.COMPLETE_REVISION)

    treatment = risk.treatment
    if treatment is not None:
        if treatment.status == RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value:
            actions.append(WorkflowAction.SUBMIT_TREATMENT)
        elif treatment.status == RiskTreatmentStatus.IDENTIFY_EXECUTIVE_APPROVER.value:
            actions.append(WorkflowAction.ASSIGN_APPROVER)
        elif treatment.status == RiskTreatmentStatus.EXECUTIVE_APPROVAL.value:
            actions.extend([WorkflowAction.EXECUTIVE_APPROVE, WorkflowAction.EXECUTIVE_DENY])
        elif treatment.status == RiskTreatmentStatus.RISK_MITIGATION_IN_PROGRESS.value:
            actions.append(WorkflowAction.UPDATE_MITIGATION)

    return [a.value for a in actions]


def get_assignable_roles(risk: Risk) -> list[str]:
    """Role assignment commands currently allowed for ``risk``."""
    roles = [WorkflowAction.ASSIGN_REPORTER, WorkflowAction.ASSIGN_GRC_SME]
    if risk.status in _EARLY_INTAKE:
        roles.append(WorkflowAction.ASSIGN_ASSESSOR)
    if risk.assessment is not None:
        roles.append(WorkflowAction.ASSIGN_OWNER)
    return [r.value for r in roles]


def compound_state(risk: Risk) -> dict:
    return {
        "status": risk.status,
        "assessment_status": risk.assessment.status if risk.assessment else None,
        "treatment_status": risk.treatment.status if risk.treatment else None,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Payloads
# ═════════════════════════════════════════════════════════════════════════════

def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require(payload, names) -> None:
    missing = [n for n in names if _blank(getattr(payload, n))]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            {n: "required" for n in missing},
        )


def _check_choice(name: str, value, enum_cls) -> None:
    if value is not None and value not in enum_values(enum_cls):
        raise ValidationError(
            f"Invalid {name} '{value}'",
            {name: f"must be one of {enum_values(enum_cls)}"},
            code=E.VALIDATION_INVALID,
        )


def _invalid(name: str, message: str) -> ValidationError:
    return ValidationError(f"Invalid {name}: {message}", {name: message}, code=E.VALIDATION_INVALID)


def _as_bool(name: str, value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise _invalid(name, "must be a boolean")


def _as_date(name: str, value) -> date | None:
    try:
        return parse_date_input(value)
    except ValueError as exc:
        raise _invalid(name, str(exc)) from None


def _as_list(name: str, value) -> list | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise _invalid(name, "must be a list")


def _check_text(payload, names) -> None:
    for name in names:
        value = getattr(payload, name)
        if value is not None and not isinstance(value, str):
            raise _invalid(name, "must be a string")


def _from_dict(cls, data: dict | None):
    data = data or {}
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class ValidatePayload:
    approved: bool | None = None
    reason: str | None = None
    risk_assessor_id: str | None = None
    grc_sme_id: str | None = None

    def validate(self) -> None:
        _check_text(self, ["reason"])
        self.approved = _as_bool("approved", self.approved)
        _require(self, ["approved"])
        if not self.approved:
            _require(self, ["reason"])


@dataclass
class StartAssessmentPayload:
    risk_assessor_id: str | None = None

    def validate(self) -> None:
        _require(self, ["risk_assessor_id"])


ASSESSMENT_REQUIRED = (
    "threat_description",
    "likelihood_score",
    "likelihood_rationale",
    "impact_score",
    "impact_rationale",
    "recommended_owner_id",
)

ASSESSMENT_TEXT = (
    "threat_description",
    "vulnerabilities",
    "likelihood_rationale",
    "impact_rationale",
    "assessment_notes",
    "treatment_recommendation",
)


@dataclass
class AssessmentPayload:
    """Assessment fields for submit_assessment and complete_revision.

    ``supplied`` names the keys the caller actually sent, so a revision
    only patches those.
    """

    threat_description: str | None = None
    affected_assets: list | None = None
    existing_controls: list | None = None
    vulnerabilities: str | None = None
    likelihood_score: str | None = None
    likelihood_rationale: str | None = None
    impact_score: str | None = None
    impact_rationale: str | None = None
    recommended_owner_id: str | None = None
    assessment_notes: str | None = None
    treatment_recommendation: str | None = None
    supplied: frozenset | None = None

    def __post_init__(self):
        if self.supplied is None:
            self.supplied = frozenset(
                f.name for f in fields(self)
                if f.name != "supplied" and getattr(self, f.name) is not None
            )

    @classmethod
    def from_dict(cls, data: dict | None):
        data = data or {}
        payload = _from_dict(cls, {k: v for k, v in data.items() if k != "supplied"})
        payload.supplied = frozenset(
            f.name for f in fields(cls) if f.name != "supplied" and f.name in data
        )
        return payload

    def values(self) -> dict:
        return {name: getattr(self, name) for name in self.supplied}

    def validate(self) -> None:
        _check_text(self, ASSESSMENT_TEXT)
        _check_choice("likelihood_score", self.likelihood_score, Likelihood)
        _check_choice("impact_score", self.impact_score, Impact)
        self.affected_assets = _as_list("affected_assets", self.affected_assets)
        self.existing_controls = _as_list("existing_controls", self.existing_controls)


@dataclass
class ReviewPayload:
    notes: str | None = None

    def validate(self) -> None:
        _check_text(self, ["notes"])


@dataclass
class RevisionRequestPayload:
    declined_reason: str | None = None

    def validate(self) -> None:
        _check_text(self, ["declined_reason"])
        _require(self, ["declined_reason"])


@dataclass
class TreatmentPayload:
    decision: str | None = None
    justification: str | None = None
    mitigation_description: str | None = None
    mitigation_target_date: Any = None
    transfer_to: str | None = None
    transfer_cost: Any = None
    avoid_strategy: str | None = None
    acceptance_rationale: str | None = None
    acceptance_expires_at: Any = None

    def validate(self) -> None:
        _check_text(self, [
            "justification", "mitigation_description", "transfer_to", "avoid_strategy", "acceptance_rationale",
        ])
        _require(self, ["decision", "justification"])
        _check_choice("decision", self.decision, TreatmentDecision)
        _require(self, [_DECISION_FIELD[self.decision]])
        self.mitigation_target_date = _as_date("mitigation_target_date", self.mitigation_target_date)
        self.acceptance_expires_at = _as_date("acceptance_expires_at", self.acceptance_expires_at)
        if self.transfer_cost is not None:
            try:
                self.transfer_cost = float(self.transfer_cost)
            except (TypeError, ValueError):
                raise _invalid("transfer_cost", "must be a number") from None


@dataclass
class ApproverPayload:
    executive_approver_id: str | None = None

    def validate(self) -> None:
        _require(self, ["executive_approver_id"])


@dataclass
class ExecutiveApprovalPayload:
    notes: str | None = None

    def validate(self) -> None:
        _check_text(self, ["notes"])


@dataclass
class ExecutiveDenialPayload:
    denied_reason: str | None = None
    notes: str | None = None

    def validate(self) -> None:
        _check_text(self, ["denied_reason", "notes"])
        _require(self, ["denied_reason"])


_STATUS_REQUIRED = {
    MitigationStatus.DELAYED.value: ["new_target_date", "delay_reason"],
    MitigationStatus.CANCELLED.value: ["cancellation_reason"],
    MitigationStatus.DONE.value: ["residual_likelihood", "residual_impact"],
}


@dataclass
class MitigationUpdatePayload:
    status: str | None = None
    progress: Any = None
    notes: str | None = None
    new_target_date: Any = None
    delay_reason: str | None = None
    cancellation_reason: str | None = None
    completion_evidence: str | None = None
    effectiveness_notes: str | None = None
    residual_likelihood: str | None = None
    residual_impact: str | None = None

    def validate(self) -> None:
        _check_text(self, [
            "notes", "delay_reason", "cancellation_reason", "completion_evidence", "effectiveness_notes",
        ])
        _require(self, ["status"])
        _check_choice("status", self.status, MitigationStatus)
        _require(self, _STATUS_REQUIRED.get(self.status, []))
        if self.progress is not None:
            try:
                self.progress = parse_int(self.progress, minimum=0, maximum=100)
            except ValueError as exc:
                raise _invalid("progress", str(exc)) from None
        self.new_target_date = _as_date("new_target_date", self.new_target_date)
        _check_choice("residual_likelihood", self.residual_likelihood, Likelihood)
        _check_choice("residual_impact", self.residual_impact, Impact)


_UNSET = object()


@dataclass
class RoleAssignmentPayload:
    """``user_id`` of None clears the role; the key itself must be sent."""

    user_id: Any = _UNSET

    def validate(self) -> None:
        if self.user_id is _UNSET:
            raise ValidationError("Missing required field(s): user_id", {"user_id": "required"})
        self.user_id = clean_str(self.user_id)


# ═════════════════════════════════════════════════════════════════════════════
# Handlers
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationEvent:
    """Message for the notification sink, emitted after commit."""
    recipient: str
    title: str
    risk_id: int
    message: str = ""
    notification_type: str = "risk_status_changed"
    severity: str = "info"


@dataclass
class TransitionContext:
    users: UserDirectory
    actor: str
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransitionOutcome:
    history_action: str
    changes: dict = field(default_factory=dict)
    notes: str | None = None
    notifications: list[NotificationEvent] = field(default_factory=list)


def _parse(cls, payload):
    parsed = payload if isinstance(payload, cls) else (
        cls.from_dict(payload) if hasattr(cls, "from_dict") else _from_dict(cls, payload)
    )
    parsed.validate()
    return parsed


def _expect(action, current, allowed, reason=None):
    if current not in allowed:
        raise InvalidStateTransition(action.value, current, list(allowed), reason)


def _require_assessment(action: WorkflowAction, risk: Risk, status: RiskAssessmentStatus) -> RiskAssessment:
    assessment = risk.assessment
    if assessment is None:
        raise InvalidStateTransition(action.value, risk.status, [status.value], "risk has no assessment")
    _expect(action, assessment.status, [status.value])
    return assessment


def _require_treatment(action: WorkflowAction, risk: Risk, status: RiskTreatmentStatus) -> RiskTreatment:
    treatment = risk.treatment
    if treatment is None:
        raise InvalidStateTransition(action.value, risk.status, [status.value], "risk has no treatment")
    _expect(action, treatment.status, [status.value])
    return treatment


def _notify(recipient, title, risk, message="", severity="info", notification_type="risk_status_changed"):
    if not recipient:
        return []
    return [NotificationEvent(
        recipient=recipient,
        title=f"{risk.code}: {title}",
        risk_id=risk.id,
        message=message or risk.title,
        notification_type=notification_type,
        severity=severity,
    )]


def _change(old, new) -> dict:
    return {"old": old, "new": new}


def _validate(ctx: TransitionContext, risk: Risk, payload) -> TransitionOutcome:
    action = WorkflowAction.VALIDATE
    _expect(action, risk.status, [RiskIntakeStatus.RISK_IDENTIFIED.value])
    p = _parse(ValidatePayload, payload)

    if not p.approved:
        risk.status = RiskIntakeStatus.NOT_A_RISK.value
        risk.decline_reason = p.reason
        return TransitionOutcome(
            "risk_declined",
            notes=p.reason,
            notifications=_notify(risk.reporter_id, "Reported risk declined", risk, p.reason),
        )

    changes = {}
    for name in ("risk_assessor_id", "grc_sme_id"):
        value = clean_str(getattr(p, name))
        if value:
            ctx.users.require(name, value)
            changes[name] = _change(getattr(risk, name), value)
    for name, diff in changes.items():
        setattr(risk, name, diff["new"])
    risk.status = RiskIntakeStatus.ACTUAL_RISK.value
    risk.decline_reason = None
    return TransitionOutcome(
        "risk_validated",
        changes=changes,
        notifications=_notify(risk.risk_assessor_id, "Risk validated, assessment pending", risk),
    )


def _start_assessment(ctx, risk, payload):
    action = WorkflowAction.START_ASSESSMENT
    _expect(action, risk.status, [RiskIntakeStatus.ACTUAL_RISK.value])
    if risk.assessment is not None:
        raise InvalidStateTransition(action.value, risk.status, reason="assessment already exists")
    p = _parse(StartAssessmentPayload, payload)
    assessor_id = clean_str(p.risk_assessor_id)
    ctx.users.require("risk_assessor_id", assessor_id)

    risk.assessment = RiskAssessment(
        status=RiskAssessmentStatus.RISK_ASSESSOR_ANALYSIS.value,
        risk_assessor_id=assessor_id,
        grc_sme_id=risk.grc_sme_id,
        revision_count=0,
    )
    old_assessor = risk.risk_assessor_id
    risk.risk_assessor_id = assessor_id
    risk.status = RiskIntakeStatus.RISK_ANALYSIS_IN_PROGRESS.value
    return TransitionOutcome(
        "assessment_started",
        changes={"risk_assessor_id": _change(old_assessor, assessor_id)},
        notifications=_notify(assessor_id, "Risk assessment assigned to you", risk),
    )


def _apply_assessment(risk: Risk, assessment: RiskAssessment, values: dict) -> dict:
    changes = {}
    for name, value in values.items():
        old = getattr(assessment, name)
        if old != value:
            changes[name] = _change(old, value)
        setattr(assessment, name, value)
    level = calculate_risk_level(assessment.likelihood_score, assessment.impact_score)
    if assessment.calculated_risk_score != level:
        changes["calculated_risk_score"] = _change(assessment.calculated_risk_score, level)
    assessment.calculated_risk_score = level
    risk.likelihood = assessment.likelihood_score
    risk.impact = assessment.impact_score
    risk.inherent_risk = level
    return changes


def _submit_assessment(ctx, risk, payload):
    action = WorkflowAction.SUBMIT_ASSESSMENT
    assessment = _require_assessment(action, risk, RiskAssessmentStatus.RISK_ASSESSOR_ANALYSIS)
    p = _parse(AssessmentPayload, payload)
    _require(p, ASSESSMENT_REQUIRED)
    ctx.users.require("recommended_owner_id", p.recommended_owner_id)

    values = {
        f.name: getattr(p, f.name) for f in fields(p)
        if f.name != "supplied"
    }
    values["affected_assets"] = values["affected_assets"] or []
    values["existing_controls"] = values["existing_controls"] or []
    changes = _apply_assessment(risk, assessment, values)
    assessment.assessor_submitted_at = ctx.now
    assessment.status = RiskAssessmentStatus.GRC_APPROVAL.value
    return TransitionOutcome(
        "assessment_submitted",
        changes=changes,
        notifications=_notify(risk.grc_sme_id, "Assessment ready for GRC review", risk),
    )


def _approve_assessment(ctx, risk, payload):
    action = WorkflowAction.APPROVE_ASSESSMENT
    assessment = _require_assessment(action, risk, RiskAssessmentStatus.GRC_APPROVAL)
    if risk.treatment is not None:
        raise InvalidStateTransition(action.value, assessment.status, reason="treatment already exists")
    p = _parse(ReviewPayload, payload)

    assessment.status = RiskAssessmentStatus.DONE.value
    assessment.grc_review_notes = p.notes
    assessment.grc_approved_at = ctx.now
    assessment.completed_at = ctx.now
    old_owner = risk.risk_owner_id
    risk.risk_owner_id = assessment.recommended_owner_id
    risk.status = RiskIntakeStatus.RISK_ANALYZED.value
    risk.treatment = RiskTreatment(
        status=RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value,
        risk_owner_id=risk.risk_owner_id,
        grc_sme_id=risk.grc_sme_id or assessment.grc_sme_id,
        executive_approval_required=False,
    )
    return TransitionOutcome(
        "assessment_approved",
        changes={"risk_owner_id": _change(old_owner, risk.risk_owner_id)},
        notes=p.notes,
        notifications=_notify(risk.risk_owner_id, "Treatment decision required", risk),
    )


def _request_revision(ctx, risk, payload):
    action = WorkflowAction.REQUEST_REVISION
    assessment = _require_assessment(action, risk, RiskAssessmentStatus.GRC_APPROVAL)
    p = _parse(RevisionRequestPayload, payload)

    assessment.status = RiskAssessmentStatus.GRC_REVISION.value
    assessment.grc_declined_reason = p.declined_reason
    return TransitionOutcome(
        "assessment_revision_requested",
        notes=p.declined_reason,
        notifications=_notify(
            assessment.risk_assessor_id, "Assessment returned for revision", risk,
            p.declined_reason, severity="warning",
        ),
    )


def _complete_revision(ctx, risk, payload):
    action = WorkflowAction.COMPLETE_REVISION
    assessment = _require_assessment(action, risk, RiskAssessmentStatus.GRC_REVISION)
    p = _parse(AssessmentPayload, payload)

    values = p.values()
    for name in ("affected_assets", "existing_controls"):
        if name in values and values[name] is None:
            values[name] = []
    merged = AssessmentPayload(**{
        name: values.get(name, getattr(assessment, name)) for name in ASSESSMENT_REQUIRED
    })
    _require(merged, ASSESSMENT_REQUIRED)
    if "recommended_owner_id" in values:
        ctx.users.require("recommended_owner_id", values["recommended_owner_id"])

    changes = _apply_assessment(risk, assessment, values)
    assessment.revision_count = (assessment.revision_count or 0) + 1
    assessment.assessor_submitted_at = ctx.now
    assessment.status = RiskAssessmentStatus.GRC_APPROVAL.value
    return TransitionOutcome(
        "assessment_revised",
        changes=changes,
        notifications=_notify(risk.grc_sme_id, "Revised assessment ready for GRC review", risk),
    )


def _start_mitigation(treatment: RiskTreatment, now: datetime) -> None:
    treatment.status = RiskTreatmentStatus.RISK_MITIGATION_IN_PROGRESS.value
    treatment.mitigation_status = MitigationStatus.ON_TRACK.value
    treatment.mitigation_progress = 0
    treatment.last_progress_update = now


def _close_treatment(treatment: RiskTreatment, status: str, now: datetime) -> None:
    treatment.status = status
    treatment.completed_at = now


def _submit_treatment(ctx, risk, payload):
    action = WorkflowAction.SUBMIT_TREATMENT
    treatment = _require_treatment(action, risk, RiskTreatmentStatus.TREATMENT_DECISION_REVIEW)
    p = _parse(TreatmentPayload, payload)

    previous = treatment.decision
    treatment.decision = p.decision
    treatment.justification = p.justification
    treatment.mitigation_description = p.mitigation_description
    treatment.mitigation_target_date = p.mitigation_target_date
    treatment.transfer_to = p.transfer_to
    treatment.transfer_cost = p.transfer_cost
    treatment.avoid_strategy = p.avoid_strategy
    treatment.acceptance_rationale = p.acceptance_rationale
    treatment.acceptance_expires_at = p.acceptance_expires_at
    treatment.executive_approver_id = None
    treatment.executive_approval_status = None

    level = risk.inherent_risk or RiskLevel.MEDIUM.value
    escalate = requires_executive_approval(level, p.decision)
    treatment.executive_approval_required = escalate

    if escalate:
        treatment.status = RiskTreatmentStatus.IDENTIFY_EXECUTIVE_APPROVER.value
        events = _notify(
            risk.grc_sme_id, "Executive approver needed", risk,
            f"{p.decision} decision on a {level} risk requires executive approval",
        )
    elif p.decision == TreatmentDecision.MITIGATE.value:
        _start_mitigation(treatment, ctx.now)
        events = _notify(risk.risk_owner_id, "Mitigation started", risk)
    elif level in _LOW_LEVELS:
        _close_treatment(treatment, RiskTreatmentStatus.RISK_AUTO_ACCEPT.value, ctx.now)
        events = _notify(risk.grc_sme_id, "Risk auto-accepted", risk)
    else:
        _close_treatment(treatment, _DECISION_TERMINAL[p.decision], ctx.now)
        events = _notify(risk.grc_sme_id, f"Treatment closed: {p.decision}", risk)

    return TransitionOutcome(
        "treatment_submitted",
        changes={"decision": _change(previous, p.decision), "risk_level": level},
        notes=p.justification,
        notifications=events,
    )


def _assign_approver(ctx, risk, payload):
    action = WorkflowAction.ASSIGN_APPROVER
    treatment = _require_treatment(action, risk, RiskTreatmentStatus.IDENTIFY_EXECUTIVE_APPROVER)
    p = _parse(ApproverPayload, payload)
    approver_id = clean_str(p.executive_approver_id)
    ctx.users.require("executive_approver_id", approver_id)

    treatment.executive_approver_id = approver_id
    treatment.executive_approval_status = ExecutiveApprovalStatus.PENDING.value
    treatment.status = RiskTreatmentStatus.EXECUTIVE_APPROVAL.value
    return TransitionOutcome(
        "executive_approver_assigned",
        changes={"executive_approver_id": _change(None, approver_id)},
        notifications=_notify(approver_id, "Executive approval requested", risk, severity="warning"),
    )


def _executive_approve(ctx, risk, payload):
    action = WorkflowAction.EXECUTIVE_APPROVE
    treatment = _require_treatment(action, risk, RiskTreatmentStatus.EXECUTIVE_APPROVAL)
    p = _parse(ExecutiveApprovalPayload, payload)

    treatment.executive_approval_status = ExecutiveApprovalStatus.APPROVED.value
    treatment.executive_approval_notes = p.notes
    treatment.executive_approved_at = ctx.now
    if treatment.decision == TreatmentDecision.MITIGATE.value:
        _start_mitigation(treatment, ctx.now)
    else:
        _close_treatment(treatment, _DECISION_TERMINAL[treatment.decision], ctx.now)
    return TransitionOutcome(
        "executive_approved",
        notes=p.notes,
        notifications=_notify(risk.risk_owner_id, "Treatment approved by executive", risk),
    )


def _executive_deny(ctx, risk, payload):
    action = WorkflowAction.EXECUTIVE_DENY
    treatment = _require_treatment(action, risk, RiskTreatmentStatus.EXECUTIVE_APPROVAL)
    p = _parse(ExecutiveDenialPayload, payload)

    old_decision = treatment.decision
    treatment.executive_approval_status = ExecutiveApprovalStatus.DENIED.value
    treatment.executive_denied_reason = p.denied_reason
    treatment.executive_approval_notes = p.notes
    treatment.decision = None
    treatment.status = RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value
    return TransitionOutcome(
        "executive_denied",
        changes={"decision": _change(old_decision, None)},
        notes=p.denied_reason,
        notifications=_notify(
            risk.risk_owner_id, "Treatment denied by executive", risk,
            p.denied_reason, severity="warning",
        ),
    )


_UPDATE_TYPES = {
    MitigationStatus.ON_TRACK.value: "progress",
    MitigationStatus.DELAYED.value: "delay",
    MitigationStatus.CANCELLED.value: "cancellation",
    MitigationStatus.DONE.value: "completion",
}


def _update_mitigation(ctx, risk, payload):
    action = WorkflowAction.UPDATE_MITIGATION
    treatment = _require_treatment(action, risk, RiskTreatmentStatus.RISK_MITIGATION_IN_PROGRESS)
    p = _parse(MitigationUpdatePayload, payload)

    previous = treatment.mitigation_status
    treatment.mitigation_status = p.status
    if p.progress is not None:
        treatment.mitigation_progress = p.progress
    if p.notes is not None:
        treatment.mitigation_notes = p.notes
    treatment.last_progress_update = ctx.now

    events = []
    if p.status == MitigationStatus.DELAYED.value:
        treatment.mitigation_target_date = p.new_target_date
        events = _notify(risk.grc_sme_id, "Mitigation delayed", risk, p.delay_reason, "warning")
    elif p.status == MitigationStatus.CANCELLED.value:
        treatment.status = RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value
        events = _notify(risk.risk_owner_id, "Mitigation cancelled, new decision required", risk,
                         p.cancellation_reason, "warning")
    elif p.status == MitigationStatus.DONE.value:
        residual = calculate_risk_level(p.residual_likelihood, p.residual_impact)
        treatment.mitigation_progress = 100
        treatment.residual_likelihood = p.residual_likelihood
        treatment.residual_impact = p.residual_impact
        treatment.residual_risk_score = residual
        treatment.mitigation_actual_date = ctx.now.date()
        risk.residual_risk = residual
        _close_treatment(treatment, RiskTreatmentStatus.RISK_MITIGATION_COMPLETE.value, ctx.now)
        events = _notify(risk.grc_sme_id, "Mitigation complete", risk, f"Residual risk: {residual}")

    update = RiskTreatmentUpdate(
        update_type=_UPDATE_TYPES[p.status],
        previous_status=previous,
        new_status=p.status,
        progress=treatment.mitigation_progress,
        notes=p.notes,
        new_target_date=p.new_target_date,
        delay_reason=p.delay_reason,
        cancellation_reason=p.cancellation_reason,
        completion_evidence=p.completion_evidence,
        effectiveness_notes=p.effectiveness_notes,
        created_by=ctx.actor,
    )
    treatment.updates.append(update)
    return TransitionOutcome(
        "mitigation_updated",
        changes={"mitigation_status": _change(previous, p.status)},
        notes=p.notes,
        notifications=events,
    )


def _assign_role(action: WorkflowAction):
    field_name = ROLE_ACTIONS[action]

    def handler(ctx, risk, payload):
        if action == WorkflowAction.ASSIGN_ASSESSOR:
            _expect(action, risk.status, sorted(_EARLY_INTAKE))
        elif action == WorkflowAction.ASSIGN_OWNER and risk.assessment is None:
            raise InvalidStateTransition(action.value, risk.status, reason="risk has no assessment")
        p = _parse(RoleAssignmentPayload, payload)
        if p.user_id is not None:
            ctx.users.require(field_name, p.user_id)

        old = getattr(risk, field_name)
        setattr(risk, field_name, p.user_id)
        if action == WorkflowAction.ASSIGN_GRC_SME:
            for child in (risk.assessment, risk.treatment):
                if child is not None:
                    child.grc_sme_id = p.user_id
        elif action == WorkflowAction.ASSIGN_OWNER and risk.treatment is not None:
            risk.treatment.risk_owner_id = p.user_id
        return TransitionOutcome(
            "role_assigned",
            changes={field_name: _change(old, p.user_id)},
            notifications=_notify(
                p.user_id, f"You were assigned as {field_name[:-3]}", risk,
                notification_type="task_assigned",
            ),
        )

    handler.__name__ = f"_{action.value}"
    return handler


_HANDLERS: dict[WorkflowAction, Callable[..., TransitionOutcome]] = {
    WorkflowAction.VALIDATE: _validate,
    WorkflowAction.START_ASSESSMENT: _start_assessment,
    WorkflowAction.SUBMIT_ASSESSMENT: _submit_assessment,
    WorkflowAction.APPROVE_ASSESSMENT: _approve_assessment,
    WorkflowAction.REQUEST_REVISION: _request_revision,
    WorkflowAction.COMPLETE_REVISION: _complete_revision,
    WorkflowAction.SUBMIT_TREATMENT: _submit_treatment,
    WorkflowAction.ASSIGN_APPROVER: _assign_approver,
    WorkflowAction.EXECUTIVE_APPROVE: _executive_approve,
    WorkflowAction.EXECUTIVE_DENY: _executive_deny,
    WorkflowAction.UPDATE_MITIGATION: _update_mitigation,
    **{action: _assign_role(action) for action in ROLE_ACTIONS},
}


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class RiskWorkflowEngine:
    """Runs workflow commands against one Risk aggregate at a time."""

    def __init__(self, store: RiskStore | None = None, users: UserDirectory | None = None,
                 notifications=None):
        self.store = store or RiskStore()
        self.users = users or UserDirectory()
        self.notifications = notifications or NotificationService

    def execute(self, risk_id, action, payload=None, *, user_id=None, expected_version=None):
        """Apply a single command. Returns ``(risk, None)`` or ``(None, error)``."""
        return self.execute_many(
            risk_id, [(action, payload)], user_id=user_id, expected_version=expected_version,
        )

    def execute_many(self, risk_id, commands, *, user_id=None, expected_version=None):
        """
        Apply several commands to one risk in a single transaction.

        Either every command applies and one commit is made, or nothing is
        written and the first error is returned.
        """
        actor = user_id or "system"
        events: list[NotificationEvent] = []
        applied: list[str] = []
        try:
            # The version check on UPDATE must run once, at commit.
            with db.session.no_autoflush:
                resolved = [(self._coerce(action), payload) for action, payload in commands]
                risk = self.store.load(risk_id)
                self.store.check_version(risk, expected_version)
                before = compound_state(risk)
                ctx = TransitionContext(users=self.users, actor=actor)
                for action, payload in resolved:
                    state = compound_state(risk)
                    outcome = _HANDLERS[action](ctx, risk, payload)
                    self._record(risk, action, state, outcome, actor)
                    events.extend(outcome.notifications)
                    applied.append(action.value)
                after = compound_state(risk)
            self.store.save(risk)
        except WorkflowError as err:
            return self._reject(risk_id, commands, err)
        except StaleDataError:
            return self._reject(risk_id, commands, ConcurrentModification(risk_id, expected_version))

        logger.info(
            "Risk transition applied: %s -> %s", before, after,
            extra={"risk_id": risk_id, "action": ",".join(applied), "event_type": "risk.transition"},
        )
        self._emit(events)
        return risk, None

    def _reject(self, risk_id, commands, err: WorkflowError):
        self.store.discard()
        logger.info(
            "Risk transition rejected: %s (%s)", err.code, err.message,
            extra={
                "risk_id": risk_id,
                "action": ",".join(str(getattr(a, "value", a)) for a, _ in commands),
                "event_type": "risk.transition_rejected",
            },
        )
        return None, err

    @staticmethod
    def _coerce(action) -> WorkflowAction:
        try:
            return WorkflowAction(getattr(action, "value", action))
        except ValueError:
            raise ValidationError(
                f"Unknown action '{action}'",
                {"action": f"must be one of {enum_values(WorkflowAction)}"},
                code=E.VALIDATION_INVALID,
            ) from None

    @staticmethod
    def _record(risk, action, state, outcome: TransitionOutcome, actor: str) -> None:
        changes = dict(outcome.changes)
        changes["state"] = _change(state, compound_state(risk))
        changes["workflow_action"] = action.value
        db.session.add(RiskHistory(
            risk_id=risk.id,
            action=outcome.history_action,
            changes=changes,
            notes=outcome.notes,
            changed_by=actor,
        ))

    def _emit(self, events: list[NotificationEvent]) -> None:
        if not events or not current_app.config.get("RISK_NOTIFICATIONS_ENABLED", True):
            return
        for event in events:
            try:
                self.notifications.emit(event)
            except Exception:
                logger.warning(
                    "Notification sink failed",
                    exc_info=True,
                    extra={"risk_id": event.risk_id, "event_type": "notification.failed"},
                )
