"""
Risk intake and query service.

Creates risks in ``risk_identified`` and builds the workflow state view the
API returns after every call. Transitions live in ``risk_workflow``.
"""

import logging

from flask import current_app
from sqlalchemy import not_, or_

from app.core.exceptions import ValidationError
from app.models import db
from app.models.risk import (
    RISK_SOURCES,
    Risk,
    RiskAssessment,
    RiskHistory,
    RiskIntakeStatus,
    RiskLevel,
    enum_values,
    next_risk_code,
)
from app.services.risk_store import RiskStore
from app.services.risk_workflow import (
    WorkflowPhase,
    derive_phase,
    derive_stage,
    get_assignable_roles,
    get_available_actions,
)
from app.services.user_service import UserDirectory
from app.utils.errors import E
from app.utils.helpers import clean_str

logger = logging.getLogger(__name__)


def create_risk(data: dict, *, user_id: str = None, store: RiskStore = None,
                users: UserDirectory = None) -> Risk:
    """
    Intake: create a Risk in ``risk_identified``.

    ``inherent_risk`` is seeded from ``initial_severity`` until an
    assessment computes it from likelihood × impact.
    """
    store = store or RiskStore()
    users = users or UserDirectory()

    title = clean_str(data.get("title"))
    if not title:
        raise ValidationError("title is required", {"title": "required"})

    severity = data.get("initial_severity") or RiskLevel.MEDIUM.value
    if severity not in enum_values(RiskLevel):
        raise ValidationError(
            f"Invalid initial_severity '{severity}'",
            {"initial_severity": f"must be one of {enum_values(RiskLevel)}"},
            code=E.VALIDATION_INVALID,
        )
    source = data.get("source") or "ad_hoc_discovery"
    if not isinstance(source, str) or source not in RISK_SOURCES:
        raise ValidationError(
            f"Invalid source '{source}'",
            {"source": f"must be one of {sorted(RISK_SOURCES)}"},
            code=E.VALIDATION_INVALID,
        )
    for name in ("description", "category"):
        if data.get(name) is not None and not isinstance(data[name], str):
            raise ValidationError(f"{name} must be a string", {name: "must be a string"}, code=E.VALIDATION_INVALID)
    tags = data.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list", {"tags": "must be a list"}, code=E.VALIDATION_INVALID)

    reporter_id = clean_str(data.get("reporter_id"))
    grc_sme_id = clean_str(data.get("grc_sme_id"))
    if reporter_id:
        users.require("reporter_id", reporter_id)
    if grc_sme_id:
        users.require("grc_sme_id", grc_sme_id)

    prefix = current_app.config.get("RISK_CODE_PREFIX", "RISK")
    risk = Risk(
        code=next_risk_code(prefix),
        title=title,
        description=data.get("description") or "",
        source=source,
        category=data.get("category") or "security",
        status=RiskIntakeStatus.RISK_IDENTIFIED.value,
        initial_severity=severity,
        inherent_risk=severity,
        reporter_id=reporter_id,
        grc_sme_id=grc_sme_id,
        tags=tags,
    )
    db.session.add(risk)
    db.session.flush()
    db.session.add(RiskHistory(
        risk_id=risk.id,
        action="risk_submitted",
        changes={"status": {"old": None, "new": risk.status}},
        changed_by=user_id or reporter_id or "system",
    ))
    store.add(risk)
    logger.info(
        "Risk created: %s", risk.code,
        extra={"risk_id": risk.id, "event_type": "risk.create"},
    )
    return risk


def get_risk(risk_id: int, store: RiskStore = None) -> Risk:
    return (store or RiskStore()).load(risk_id)


def list_risks(status: str = None, phase: str = None):
    """
    Query risks, newest first.

    ``phase`` is derived, so it is matched on the status columns that
    define it rather than in Python.
    """
    q = Risk.query
    if status:
        q = q.filter(Risk.status == status)
    if phase:
        if phase not in enum_values(WorkflowPhase):
            raise ValidationError(
                f"Invalid phase '{phase}'",
                {"phase": f"must be one of {enum_values(WorkflowPhase)}"},
                code=E.VALIDATION_INVALID,
            )
        q = _filter_phase(q, phase)
    return q.order_by(Risk.id.desc())


def _filter_phase(q, phase):
    intake = [RiskIntakeStatus.RISK_IDENTIFIED.value, RiskIntakeStatus.ACTUAL_RISK.value]
    if phase == WorkflowPhase.CLOSED.value:
        return q.filter(Risk.status == RiskIntakeStatus.NOT_A_RISK.value)
    if phase == WorkflowPhase.INTAKE.value:
        return q.filter(Risk.status.in_(intake))

    q = q.filter(Risk.status.notin_(intake + [RiskIntakeStatus.NOT_A_RISK.value]))
    open_assessment = Risk.assessment.has(RiskAssessment.status != "done")
    in_assessment = or_(
        Risk.status == RiskIntakeStatus.RISK_ANALYSIS_IN_PROGRESS.value, open_assessment,
    )
    if phase == WorkflowPhase.ASSESSMENT.value:
        return q.filter(in_assessment)
    q = q.filter(not_(in_assessment))
    if phase == WorkflowPhase.TREATMENT.value:
        return q.filter(Risk.treatment.has())
    return q.filter(Risk.assessment.has(), not_(Risk.treatment.has()))


def get_history(risk_id: int, limit: int = 50, offset: int = 0):
    risk = get_risk(risk_id)
    q = risk.history
    return q.offset(offset).limit(limit).all(), q.count()


def get_workflow_state(risk: Risk, history_limit: int = 10) -> dict:
    """Risk aggregate plus derived phase, stage and permitted actions."""
    data = risk.to_dict()
    data["phase"] = derive_phase(risk).value
    data["stage"] = derive_stage(risk)
    data["available_actions"] = get_available_actions(risk)
    data["assignable_roles"] = get_assignable_roles(risk)
    data["roles"] = {
        "reporter_id": risk.reporter_id,
        "grc_sme_id": risk.grc_sme_id,
        "risk_assessor_id": risk.risk_assessor_id,
        "risk_owner_id": risk.risk_owner_id,
        "executive_approver_id": risk.treatment.executive_approver_id if risk.treatment else None,
    }
    data["recent_history"] = [h.to_dict() for h in risk.history.limit(history_limit).all()]
    if risk.treatment is not None:
        data["treatment_updates"] = [u.to_dict() for u in risk.treatment.updates.all()]
    else:
        data["treatment_updates"] = []
    return data
