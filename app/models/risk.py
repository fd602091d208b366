"""
GRC Risk Workflow Service
Risk domain models.

Models:
    - Risk: root aggregate moving through Intake → Assessment → Treatment
    - RiskAssessment: 0..1 assessment sub-ticket owned by a Risk
    - RiskTreatment: 0..1 treatment sub-ticket owned by a Risk
    - RiskTreatmentUpdate: mitigation progress log for a treatment
    - RiskHistory: append-only workflow trail per risk

Each workflow phase has exactly one status enum below; services, the
blueprint and the tests import these instead of repeating string lists.
"""

from datetime import datetime, timezone
from enum import Enum

from app.models import db


# ── Status enums ─────────────────────────────────────────────────────────────

class RiskIntakeStatus(str, Enum):
    RISK_IDENTIFIED = "risk_identified"
    NOT_A_RISK = "not_a_risk"
    ACTUAL_RISK = "actual_risk"
    RISK_ANALYSIS_IN_PROGRESS = "risk_analysis_in_progress"
    RISK_ANALYZED = "risk_analyzed"


class RiskAssessmentStatus(str, Enum):
    RISK_ASSESSOR_ANALYSIS = "risk_assessor_analysis"
    GRC_APPROVAL = "grc_approval"
    GRC_REVISION = "grc_revision"
    DONE = "done"


class RiskTreatmentStatus(str, Enum):
    TREATMENT_DECISION_REVIEW = "treatment_decision_review"
    IDENTIFY_EXECUTIVE_APPROVER = "identify_executive_approver"
    EXECUTIVE_APPROVAL = "executive_approval"
    RISK_MITIGATION_IN_PROGRESS = "risk_mitigation_in_progress"
    RISK_MITIGATION_COMPLETE = "risk_mitigation_complete"
    RISK_ACCEPT = "risk_accept"
    RISK_TRANSFER = "risk_transfer"
    RISK_AVOID = "risk_avoid"
    RISK_AUTO_ACCEPT = "risk_auto_accept"


class TreatmentDecision(str, Enum):
    MITIGATE = "mitigate"
    ACCEPT = "accept"
    TRANSFER = "transfer"
    AVOID = "avoid"


class RiskLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Likelihood(str, Enum):
    RARE = "rare"
    UNLIKELY = "unlikely"
    POSSIBLE = "possible"
    LIKELY = "likely"
    ALMOST_CERTAIN = "almost_certain"


class Impact(str, Enum):
    NEGLIGIBLE = "negligible"
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    SEVERE = "severe"


class MitigationStatus(str, Enum):
    ON_TRACK = "on_track"
    DELAYED = "delayed"
    CANCELLED = "cancelled"
    DONE = "done"


class ExecutiveApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


TERMINAL_TREATMENT_STATUSES = frozenset({
    RiskTreatmentStatus.RISK_MITIGATION_COMPLETE.value,
    RiskTreatmentStatus.RISK_ACCEPT.value,
    RiskTreatmentStatus.RISK_TRANSFER.value,
    RiskTreatmentStatus.RISK_AVOID.value,
    RiskTreatmentStatus.RISK_AUTO_ACCEPT.value,
})

ESCALATION_LEVELS = frozenset({RiskLevel.HIGH.value, RiskLevel.VERY_HIGH.value})

RISK_SOURCES = {
    "internal_security_reviews", "ad_hoc_discovery", "external_security_reviews",
    "incident_response", "policy_exception", "employee_reporting",
}


def enum_values(enum_cls) -> list[str]:
    """Ordered list of raw values, for validation messages."""
    return [member.value for member in enum_cls]


# ── Scoring ──────────────────────────────────────────────────────────────────

LIKELIHOOD_VALUES = {
    Likelihood.RARE.value: 1,
    Likelihood.UNLIKELY.value: 2,
    Likelihood.POSSIBLE.value: 3,
    Likelihood.LIKELY.value: 4,
    Likelihood.ALMOST_CERTAIN.value: 5,
}

IMPACT_VALUES = {
    Impact.NEGLIGIBLE.value: 1,
    Impact.MINOR.value: 2,
    Impact.MODERATE.value: 3,
    Impact.MAJOR.value: 4,
    Impact.SEVERE.value: 5,
}


def risk_score(likelihood: str, impact: str) -> int:
    """Likelihood (1-5) × impact (1-5). Range: 1–25."""
    return LIKELIHOOD_VALUES[likelihood] * IMPACT_VALUES[impact]


def calculate_risk_level(likelihood: str, impact: str) -> str:
    """
    Risk level band for a likelihood/impact pair.
      16-25 → very_high
      12-15 → high
       6-11 → medium
       3-5  → low
       1-2  → very_low
    """
    score = risk_score(likelihood, impact)
    if score >= 16:
        return RiskLevel.VERY_HIGH.value
    if score >= 12:
        return RiskLevel.HIGH.value
    if score >= 6:
        return RiskLevel.MEDIUM.value
    if score >= 3:
        return RiskLevel.LOW.value
    return RiskLevel.VERY_LOW.value


def requires_executive_approval(risk_level: str | None, decision: str) -> bool:
    """Accept/transfer/avoid on a high or very high risk needs an executive."""
    if decision == TreatmentDecision.MITIGATE.value:
        return False
    return (risk_level or RiskLevel.MEDIUM.value) in ESCALATION_LEVELS


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
#  RISK
# ═══════════════════════════════════════════════════════════════════════════

class Risk(db.Model):
    """
    Root aggregate of the risk workflow.

    ``version`` is the optimistic-concurrency token: SQLAlchemy adds
    ``WHERE version = <loaded>`` to every UPDATE and raises StaleDataError
    when another writer got there first.
    """

    __tablename__ = "risks"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False, comment="Auto-generated: RISK-001")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    source = db.Column(db.String(50), default="ad_hoc_discovery")
    category = db.Column(db.String(50), default="security")
    status = db.Column(db.String(40), nullable=False, default=RiskIntakeStatus.RISK_IDENTIFIED.value, index=True)

    initial_severity = db.Column(db.String(20), default=RiskLevel.MEDIUM.value)
    inherent_risk = db.Column(db.String(20), nullable=True, comment="Drives executive escalation")
    residual_risk = db.Column(db.String(20), nullable=True)
    likelihood = db.Column(db.String(30), nullable=True)
    impact = db.Column(db.String(30), nullable=True)

    # Weak user references - lookup only
    reporter_id = db.Column(db.String(64), nullable=True, index=True)
    grc_sme_id = db.Column(db.String(64), nullable=True, index=True)
    risk_assessor_id = db.Column(db.String(64), nullable=True, index=True)
    risk_owner_id = db.Column(db.String(64), nullable=True, index=True)

    decline_reason = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, default=list)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    assessment = db.relationship(
        "RiskAssessment", back_populates="risk", uselist=False,
        cascade="all, delete-orphan",
    )
    treatment = db.relationship(
        "RiskTreatment", back_populates="risk", uselist=False,
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "RiskHistory", back_populates="risk", lazy="dynamic",
        cascade="all, delete-orphan", order_by="RiskHistory.id.desc()",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "source": self.source,
            "category": self.category,
            "status": self.status,
            "initial_severity": self.initial_severity,
            "inherent_risk": self.inherent_risk,
            "residual_risk": self.residual_risk,
            "likelihood": self.likelihood,
            "impact": self.impact,
            "reporter_id": self.reporter_id,
            "grc_sme_id": self.grc_sme_id,
            "risk_assessor_id": self.risk_assessor_id,
            "risk_owner_id": self.risk_owner_id,
            "decline_reason": self.decline_reason,
            "tags": self.tags or [],
            "version": self.version,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "treatment": self.treatment.to_dict() if self.treatment else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Risk {self.code}: {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  ASSESSMENT
# ═══════════════════════════════════════════════════════════════════════════

class RiskAssessment(db.Model):
    """Assessment sub-ticket. Revisions mutate this row in place."""

    __tablename__ = "risk_assessments"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(
        db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True,
    )
    status = db.Column(db.String(40), nullable=False, default=RiskAssessmentStatus.RISK_ASSESSOR_ANALYSIS.value)
    risk_assessor_id = db.Column(db.String(64), nullable=True)
    grc_sme_id = db.Column(db.String(64), nullable=True)

    threat_description = db.Column(db.Text, nullable=True)
    affected_assets = db.Column(db.JSON, default=list)
    existing_controls = db.Column(db.JSON, default=list)
    vulnerabilities = db.Column(db.Text, nullable=True)
    likelihood_score = db.Column(db.String(30), nullable=True)
    likelihood_rationale = db.Column(db.Text, nullable=True)
    impact_score = db.Column(db.String(30), nullable=True)
    impact_rationale = db.Column(db.Text, nullable=True)
    calculated_risk_score = db.Column(db.String(20), nullable=True)
    recommended_owner_id = db.Column(db.String(64), nullable=True)
    assessment_notes = db.Column(db.Text, nullable=True)
    treatment_recommendation = db.Column(db.Text, nullable=True)

    grc_review_notes = db.Column(db.Text, nullable=True)
    grc_declined_reason = db.Column(db.Text, nullable=True)
    revision_count = db.Column(db.Integer, nullable=False, default=0)

    assessor_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    grc_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    risk = db.relationship("Risk", back_populates="assessment")

    def to_dict(self):
        return {
            "id": self.id,
            "risk_id": self.risk_id,
            "status": self.status,
            "risk_assessor_id": self.risk_assessor_id,
            "grc_sme_id": self.grc_sme_id,
            "threat_description": self.threat_description,
            "affected_assets": self.affected_assets or [],
            "existing_controls": self.existing_controls or [],
            "vulnerabilities": self.vulnerabilities,
            "likelihood_score": self.likelihood_score,
            "likelihood_rationale": self.likelihood_rationale,
            "impact_score": self.impact_score,
            "impact_rationale": self.impact_rationale,
            "calculated_risk_score": self.calculated_risk_score,
            "recommended_owner_id": self.recommended_owner_id,
            "assessment_notes": self.assessment_notes,
            "treatment_recommendation": self.treatment_recommendation,
            "grc_review_notes": self.grc_review_notes,
            "grc_declined_reason": self.grc_declined_reason,
            "revision_count": self.revision_count,
            "assessor_submitted_at": _iso(self.assessor_submitted_at),
            "grc_approved_at": _iso(self.grc_approved_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<RiskAssessment risk={self.risk_id} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  TREATMENT
# ═══════════════════════════════════════════════════════════════════════════

class RiskTreatment(db.Model):
    """Treatment sub-ticket: decision, escalation and mitigation tracking."""

    __tablename__ = "risk_treatments"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(
        db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True,
    )
    status = db.Column(db.String(40), nullable=False, default=RiskTreatmentStatus.TREATMENT_DECISION_REVIEW.value)
    decision = db.Column(db.String(20), nullable=True)
    justification = db.Column(db.Text, nullable=True)
    risk_owner_id = db.Column(db.String(64), nullable=True)
    grc_sme_id = db.Column(db.String(64), nullable=True)

    # Executive escalation
    executive_approval_required = db.Column(db.Boolean, default=False)
    executive_approver_id = db.Column(db.String(64), nullable=True)
    executive_approval_status = db.Column(db.String(20), nullable=True)
    executive_approval_notes = db.Column(db.Text, nullable=True)
    executive_denied_reason = db.Column(db.Text, nullable=True)
    executive_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Decision-specific
    mitigation_description = db.Column(db.Text, nullable=True)
    mitigation_target_date = db.Column(db.Date, nullable=True)
    mitigation_actual_date = db.Column(db.Date, nullable=True)
    transfer_to = db.Column(db.String(300), nullable=True)
    transfer_cost = db.Column(db.Float, nullable=True)
    avoid_strategy = db.Column(db.Text, nullable=True)
    acceptance_rationale = db.Column(db.Text, nullable=True)
    acceptance_expires_at = db.Column(db.Date, nullable=True)

    # Mitigation tracking
    mitigation_status = db.Column(db.String(20), nullable=True)
    mitigation_progress = db.Column(db.Integer, nullable=True, comment="0-100")
    mitigation_notes = db.Column(db.Text, nullable=True)
    last_progress_update = db.Column(db.DateTime(timezone=True), nullable=True)

    # Residual risk (set when mitigation is done)
    residual_likelihood = db.Column(db.String(30), nullable=True)
    residual_impact = db.Column(db.String(30), nullable=True)
    residual_risk_score = db.Column(db.String(20), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    risk = db.relationship("Risk", back_populates="treatment")
    updates = db.relationship(
        "RiskTreatmentUpdate", back_populates="treatment", lazy="dynamic",
        cascade="all, delete-orphan", order_by="RiskTreatmentUpdate.id.desc()",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TREATMENT_STATUSES

    def to_dict(self):
        cancelled = self.mitigation_status == MitigationStatus.CANCELLED.value
        return {
            "id": self.id,
            "risk_id": self.risk_id,
            "status": self.status,
            "decision": self.decision,
            "justification": self.justification,
            "risk_owner_id": self.risk_owner_id,
            "grc_sme_id": self.grc_sme_id,
            "executive_approval_required": bool(self.executive_approval_required),
            "executive_approver_id": self.executive_approver_id,
            "executive_approval_status": self.executive_approval_status,
            "executive_approval_notes": self.executive_approval_notes,
            "executive_denied_reason": self.executive_denied_reason,
            "executive_approved_at": _iso(self.executive_approved_at),
            "mitigation_description": self.mitigation_description,
            "mitigation_target_date": _iso(self.mitigation_target_date),
            "mitigation_actual_date": _iso(self.mitigation_actual_date),
            "transfer_to": self.transfer_to,
            "transfer_cost": self.transfer_cost,
            "avoid_strategy": self.avoid_strategy,
            "acceptance_rationale": self.acceptance_rationale,
            "acceptance_expires_at": _iso(self.acceptance_expires_at),
            "mitigation_status": self.mitigation_status,
            "mitigation_progress": None if cancelled else self.mitigation_progress,
            "mitigation_notes": self.mitigation_notes,
            "last_progress_update": _iso(self.last_progress_update),
            "residual_likelihood": self.residual_likelihood,
            "residual_impact": self.residual_impact,
            "residual_risk_score": self.residual_risk_score,
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<RiskTreatment risk={self.risk_id} {self.status}>"


class RiskTreatmentUpdate(db.Model):
    """One row per mitigation status update."""

    __tablename__ = "risk_treatment_updates"

    id = db.Column(db.Integer, primary_key=True)
    treatment_id = db.Column(
        db.Integer, db.ForeignKey("risk_treatments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    update_type = db.Column(db.String(20), nullable=False, comment="progress/delay/cancellation/completion")
    previous_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=False)
    progress = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    new_target_date = db.Column(db.Date, nullable=True)
    delay_reason = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    completion_evidence = db.Column(db.Text, nullable=True)
    effectiveness_notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    treatment = db.relationship("RiskTreatment", back_populates="updates")

    def to_dict(self):
        return {
            "id": self.id,
            "treatment_id": self.treatment_id,
            "update_type": self.update_type,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "progress": self.progress,
            "notes": self.notes,
            "new_target_date": _iso(self.new_target_date),
            "delay_reason": self.delay_reason,
            "cancellation_reason": self.cancellation_reason,
            "completion_evidence": self.completion_evidence,
            "effectiveness_notes": self.effectiveness_notes,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  HISTORY
# ═══════════════════════════════════════════════════════════════════════════

class RiskHistory(db.Model):
    """
    Append-only workflow trail.

    ``changes`` carries an old→new snapshot of the fields a transition touched.
    """

    __tablename__ = "risk_history"

    id = db.Column(db.Integer, primary_key=True)
    risk_id = db.Column(
        db.Integer, db.ForeignKey("risks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(60), nullable=False)
    changes = db.Column(db.JSON, default=dict)
    notes = db.Column(db.Text, nullable=True)
    changed_by = db.Column(db.String(64), nullable=False, default="system")
    changed_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    risk = db.relationship("Risk", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "risk_id": self.risk_id,
            "action": self.action,
            "changes": self.changes or {},
            "notes": self.notes,
            "changed_by": self.changed_by,
            "changed_at": _iso(self.changed_at),
        }


# ── Code generation ──────────────────────────────────────────────────────────

def next_risk_code(prefix: str = "RISK") -> str:
    """
    Generate the next sequential risk code, e.g. RISK-001, RISK-002, ...

    Uses MAX(id) ordering and SELECT ... FOR UPDATE where supported.
    """
    full_prefix = prefix + "-"
    last = (
        Risk.query
        .filter(Risk.code.like(f"{full_prefix}%"))
        .order_by(Risk.id.desc())
        .with_for_update(skip_locked=True)
        .first()
    )
    if last and last.code.startswith(full_prefix):
        try:
            num = int(last.code.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            num = 1
    else:
        num = 1
    return f"{prefix}-{num:03d}"
