"""
Risk Workflow Engine Tests - comprehensive coverage for:
  - Every transition (happy path, missing fields, wrong state, unknown users)
  - Escalation law for high / very high inherent risk
  - Idempotence-of-rejection
  - Revision round-trip
  - Role assignment commands and their eligibility rules
  - History trail and mitigation update log
  - Full lifecycle walks to each terminal status
"""

import pytest

from app.core.exceptions import (
    InvalidStateTransition,
    UnresolvedReference,
    ValidationError,
)
from app.models.risk import RiskHistory
from app.services.risk_workflow import (
    AssessmentPayload,
    ValidatePayload,
    WorkflowAction,
    WorkflowPhase,
    derive_phase,
)
from app.utils.errors import E


A = WorkflowAction


def _ok(result):
    risk, err = result
    assert err is None, err.to_dict()
    return risk


def _fail(result, exc_type):
    risk, err = result
    assert risk is None
    assert isinstance(err, exc_type), err
    return err


# ═══════════════════════════════════════════════════════════════════════════
# Intake
# ═══════════════════════════════════════════════════════════════════════════


class TestValidate:
    def test_approve_sets_actual_risk_and_assessor(self, engine, make_risk, users):
        risk = make_risk()
        risk = _ok(engine.execute(
            risk.id, A.VALIDATE, {"approved": True, "risk_assessor_id": "u-assessor"}, user_id="u-grc",
        ))
        assert risk.status == "actual_risk"
        assert risk.risk_assessor_id == "u-assessor"
        assert risk.assessment is None

    def test_approve_can_set_grc_sme(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute(risk.id, A.VALIDATE, {"approved": True, "grc_sme_id": "u-grc"}))
        assert risk.grc_sme_id == "u-grc"

    def test_decline_sets_not_a_risk(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute(risk.id, A.VALIDATE, {"approved": False, "reason": "Duplicate of RISK-7"}))
        assert risk.status == "not_a_risk"
        assert risk.decline_reason == "Duplicate of RISK-7"
        assert risk.assessment is None
        assert derive_phase(risk) == WorkflowPhase.CLOSED

    def test_decline_ignores_prior_assessor(self, engine, make_risk):
        risk = make_risk()
        _ok(engine.execute(risk.id, A.ASSIGN_ASSESSOR, {"user_id": "u-assessor"}))
        risk = _ok(engine.execute(
            risk.id, A.VALIDATE, {"approved": False, "reason": "Out of scope", "risk_assessor_id": "u-assessor"},
        ))
        assert risk.status == "not_a_risk"
        assert risk.assessment is None

    def test_decline_requires_reason(self, engine, make_risk):
        risk = make_risk()
        err = _fail(engine.execute(risk.id, A.VALIDATE, {"approved": False}), ValidationError)
        assert err.details == {"reason": "required"}
        assert err.code == E.VALIDATION_REQUIRED

    def test_blank_reason_is_missing(self, engine, make_risk):
        risk = make_risk()
        _fail(engine.execute(risk.id, A.VALIDATE, {"approved": False, "reason": "   "}), ValidationError)

    def test_approved_is_required(self, engine, make_risk):
        risk = make_risk()
        err = _fail(engine.execute(risk.id, A.VALIDATE, {}), ValidationError)
        assert "approved" in err.details

    def test_non_boolean_approved_is_invalid(self, engine, make_risk):
        risk = make_risk()
        err = _fail(engine.execute(risk.id, A.VALIDATE, {"approved": "maybe"}), ValidationError)
        assert err.code == E.VALIDATION_INVALID

    def test_unknown_assessor_is_unresolved(self, engine, make_risk):
        risk = make_risk()
        err = _fail(
            engine.execute(risk.id, A.VALIDATE, {"approved": True, "risk_assessor_id": "nobody"}),
            UnresolvedReference,
        )
        assert err.field == "risk_assessor_id"
        assert engine.store.load(risk.id).status == "risk_identified"

    def test_inactive_user_is_unresolved(self, engine, make_risk):
        risk = make_risk()
        _fail(
            engine.execute(risk.id, A.VALIDATE, {"approved": True, "risk_assessor_id": "u-gone"}),
            UnresolvedReference,
        )

    def test_wrong_state(self, engine, make_risk):
        risk = make_risk("actual_risk")
        err = _fail(engine.execute(risk.id, A.VALIDATE, {"approved": True}), InvalidStateTransition)
        assert err.current_status == "actual_risk"
        assert err.expected == ["risk_identified"]

    def test_state_checked_before_fields(self, engine, make_risk):
        risk = make_risk("actual_risk")
        _fail(engine.execute(risk.id, A.VALIDATE, {}), InvalidStateTransition)

    def test_typed_payload_accepted(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute(risk.id, A.VALIDATE, ValidatePayload(approved=True)))
        assert risk.status == "actual_risk"

    def test_string_action_key_accepted(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute(risk.id, "validate", {"approved": True}))
        assert risk.status == "actual_risk"


class TestStartAssessment:
    def test_creates_assessment(self, engine, make_risk):
        risk = make_risk("actual_risk")
        risk = _ok(engine.execute(risk.id, A.START_ASSESSMENT, {"risk_assessor_id": "u-assessor-2"}))
        assert risk.status == "risk_analysis_in_progress"
        assert risk.risk_assessor_id == "u-assessor-2"
        assert risk.assessment.status == "risk_assessor_analysis"
        assert risk.assessment.risk_assessor_id == "u-assessor-2"
        assert risk.assessment.grc_sme_id == "u-grc"
        assert derive_phase(risk) == WorkflowPhase.ASSESSMENT

    def test_requires_assessor(self, engine, make_risk):
        risk = make_risk("actual_risk")
        err = _fail(engine.execute(risk.id, A.START_ASSESSMENT, {}), ValidationError)
        assert err.details == {"risk_assessor_id": "required"}

    def test_unknown_assessor(self, engine, make_risk):
        risk = make_risk("actual_risk")
        _fail(engine.execute(risk.id, A.START_ASSESSMENT, {"risk_assessor_id": "ghost"}), UnresolvedReference)
        assert engine.store.load(risk.id).assessment is None

    def test_not_from_identified(self, engine, make_risk):
        risk = make_risk()
        _fail(engine.execute(risk.id, A.START_ASSESSMENT, {"risk_assessor_id": "u-assessor"}),
              InvalidStateTransition)

    def test_not_from_not_a_risk(self, engine, make_risk):
        risk = make_risk()
        _ok(engine.execute(risk.id, A.VALIDATE, {"approved": False, "reason": "noise"}))
        _fail(engine.execute(risk.id, A.START_ASSESSMENT, {"risk_assessor_id": "u-assessor"}),
              InvalidStateTransition)
        assert engine.store.load(risk.id).assessment is None


# ═══════════════════════════════════════════════════════════════════════════
# Assessment
# ═══════════════════════════════════════════════════════════════════════════


class TestSubmitAssessment:
    def test_fills_assessment_and_scores(self, engine, make_risk, assessment_data):
        risk = make_risk("assessment")
        risk = _ok(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data()))
        a = risk.assessment
        assert a.status == "grc_approval"
        assert a.calculated_risk_score == "very_high"
        assert a.affected_assets == ["customer-portal", "idp"]
        assert a.assessor_submitted_at is not None
        assert risk.likelihood == "likely"
        assert risk.impact == "major"
        assert risk.inherent_risk == "very_high"

    @pytest.mark.parametrize("field", ["likelihood_rationale", "impact_rationale"])
    def test_empty_rationale_fails(self, engine, make_risk, assessment_data, field):
        risk = make_risk("assessment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(**{field: ""})),
                    ValidationError)
        assert field in err.details
        assert engine.store.load(risk.id).assessment.status == "risk_assessor_analysis"

    def test_reports_every_missing_field(self, engine, make_risk):
        risk = make_risk("assessment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, {}), ValidationError)
        assert set(err.details) == {
            "threat_description", "likelihood_score", "likelihood_rationale",
            "impact_score", "impact_rationale", "recommended_owner_id",
        }

    def test_invalid_likelihood(self, engine, make_risk, assessment_data):
        risk = make_risk("assessment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(likelihood_score="often")),
                    ValidationError)
        assert err.code == E.VALIDATION_INVALID

    def test_unknown_owner(self, engine, make_risk, assessment_data):
        risk = make_risk("assessment")
        _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(recommended_owner_id="ghost")),
              UnresolvedReference)

    def test_comma_separated_assets(self, engine, make_risk, assessment_data):
        risk = make_risk("assessment")
        risk = _ok(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(affected_assets="crm, erp")))
        assert risk.assessment.affected_assets == ["crm", "erp"]

    @pytest.mark.parametrize("value", [5, {"crm": True}, True])
    def test_assets_must_be_a_list(self, engine, make_risk, assessment_data, value):
        risk = make_risk("assessment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(affected_assets=value)),
                    ValidationError)
        assert err.code == E.VALIDATION_INVALID
        assert err.details == {"affected_assets": "must be a list"}

    @pytest.mark.parametrize("field,value", [
        ("threat_description", {"text": "Credential stuffing"}),
        ("vulnerabilities", ["weak passwords"]),
        ("likelihood_rationale", 4),
    ])
    def test_text_fields_must_be_strings(self, engine, make_risk, assessment_data, field, value):
        risk = make_risk("assessment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data(**{field: value})),
                    ValidationError)
        assert err.code == E.VALIDATION_INVALID
        assert err.details == {field: "must be a string"}
        assert engine.store.load(risk.id).assessment.status == "risk_assessor_analysis"

    def test_wrong_state(self, engine, make_risk, assessment_data):
        risk = make_risk("actual_risk")
        err = _fail(engine.execute(risk.id, A.SUBMIT_ASSESSMENT, assessment_data()), InvalidStateTransition)
        assert "no assessment" in err.message


class TestReviewAssessment:
    def test_approve_creates_treatment(self, engine, make_risk):
        risk = make_risk("grc_approval")
        risk = _ok(engine.execute(risk.id, A.APPROVE_ASSESSMENT, {"notes": "Agreed"}))
        assert risk.assessment.status == "done"
        assert risk.assessment.grc_review_notes == "Agreed"
        assert risk.status == "risk_analyzed"
        assert risk.risk_owner_id == "u-owner"
        t = risk.treatment
        assert t.status == "treatment_decision_review"
        assert t.risk_owner_id == "u-owner"
        assert t.grc_sme_id == "u-grc"
        assert derive_phase(risk) == WorkflowPhase.TREATMENT

    def test_approve_without_notes(self, engine, make_risk):
        risk = make_risk("grc_approval")
        _ok(engine.execute(risk.id, A.APPROVE_ASSESSMENT, None))

    def test_request_revision(self, engine, make_risk):
        risk = make_risk("grc_approval")
        risk = _ok(engine.execute(risk.id, A.REQUEST_REVISION, {"declined_reason": "Impact understated"}))
        assert risk.assessment.status == "grc_revision"
        assert risk.assessment.grc_declined_reason == "Impact understated"
        assert risk.treatment is None

    def test_request_revision_requires_reason(self, engine, make_risk):
        risk = make_risk("grc_approval")
        err = _fail(engine.execute(risk.id, A.REQUEST_REVISION, {}), ValidationError)
        assert err.details == {"declined_reason": "required"}

    def test_approve_from_wrong_state(self, engine, make_risk):
        risk = make_risk("assessment")
        _fail(engine.execute(risk.id, A.APPROVE_ASSESSMENT, {}), InvalidStateTransition)


class TestCompleteRevision:
    def _in_revision(self, engine, make_risk):
        risk = make_risk("grc_approval")
        return _ok(engine.execute(risk.id, A.REQUEST_REVISION, {"declined_reason": "Re-score impact"}))

    def test_patches_and_rescores(self, engine, make_risk):
        risk = self._in_revision(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.COMPLETE_REVISION, {
            "impact_score": "minor", "impact_rationale": "Only read-only accounts affected",
        }))
        a = risk.assessment
        assert a.status == "grc_approval"
        assert a.revision_count == 1
        assert a.impact_score == "minor"
        assert a.likelihood_score == "likely"
        assert a.threat_description.startswith("Credential stuffing")
        assert a.calculated_risk_score == "medium"
        assert risk.inherent_risk == "medium"

    def test_empty_patch_is_allowed(self, engine, make_risk):
        risk = self._in_revision(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.COMPLETE_REVISION, {}))
        assert risk.assessment.status == "grc_approval"

    def test_cannot_blank_required_field(self, engine, make_risk):
        risk = self._in_revision(engine, make_risk)
        err = _fail(engine.execute(risk.id, A.COMPLETE_REVISION, {"impact_rationale": ""}), ValidationError)
        assert "impact_rationale" in err.details

    def test_unknown_owner(self, engine, make_risk):
        risk = self._in_revision(engine, make_risk)
        _fail(engine.execute(risk.id, A.COMPLETE_REVISION, {"recommended_owner_id": "ghost"}),
              UnresolvedReference)

    def test_wrong_state(self, engine, make_risk):
        risk = make_risk("grc_approval")
        _fail(engine.execute(risk.id, A.COMPLETE_REVISION, {}), InvalidStateTransition)

    def test_partial_payload_tracks_supplied_fields(self):
        payload = AssessmentPayload.from_dict({"impact_score": "minor", "user_id": "x"})
        assert payload.supplied == frozenset({"impact_score"})

    def test_round_trip_matches_first_pass(self, engine, make_risk, assessment_data):
        first = make_risk("treatment")
        first_entry = (first.status, first.risk_owner_id, first.treatment.status,
                       first.treatment.risk_owner_id, first.treatment.grc_sme_id,
                       first.treatment.decision)

        revised = self._in_revision(engine, make_risk)
        _ok(engine.execute(revised.id, A.COMPLETE_REVISION, assessment_data()))
        revised = _ok(engine.execute(revised.id, A.APPROVE_ASSESSMENT, {}))
        revised_entry = (revised.status, revised.risk_owner_id, revised.treatment.status,
                         revised.treatment.risk_owner_id, revised.treatment.grc_sme_id,
                         revised.treatment.decision)

        assert revised_entry == first_entry
        assert derive_phase(revised) == derive_phase(first) == WorkflowPhase.TREATMENT


# ═══════════════════════════════════════════════════════════════════════════
# Treatment
# ═══════════════════════════════════════════════════════════════════════════


_DECISIONS = {
    "mitigate": {"mitigation_description": "Enforce MFA", "mitigation_target_date": "2026-12-31"},
    "accept": {"acceptance_rationale": "Cost exceeds exposure"},
    "transfer": {"transfer_to": "Cyber insurer", "transfer_cost": "12000"},
    "avoid": {"avoid_strategy": "Retire the legacy portal"},
}


def _treatment(decision, **extra):
    return {"decision": decision, "justification": "Board appetite", **_DECISIONS[decision], **extra}


# likely(4) x major(4) = 16 very_high; possible x major = 12 high;
# possible x moderate = 9 medium; unlikely x minor = 4 low; rare x minor = 2 very_low
_LEVEL_INPUTS = {
    "very_high": {"likelihood_score": "likely", "impact_score": "major"},
    "high": {"likelihood_score": "possible", "impact_score": "major"},
    "medium": {"likelihood_score": "possible", "impact_score": "moderate"},
    "low": {"likelihood_score": "unlikely", "impact_score": "minor"},
    "very_low": {"likelihood_score": "rare", "impact_score": "minor"},
}


class TestSubmitTreatment:
    @pytest.mark.parametrize("level", ["high", "very_high"])
    @pytest.mark.parametrize("decision", ["accept", "transfer", "avoid"])
    def test_escalation_law(self, engine, make_risk, level, decision):
        risk = make_risk("treatment", assessment=_LEVEL_INPUTS[level])
        assert risk.inherent_risk == level
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment(decision)))
        assert risk.treatment.status == "identify_executive_approver"
        assert risk.treatment.executive_approval_required is True
        assert risk.treatment.completed_at is None

    @pytest.mark.parametrize("level", ["very_low", "low", "medium", "high", "very_high"])
    def test_mitigate_never_escalates(self, engine, make_risk, level):
        risk = make_risk("treatment", assessment=_LEVEL_INPUTS[level])
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("mitigate")))
        t = risk.treatment
        assert t.status == "risk_mitigation_in_progress"
        assert t.mitigation_status == "on_track"
        assert t.mitigation_progress == 0
        assert t.mitigation_target_date.isoformat() == "2026-12-31"

    @pytest.mark.parametrize("decision,terminal", [
        ("accept", "risk_accept"), ("transfer", "risk_transfer"), ("avoid", "risk_avoid"),
    ])
    def test_medium_goes_to_matching_terminal(self, engine, make_risk, decision, terminal):
        risk = make_risk("treatment", assessment=_LEVEL_INPUTS["medium"])
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment(decision)))
        assert risk.treatment.status == terminal
        assert risk.treatment.completed_at is not None

    @pytest.mark.parametrize("level", ["low", "very_low"])
    @pytest.mark.parametrize("decision", ["accept", "transfer", "avoid"])
    def test_low_levels_auto_accept(self, engine, make_risk, level, decision):
        risk = make_risk("treatment", assessment=_LEVEL_INPUTS[level])
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment(decision)))
        assert risk.treatment.status == "risk_auto_accept"

    def test_transfer_cost_parsed(self, engine, make_risk):
        risk = make_risk("treatment", assessment=_LEVEL_INPUTS["medium"])
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("transfer")))
        assert risk.treatment.transfer_cost == 12000.0

    @pytest.mark.parametrize("decision,field", [
        ("mitigate", "mitigation_description"),
        ("accept", "acceptance_rationale"),
        ("transfer", "transfer_to"),
        ("avoid", "avoid_strategy"),
    ])
    def test_decision_specific_field_required(self, engine, make_risk, decision, field):
        risk = make_risk("treatment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment(decision, **{field: None})),
                    ValidationError)
        assert err.details == {field: "required"}

    def test_decision_and_justification_required(self, engine, make_risk):
        risk = make_risk("treatment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_TREATMENT, {}), ValidationError)
        assert set(err.details) == {"decision", "justification"}

    def test_unknown_decision(self, engine, make_risk):
        risk = make_risk("treatment")
        err = _fail(engine.execute(risk.id, A.SUBMIT_TREATMENT, {"decision": "ignore", "justification": "x"}),
                    ValidationError)
        assert err.code == E.VALIDATION_INVALID

    def test_bad_target_date(self, engine, make_risk):
        risk = make_risk("treatment")
        _fail(engine.execute(risk.id, A.SUBMIT_TREATMENT,
                             _treatment("mitigate", mitigation_target_date="next week")), ValidationError)

    def test_wrong_state(self, engine, make_risk):
        risk = make_risk("grc_approval")
        err = _fail(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("accept")), InvalidStateTransition)
        assert "no treatment" in err.message


def _escalated(engine, make_risk, decision="accept"):
    risk = make_risk("treatment")
    return _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment(decision)))


def _awaiting_executive(engine, make_risk, decision="accept"):
    risk = _escalated(engine, make_risk, decision)
    return _ok(engine.execute(risk.id, A.ASSIGN_APPROVER, {"executive_approver_id": "u-exec"}))


class TestExecutiveApproval:
    def test_assign_approver(self, engine, make_risk):
        risk = _awaiting_executive(engine, make_risk)
        t = risk.treatment
        assert t.status == "executive_approval"
        assert t.executive_approver_id == "u-exec"
        assert t.executive_approval_status == "pending"

    def test_assign_approver_required(self, engine, make_risk):
        risk = _escalated(engine, make_risk)
        _fail(engine.execute(risk.id, A.ASSIGN_APPROVER, {}), ValidationError)
        assert engine.store.load(risk.id).treatment.status == "identify_executive_approver"

    def test_assign_unknown_approver(self, engine, make_risk):
        risk = _escalated(engine, make_risk)
        _fail(engine.execute(risk.id, A.ASSIGN_APPROVER, {"executive_approver_id": "ghost"}),
              UnresolvedReference)
        t = engine.store.load(risk.id).treatment
        assert t.status == "identify_executive_approver"
        assert t.executive_approver_id is None

    def test_approver_must_be_assigned_first(self, engine, make_risk):
        risk = _escalated(engine, make_risk)
        _fail(engine.execute(risk.id, A.EXECUTIVE_APPROVE, {}), InvalidStateTransition)

    @pytest.mark.parametrize("decision,terminal", [
        ("accept", "risk_accept"), ("transfer", "risk_transfer"), ("avoid", "risk_avoid"),
    ])
    def test_approve_reaches_matching_terminal(self, engine, make_risk, decision, terminal):
        risk = _awaiting_executive(engine, make_risk, decision)
        risk = _ok(engine.execute(risk.id, A.EXECUTIVE_APPROVE, {"notes": "Within appetite"}))
        t = risk.treatment
        assert t.status == terminal
        assert t.executive_approval_status == "approved"
        assert t.executive_approval_notes == "Within appetite"
        assert t.executive_approved_at is not None

    def test_deny_returns_to_decision_review(self, engine, make_risk):
        risk = _awaiting_executive(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.EXECUTIVE_DENY, {"denied_reason": "insufficient budget"}))
        t = risk.treatment
        assert t.status == "treatment_decision_review"
        assert t.executive_approval_status == "denied"
        assert t.executive_denied_reason == "insufficient budget"
        assert t.decision is None

    def test_deny_requires_reason(self, engine, make_risk):
        risk = _awaiting_executive(engine, make_risk)
        err = _fail(engine.execute(risk.id, A.EXECUTIVE_DENY, {}), ValidationError)
        assert err.details == {"denied_reason": "required"}

    def test_resubmit_after_deny(self, engine, make_risk):
        risk = _awaiting_executive(engine, make_risk)
        _ok(engine.execute(risk.id, A.EXECUTIVE_DENY, {"denied_reason": "Mitigate instead"}))
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("mitigate")))
        assert risk.treatment.status == "risk_mitigation_in_progress"
        assert risk.treatment.executive_approver_id is None


class TestUpdateMitigation:
    def _mitigating(self, engine, make_risk):
        risk = make_risk("treatment")
        return _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("mitigate")))

    def test_progress_update(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.UPDATE_MITIGATION,
                                  {"status": "on_track", "progress": 40, "notes": "MFA pilot live"},
                                  user_id="u-owner"))
        t = risk.treatment
        assert t.status == "risk_mitigation_in_progress"
        assert t.mitigation_progress == 40
        assert t.mitigation_notes == "MFA pilot live"
        update = t.updates.first()
        assert update.update_type == "progress"
        assert update.previous_status == "on_track"
        assert update.created_by == "u-owner"

    @pytest.mark.parametrize("progress", [-1, 101, "lots", 12.5, True])
    def test_progress_bounds(self, engine, make_risk, progress):
        risk = self._mitigating(engine, make_risk)
        err = _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "on_track", "progress": progress}),
                    ValidationError)
        assert err.code == E.VALIDATION_INVALID

    def test_delay_moves_target_date(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.UPDATE_MITIGATION, {
            "status": "delayed", "new_target_date": "2027-03-31", "delay_reason": "Vendor slip",
        }))
        t = risk.treatment
        assert t.mitigation_status == "delayed"
        assert t.mitigation_target_date.isoformat() == "2027-03-31"
        assert t.updates.first().delay_reason == "Vendor slip"

    def test_delay_requires_date_and_reason(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        err = _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "delayed"}), ValidationError)
        assert set(err.details) == {"new_target_date", "delay_reason"}

    def test_cancel_returns_to_decision_review(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.UPDATE_MITIGATION, {
            "status": "cancelled", "cancellation_reason": "Project defunded", "progress": 30,
        }))
        t = risk.treatment
        assert t.status == "treatment_decision_review"
        assert t.mitigation_status == "cancelled"
        assert t.to_dict()["mitigation_progress"] is None
        assert t.decision == "mitigate"

    def test_new_decision_after_cancel(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        _ok(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "cancelled", "cancellation_reason": "Defunded"}))
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("avoid")))
        assert risk.treatment.decision == "avoid"
        entry = RiskHistory.query.filter_by(risk_id=risk.id, action="treatment_submitted") \
            .order_by(RiskHistory.id.desc()).first()
        assert entry.changes["decision"] == {"old": "mitigate", "new": "avoid"}

    def test_cancel_requires_reason(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "cancelled"}), ValidationError)

    def test_done_sets_residual(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        risk = _ok(engine.execute(risk.id, A.UPDATE_MITIGATION, {
            "status": "done", "residual_likelihood": "unlikely", "residual_impact": "minor",
            "completion_evidence": "MFA enforced for all accounts",
        }))
        t = risk.treatment
        assert t.status == "risk_mitigation_complete"
        assert t.mitigation_progress == 100
        assert t.residual_risk_score == "low"
        assert risk.residual_risk == "low"
        assert t.mitigation_actual_date is not None
        assert t.updates.first().update_type == "completion"

    def test_done_requires_residual_inputs(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        err = _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "done"}), ValidationError)
        assert set(err.details) == {"residual_likelihood", "residual_impact"}

    def test_unknown_status(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "paused"}), ValidationError)

    def test_no_updates_after_completion(self, engine, make_risk):
        risk = self._mitigating(engine, make_risk)
        _ok(engine.execute(risk.id, A.UPDATE_MITIGATION, {
            "status": "done", "residual_likelihood": "rare", "residual_impact": "minor",
        }))
        _fail(engine.execute(risk.id, A.UPDATE_MITIGATION, {"status": "on_track"}), InvalidStateTransition)


# ═══════════════════════════════════════════════════════════════════════════
# Role assignment
# ═══════════════════════════════════════════════════════════════════════════


class TestRoleAssignment:
    def test_reporter_always_assignable(self, engine, make_risk):
        risk = make_risk("treatment")
        risk = _ok(engine.execute(risk.id, A.ASSIGN_REPORTER, {"user_id": "u-assessor-2"}))
        assert risk.reporter_id == "u-assessor-2"

    def test_clear_role(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute(risk.id, A.ASSIGN_REPORTER, {"user_id": None}))
        assert risk.reporter_id is None

    def test_user_id_key_required(self, engine, make_risk):
        risk = make_risk()
        _fail(engine.execute(risk.id, A.ASSIGN_REPORTER, {}), ValidationError)

    def test_grc_sme_propagates_to_children(self, engine, make_risk):
        risk = make_risk("treatment")
        risk = _ok(engine.execute(risk.id, A.ASSIGN_GRC_SME, {"user_id": "u-assessor-2"}))
        assert risk.grc_sme_id == "u-assessor-2"
        assert risk.assessment.grc_sme_id == "u-assessor-2"
        assert risk.treatment.grc_sme_id == "u-assessor-2"

    @pytest.mark.parametrize("stage", ["identified", "actual_risk"])
    def test_assessor_in_early_intake(self, engine, make_risk, stage):
        risk = make_risk(stage)
        risk = _ok(engine.execute(risk.id, A.ASSIGN_ASSESSOR, {"user_id": "u-assessor-2"}))
        assert risk.risk_assessor_id == "u-assessor-2"

    def test_assessor_locked_once_assessment_started(self, engine, make_risk):
        risk = make_risk("assessment")
        _fail(engine.execute(risk.id, A.ASSIGN_ASSESSOR, {"user_id": "u-assessor-2"}), InvalidStateTransition)

    def test_owner_needs_assessment(self, engine, make_risk):
        risk = make_risk("actual_risk")
        _fail(engine.execute(risk.id, A.ASSIGN_OWNER, {"user_id": "u-owner"}), InvalidStateTransition)

    def test_owner_propagates_to_treatment(self, engine, make_risk):
        risk = make_risk("treatment")
        risk = _ok(engine.execute(risk.id, A.ASSIGN_OWNER, {"user_id": "u-assessor-2"}))
        assert risk.risk_owner_id == "u-assessor-2"
        assert risk.treatment.risk_owner_id == "u-assessor-2"

    def test_unknown_user(self, engine, make_risk):
        risk = make_risk()
        _fail(engine.execute(risk.id, A.ASSIGN_REPORTER, {"user_id": "ghost"}), UnresolvedReference)

    def test_execute_many_is_atomic(self, engine, make_risk):
        risk = make_risk("assessment")
        # Second command is ineligible once the assessment exists.
        _fail(engine.execute_many(risk.id, [
            (A.ASSIGN_REPORTER, {"user_id": "u-owner"}),
            (A.ASSIGN_ASSESSOR, {"user_id": "u-assessor-2"}),
        ]), InvalidStateTransition)
        assert engine.store.load(risk.id).reporter_id == "u-reporter"

    def test_execute_many_applies_all(self, engine, make_risk):
        risk = make_risk()
        risk = _ok(engine.execute_many(risk.id, [
            (A.ASSIGN_REPORTER, {"user_id": "u-owner"}),
            (A.ASSIGN_GRC_SME, {"user_id": "u-grc"}),
        ]))
        assert (risk.reporter_id, risk.grc_sme_id) == ("u-owner", "u-grc")


# ═══════════════════════════════════════════════════════════════════════════
# Cross-cutting properties
# ═══════════════════════════════════════════════════════════════════════════


class TestIdempotenceOfRejection:
    @pytest.mark.parametrize("stage,action,payload", [
        ("identified", A.VALIDATE, {"approved": True}),
        ("actual_risk", A.START_ASSESSMENT, {"risk_assessor_id": "u-assessor"}),
        ("grc_approval", A.APPROVE_ASSESSMENT, {}),
        ("grc_approval", A.REQUEST_REVISION, {"declined_reason": "x"}),
        ("treatment", A.SUBMIT_TREATMENT, _treatment("mitigate")),
    ])
    def test_second_call_rejected(self, engine, make_risk, stage, action, payload):
        risk = make_risk(stage)
        _ok(engine.execute(risk.id, action, payload))
        _fail(engine.execute(risk.id, action, payload), InvalidStateTransition)


class TestEngineErrors:
    def test_unknown_risk(self, engine, users):
        err = _fail(engine.execute(9999, A.VALIDATE, {"approved": True}), Exception)
        assert err.http_status == 404

    def test_unknown_action(self, engine, make_risk):
        risk = make_risk()
        err = _fail(engine.execute(risk.id, "escalate", {}), ValidationError)
        assert err.code == E.VALIDATION_INVALID

    @pytest.mark.parametrize("stage,action,payload,field", [
        ("identified", A.VALIDATE, {"approved": False, "reason": {"why": "duplicate"}}, "reason"),
        ("grc_approval", A.APPROVE_ASSESSMENT, {"notes": 7}, "notes"),
        ("grc_approval", A.REQUEST_REVISION, {"declined_reason": ["more evidence"]}, "declined_reason"),
        ("treatment", A.SUBMIT_TREATMENT, _treatment("mitigate", justification={"x": 1}), "justification"),
    ])
    def test_non_text_values_are_returned_as_errors(self, engine, make_risk, stage, action, payload, field):
        risk = make_risk(stage)
        version = risk.version
        err = _fail(engine.execute(risk.id, action, payload), ValidationError)
        assert err.http_status == 400
        assert err.details == {field: "must be a string"}
        assert engine.store.load(risk.id).version == version


class TestHistory:
    def test_each_transition_writes_history(self, engine, make_risk):
        risk = make_risk("treatment")
        actions = [h.action for h in RiskHistory.query.filter_by(risk_id=risk.id).order_by(RiskHistory.id)]
        assert actions == [
            "risk_submitted", "risk_validated", "assessment_started",
            "assessment_submitted", "assessment_approved",
        ]

    def test_history_records_actor_and_state(self, engine, make_risk):
        risk = make_risk()
        _ok(engine.execute(risk.id, A.VALIDATE, {"approved": False, "reason": "dup"}, user_id="u-grc"))
        h = risk.history.first()
        assert h.action == "risk_declined"
        assert h.changed_by == "u-grc"
        assert h.notes == "dup"
        assert h.changes["state"]["old"]["status"] == "risk_identified"
        assert h.changes["state"]["new"]["status"] == "not_a_risk"

    def test_rejection_writes_no_history(self, engine, make_risk):
        risk = make_risk()
        before = risk.history.count()
        _fail(engine.execute(risk.id, A.VALIDATE, {"approved": False}), ValidationError)
        assert engine.store.load(risk.id).history.count() == before

    def test_version_bumps_per_transition(self, engine, make_risk):
        risk = make_risk()
        assert risk.version == 1
        risk = _ok(engine.execute(risk.id, A.VALIDATE, {"approved": True}))
        assert risk.version == 2
        risk = _ok(engine.execute(risk.id, A.START_ASSESSMENT, {"risk_assessor_id": "u-assessor"}))
        assert risk.version == 3


class TestFullLifecycle:
    def test_escalated_accept_walk(self, engine, make_risk):
        risk = make_risk("treatment")
        risk = _ok(engine.execute(risk.id, A.SUBMIT_TREATMENT, _treatment("accept")))
        risk = _ok(engine.execute(risk.id, A.ASSIGN_APPROVER, {"executive_approver_id": "u-exec"}))
        risk = _ok(engine.execute(risk.id, A.EXECUTIVE_APPROVE, {}))
        assert risk.treatment.status == "risk_accept"
        assert derive_phase(risk) == WorkflowPhase.TREATMENT
