"""
Shared pytest fixtures for the risk workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - users: Directory users for every workflow role
    - engine: RiskWorkflowEngine wired to the real store / directory
    - make_risk: factory that drives a risk to a named workflow point
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import User
from app.services.risk_service import create_risk
from app.services.risk_workflow import RiskWorkflowEngine, WorkflowAction


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────

ROLE_USERS = {
    "reporter": "u-reporter",
    "grc": "u-grc",
    "assessor": "u-assessor",
    "assessor2": "u-assessor-2",
    "owner": "u-owner",
    "exec": "u-exec",
}


@pytest.fixture()
def users():
    """Active directory users keyed by role, plus one inactive user."""
    for role, uid in ROLE_USERS.items():
        _db.session.add(User(id=uid, email=f"{role}@example.com", full_name=role.title()))
    _db.session.add(User(id="u-gone", email="gone@example.com", status="inactive"))
    _db.session.commit()
    return dict(ROLE_USERS)


@pytest.fixture()
def engine():
    return RiskWorkflowEngine()


def _assessment_payload(**overrides):
    data = {
        "threat_description": "Credential stuffing against the customer portal",
        "affected_assets": ["customer-portal", "idp"],
        "existing_controls": ["rate limiting"],
        "likelihood_score": "likely",
        "likelihood_rationale": "Observed in peer organisations this quarter",
        "impact_score": "major",
        "impact_rationale": "Account takeover of paying customers",
        "recommended_owner_id": ROLE_USERS["owner"],
    }
    data.update(overrides)
    return data


@pytest.fixture()
def assessment_data():
    """Callable returning a complete submit_assessment payload."""
    return _assessment_payload


_STEPS = [
    ("actual_risk", WorkflowAction.VALIDATE, lambda: {"approved": True, "grc_sme_id": ROLE_USERS["grc"]}),
    ("assessment", WorkflowAction.START_ASSESSMENT, lambda: {"risk_assessor_id": ROLE_USERS["assessor"]}),
    ("grc_approval", WorkflowAction.SUBMIT_ASSESSMENT, _assessment_payload),
    ("treatment", WorkflowAction.APPROVE_ASSESSMENT, lambda: {"notes": "Looks right"}),
]


@pytest.fixture()
def make_risk(users, engine):
    """
    Create a risk and drive it forward.

    ``stage`` is one of: identified, actual_risk, assessment, grc_approval,
    treatment. ``assessment`` overrides the submitted assessment fields.
    """

    def _make(stage="identified", *, assessment=None, **risk_fields):
        data = {"title": "Portal credential stuffing", "reporter_id": users["reporter"]}
        data.update(risk_fields)
        risk = create_risk(data, user_id=users["reporter"])
        if stage == "identified":
            return risk
        for name, action, payload in _STEPS:
            body = payload()
            if action == WorkflowAction.SUBMIT_ASSESSMENT and assessment:
                body.update(assessment)
            risk, err = engine.execute(risk.id, action, body, user_id=users["grc"])
            assert err is None, err.to_dict()
            if name == stage:
                return risk
        raise ValueError(f"unknown stage {stage}")

    return _make
