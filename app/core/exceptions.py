"""
Workflow exception hierarchy.

Services raise these types; the risk workflow engine converts them into
returned ``(None, error)`` results so callers never need try/except around
a transition. Each error carries its machine-readable code and HTTP status,
so the blueprint renders every failure the same way.

Usage:
    from app.core.exceptions import ValidationError, InvalidStateTransition

    raise ValidationError("reason is required", details={"reason": "required"})
    raise InvalidStateTransition("validate", current="actual_risk", expected=["risk_identified"])
"""

from app.utils.errors import E


class WorkflowError(Exception):
    """Base class for every per-request rejection in the risk workflow.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured payload. For field validation, keys are
                 field names and values are error descriptions.
    """

    code = E.INTERNAL
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {
            "error": self.message,
            "code": self.code,
            "error_type": type(self).__name__,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(WorkflowError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Risk", "User").
        resource_id: The PK that was looked up.
    """

    code = E.NOT_FOUND
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when a required field is missing or a value is not allowed.

    Maps to HTTP 400. ``details`` holds one entry per offending field.
    """

    code = E.VALIDATION_REQUIRED
    http_status = 400

    def __init__(self, message: str, details: dict | None = None, *, code: str | None = None) -> None:
        super().__init__(message, details)
        if code:
            self.code = code


class InvalidStateTransition(WorkflowError):
    """Raised when an action is attempted from a state its precondition rejects.

    Also covers stale requests: once an action has been applied, repeating
    it finds the risk in the new state and lands here.
    """

    code = E.CONFLICT_STATE
    http_status = 409

    def __init__(self, action: str, current: str | None, expected: list[str] | None = None,
                 reason: str | None = None) -> None:
        self.action = action
        self.current_status = current
        self.expected = expected or []
        msg = f"Cannot '{action}' from status '{current}'"
        if reason:
            msg += f": {reason}"
        details = {"action": action, "current_status": current}
        if self.expected:
            details["expected_status"] = self.expected
        super().__init__(msg, details)


class ConcurrentModification(WorkflowError):
    """Raised when the risk changed between load and save.

    The caller should reload the risk and decide again; the engine never
    retries on its own.
    """

    code = E.CONFLICT_VERSION
    http_status = 409

    def __init__(self, risk_id: int, expected_version: int | None = None,
                 actual_version: int | None = None) -> None:
        self.risk_id = risk_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        details = {"risk_id": risk_id}
        if expected_version is not None:
            details["expected_version"] = expected_version
        if actual_version is not None:
            details["actual_version"] = actual_version
        super().__init__(f"Risk id={risk_id} was modified concurrently; reload and retry", details)


class PersistenceError(WorkflowError):
    """Raised when the database rejects a save for a reason other than a stale version."""

    code = E.DATABASE
    http_status = 500

    def __init__(self, risk_id: int | None = None) -> None:
        super().__init__("Database error while saving risk", {"risk_id": risk_id} if risk_id else None)


class UnresolvedReference(WorkflowError):
    """Raised when a user id supplied for a role is unknown or inactive."""

    code = E.VALIDATION_REFERENCE
    http_status = 422

    def __init__(self, field: str, user_id: str) -> None:
        self.field = field
        self.user_id = user_id
        super().__init__(
            f"User '{user_id}' for {field} could not be resolved",
            {field: f"unknown or inactive user '{user_id}'"},
        )
