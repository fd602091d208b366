"""
User Directory Service - create users and resolve role references.

The risk workflow only needs ``resolve()``: a role id is valid when it names
an active user. Directory maintenance (create / list) backs the /users API.
"""

import logging

from email_validator import EmailNotValidError, validate_email

from app.core.exceptions import NotFoundError, UnresolvedReference, ValidationError
from app.models import db
from app.models.auth import USER_STATUSES, User
from app.utils.errors import E

logger = logging.getLogger(__name__)


class UserDirectory:
    """Resolves user identifiers against the ``users`` table."""

    def get(self, user_id):
        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    def resolve(self, user_id):
        """Return the active User for ``user_id`` or None."""
        user = self.get(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def require(self, field: str, user_id: str) -> User:
        """Resolve ``user_id`` or raise UnresolvedReference naming ``field``."""
        user = self.resolve(user_id)
        if user is None:
            raise UnresolvedReference(field, user_id)
        return user


# ═══════════════════════════════════════════════════════════════
# User CRUD
# ═══════════════════════════════════════════════════════════════
def create_user(
    email: str,
    full_name: str = None,
    *,
    user_id: str = None,
    job_title: str = None,
    status: str = "active",
) -> User:
    """Create a directory user. Flushes, caller commits."""
    try:
        valid = validate_email(email or "", check_deliverability=False)
        email = valid.normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", {"email": str(e)}, code=E.VALIDATION_INVALID)

    if status not in USER_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'",
            {"status": f"must be one of {sorted(USER_STATUSES)}"},
            code=E.VALIDATION_INVALID,
        )

    if User.query.filter_by(email=email).first():
        raise ValidationError(
            f"User with email {email} already exists",
            {"email": "duplicate"},
            code=E.VALIDATION_INVALID,
        )
    if user_id and db.session.get(User, str(user_id)):
        raise ValidationError(
            f"User id {user_id} already exists",
            {"id": "duplicate"},
            code=E.VALIDATION_INVALID,
        )

    user = User(
        email=email,
        full_name=full_name,
        job_title=job_title,
        status=status,
    )
    if user_id:
        user.id = str(user_id)
    db.session.add(user)
    db.session.flush()
    logger.info("User created", extra={"event_type": "user.create"})
    return user


def get_user(user_id: str) -> User:
    user = db.session.get(User, str(user_id))
    if not user:
        raise NotFoundError("User", user_id)
    return user


def list_users(status: str = None) -> list[User]:
    q = User.query
    if status:
        q = q.filter_by(status=status)
    return q.order_by(User.email).all()
