"""
GRC Risk Workflow Service
User directory model.

Risk role fields (reporter, GRC SME, assessor, owner, executive approver)
hold these ids as weak references: lookup only, no foreign keys.
"""

import uuid
from datetime import datetime, timezone

from app.models import db

USER_STATUSES = {"active", "invited", "inactive", "suspended"}


def _uuid():
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(64), primary_key=True, default=_uuid)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    job_title = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, invited, inactive, suspended
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_users_email", "email"),
    )

    @property
    def is_active(self):
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "job_title": self.job_title,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
