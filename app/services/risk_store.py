"""
Risk Store - load and persist a Risk aggregate.

The aggregate (Risk + Assessment + Treatment + history rows) is saved as one
unit. ``Risk.version`` is the SQLAlchemy version_id_col, so the UPDATE on
``risks`` is a compare-and-swap; a lost race surfaces as StaleDataError and
is reported as ConcurrentModification.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrentModification, NotFoundError, PersistenceError, ValidationError
from app.models import db
from app.models.risk import Risk
from app.utils.errors import E
from app.utils.helpers import parse_int

logger = logging.getLogger(__name__)


class RiskStore:
    """Session-backed repository for Risk aggregates."""

    def load(self, risk_id) -> Risk:
        risk = db.session.get(Risk, risk_id)
        if risk is None:
            raise NotFoundError("Risk", risk_id)
        return risk

    def check_version(self, risk: Risk, expected_version) -> None:
        """Reject a request that was prepared against an older version."""
        if expected_version is None:
            return
        try:
            expected_version = parse_int(expected_version, minimum=1)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid version: {exc}", {"version": str(exc)}, code=E.VALIDATION_INVALID,
            ) from None
        if expected_version != risk.version:
            raise ConcurrentModification(risk.id, expected_version, risk.version)

    def save(self, risk: Risk) -> Risk:
        """
        Commit the aggregate.

        The Risk row is always touched so its version increments even when
        only the assessment or treatment changed.
        """
        risk_id = risk.id
        expected = risk.version
        risk.updated_at = datetime.now(timezone.utc)
        try:
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.info(
                "Stale risk version at commit",
                extra={"risk_id": risk_id, "event_type": "risk.stale"},
            )
            raise ConcurrentModification(risk_id, expected) from None
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Database error saving risk",
                extra={"risk_id": risk_id, "event_type": "risk.save_failed"},
            )
            raise PersistenceError(risk_id) from None
        return risk

    def add(self, risk: Risk) -> Risk:
        """Persist a brand new Risk."""
        db.session.add(risk)
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Database error creating risk", extra={"event_type": "risk.create_failed"})
            raise PersistenceError() from None
        return risk

    def discard(self) -> None:
        """Drop uncommitted changes after a rejected transition."""
        db.session.rollback()
