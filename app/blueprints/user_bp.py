"""
User directory blueprint.

Endpoints:
    POST /api/v1/users           { email, full_name?, id?, job_title?, status? }
    GET  /api/v1/users           list (status filter)
    GET  /api/v1/users/<id>      single user
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import WorkflowError
from app.models import db
from app.services import user_service
from app.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

user_bp = Blueprint("users", __name__, url_prefix="/api/v1")


@user_bp.route("/users", methods=["POST"])
def create_user():
    data = request.get_json(silent=True) or {}
    try:
        user = user_service.create_user(
            data.get("email"),
            data.get("full_name"),
            user_id=data.get("id"),
            job_title=data.get("job_title"),
            status=data.get("status") or "active",
        )
        db.session.commit()
    except WorkflowError as err:
        db.session.rollback()
        return error_response(err)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database commit failed")
        return api_error(E.DATABASE, "Database error")
    return jsonify(user.to_dict()), 201


@user_bp.route("/users", methods=["GET"])
def list_users():
    users = user_service.list_users(status=request.args.get("status"))
    return jsonify({"items": [u.to_dict() for u in users], "total": len(users)})


@user_bp.route("/users/<user_id>", methods=["GET"])
def get_user(user_id):
    try:
        user = user_service.get_user(user_id)
    except WorkflowError as err:
        return error_response(err)
    return jsonify(user.to_dict())
