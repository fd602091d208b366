"""
Notification feed blueprint.

Endpoints:
    GET   /api/v1/notifications?recipient=<user_id>   feed, newest first
    GET   /api/v1/notifications/unread-count          unread badge count
    PATCH /api/v1/notifications/<id>/read             mark one read
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.services.notification import NotificationService
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for one recipient."""
    recipient = request.args.get("recipient")
    if not recipient:
        return api_error(E.VALIDATION_REQUIRED, "recipient is required", details={"recipient": "required"})
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)

    items, total = NotificationService.list_for_recipient(
        recipient=recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def notification_unread_count():
    recipient = request.args.get("recipient")
    if not recipient:
        return api_error(E.VALIDATION_REQUIRED, "recipient is required", details={"recipient": "required"})
    return jsonify({"unread_count": NotificationService.unread_count(recipient)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())
