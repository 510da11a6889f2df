"""
Sales Project Workflow Platform
Notification Blueprint — read side of stored workflow notifications.

Provides:
    - Inbox listing per recipient module (with 'all' broadcasts)
    - Unread count
    - Mark one / mark all as read
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from salesflow.models import db
from salesflow.models.notification import Notification
from salesflow.services.notification import NotificationService
from salesflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for ?recipient=<module>, newest first."""
    recipient = request.args.get("recipient", "all")
    unread_only = request.args.get("unread_only", "false").lower() in ("1", "true", "yes")
    entity_id = request.args.get("entity_id", type=int)
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = NotificationService.list_for_recipient(
        recipient=recipient, entity_id=entity_id, unread_only=unread_only,
        limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    recipient = request.args.get("recipient", "all")
    return jsonify({"recipient": recipient, "unread": NotificationService.unread_count(recipient)})


@notification_bp.route("/notifications/<int:nid>", methods=["GET"])
def get_notification(nid):
    """Get a single notification by ID."""
    notif = db.session.get(Notification, nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH", "POST"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    data = request.get_json(silent=True) or {}
    recipient = data.get("recipient", "all")
    count = NotificationService.mark_all_read(recipient)
    logger.info("Notifications marked read", extra={"recipient": recipient, "count": count})
    return jsonify({"marked_read": count})
