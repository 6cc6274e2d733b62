"""
Cardflow Core
Notifications Blueprint.

A recipient's in-app notifications (``X-User-ID`` is the recipient).
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from cardflow.blueprints import current_account_id, current_actor_id, page_args
from cardflow.services.notification import NotificationService

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")


@notifications_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications, newest first. ``?unread=true`` for unread only."""
    account_id = current_account_id()
    user_id = current_actor_id()
    limit, offset = page_args()
    unread_only = request.args.get("unread", "false").lower() == "true"

    items, total = NotificationService.list_for_recipient(
        account_id, user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(account_id, user_id),
    })


@notifications_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    count = NotificationService.unread_count(current_account_id(), current_actor_id())
    return jsonify({"unread_count": count})


@notifications_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(current_account_id(), current_actor_id(),
                                          notification_id)
    return jsonify(notif.to_dict())


@notifications_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_account_id(), current_actor_id())
    return jsonify({"marked_read": count})
