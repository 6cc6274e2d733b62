"""
Cardflow Core
Webhooks Blueprint.

Board-scoped webhook management and delivery history. The signing secret
is only returned by create and rotate-secret.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from cardflow.blueprints import current_account_id, json_body
from cardflow.services import webhook_service

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/v1")


def _error(err: dict):
    return jsonify({"error": err["error"]}), err.get("status", 400)


def _page() -> tuple[int, int]:
    return request.args.get("page", 1, type=int), request.args.get("per_page", 20, type=int)


@webhooks_bp.route("/boards/<int:board_id>/webhooks", methods=["GET"])
def list_webhooks(board_id):
    page, per_page = _page()
    return jsonify(webhook_service.list_webhooks(current_account_id(), board_id, page, per_page))


@webhooks_bp.route("/boards/<int:board_id>/webhooks", methods=["POST"])
def create_webhook(board_id):
    result, err = webhook_service.create_webhook(current_account_id(), board_id, json_body())
    if err:
        return _error(err)
    return jsonify(result), 201


@webhooks_bp.route("/webhooks/<int:webhook_id>", methods=["GET"])
def get_webhook(webhook_id):
    result, err = webhook_service.get_webhook(current_account_id(), webhook_id)
    if err:
        return _error(err)
    return jsonify(result)


@webhooks_bp.route("/webhooks/<int:webhook_id>", methods=["PUT"])
def update_webhook(webhook_id):
    result, err = webhook_service.update_webhook(current_account_id(), webhook_id, json_body())
    if err:
        return _error(err)
    return jsonify(result)


@webhooks_bp.route("/webhooks/<int:webhook_id>", methods=["DELETE"])
def delete_webhook(webhook_id):
    err = webhook_service.delete_webhook(current_account_id(), webhook_id)
    if err:
        return _error(err)
    return jsonify({"deleted": True, "id": webhook_id})


@webhooks_bp.route("/webhooks/<int:webhook_id>/activate", methods=["POST"])
def activate_webhook(webhook_id):
    """Reactivate a webhook; clears its failure streak."""
    result, err = webhook_service.activate_webhook(current_account_id(), webhook_id)
    if err:
        return _error(err)
    return jsonify(result)


@webhooks_bp.route("/webhooks/<int:webhook_id>/deactivate", methods=["POST"])
def deactivate_webhook(webhook_id):
    result, err = webhook_service.deactivate_webhook(current_account_id(), webhook_id)
    if err:
        return _error(err)
    return jsonify(result)


@webhooks_bp.route("/webhooks/<int:webhook_id>/rotate-secret", methods=["POST"])
def rotate_secret(webhook_id):
    result, err = webhook_service.rotate_secret(current_account_id(), webhook_id)
    if err:
        return _error(err)
    return jsonify(result)


@webhooks_bp.route("/webhooks/<int:webhook_id>/deliveries", methods=["GET"])
def list_deliveries(webhook_id):
    page, per_page = _page()
    result, err = webhook_service.list_deliveries(current_account_id(), webhook_id,
                                                  page, per_page)
    if err:
        return _error(err)
    return jsonify(result)
