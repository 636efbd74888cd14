"""
Trendboard Annotation Service
Follow-up blueprint: remediation items and as-of resolution views.

Endpoints:
    GET/POST          /api/v1/workspaces/<workspace_id>/follow-ups
    GET/PATCH/DELETE  /api/v1/follow-ups/<follow_up_id>
    GET               /api/v1/definitions/<definition_id>/follow-ups?slide_id=
    POST              /api/v1/slides/<slide_id>/follow-up-counts

Statuses from older clients (``backlog``, ``resolved``) are accepted and
mapped to the canonical vocabulary in the service layer.
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_user_id, require_user
from app.blueprints import id_list, json_body, register_error_handlers
from app.models.follow_up import FollowUp
from app.services import follow_up_service as svc
from app.services.change_feed import notify
from app.utils.helpers import db_commit, get_or_raise

logger = logging.getLogger(__name__)

follow_up_bp = Blueprint("follow_up", __name__, url_prefix="/api/v1")
register_error_handlers(follow_up_bp)


@follow_up_bp.route("/workspaces/<workspace_id>/follow-ups", methods=["GET"])
def list_follow_ups(workspace_id):
    """Query: status, priority, assignee_id, unassigned, overdue, slide_id,
    definition_id, search, as_of (slide id), sort, order, page, limit.
    """
    return jsonify(svc.list_follow_ups(workspace_id, request.args)), 200


@follow_up_bp.route("/workspaces/<workspace_id>/follow-ups", methods=["POST"])
@require_user
def create_follow_up(workspace_id):
    """Body: {title, description?, status?, priority?, due_date?, slide_id?,
    definition_id?, thread_id?, resolved_at_slide_id?, assignee_ids?}
    """
    follow_up = svc.create_follow_up(workspace_id, json_body(), current_user_id())
    db_commit("create_follow_up", workspace_id=workspace_id, follow_up_id=follow_up.id)
    notify(
        follow_up.definition_id, "follow_up.created",
        follow_up_id=follow_up.id, identifier=follow_up.identifier,
    )
    return jsonify(follow_up.to_dict()), 201


@follow_up_bp.route("/follow-ups/<follow_up_id>", methods=["GET"])
def get_follow_up(follow_up_id):
    return jsonify(get_or_raise(FollowUp, follow_up_id, "FollowUp").to_dict()), 200


@follow_up_bp.route("/follow-ups/<follow_up_id>", methods=["PATCH"])
@require_user
def update_follow_up(follow_up_id):
    """Partial update. ``current_slide_id`` names the snapshot being viewed;
    it becomes ``resolved_at_slide_id`` when the status moves to done.
    """
    data = json_body()
    current_slide_id = data.pop("current_slide_id", None)
    before = get_or_raise(FollowUp, follow_up_id, "FollowUp").definition_id
    follow_up = svc.update_follow_up(follow_up_id, data, current_slide_id=current_slide_id)
    db_commit("update_follow_up", follow_up_id=follow_up.id)
    for definition_id in {before, follow_up.definition_id}:
        notify(
            definition_id, "follow_up.updated",
            follow_up_id=follow_up.id, status=follow_up.status,
        )
    return jsonify(follow_up.to_dict()), 200


@follow_up_bp.route("/follow-ups/<follow_up_id>", methods=["DELETE"])
@require_user
def delete_follow_up(follow_up_id):
    info = svc.delete_follow_up(follow_up_id)
    db_commit("delete_follow_up", follow_up_id=follow_up_id)
    notify(info["definition_id"], "follow_up.deleted", follow_up_id=info["id"])
    return jsonify({"deleted": True, **info}), 200


@follow_up_bp.route("/definitions/<definition_id>/follow-ups", methods=["GET"])
def definition_follow_ups(definition_id):
    """Query: slide_id? → adds resolved/unresolved partitions as of that slide."""
    return jsonify(svc.list_for_definition(
        definition_id, slide_id=request.args.get("slide_id") or None,
    )), 200


@follow_up_bp.route("/slides/<slide_id>/follow-up-counts", methods=["POST"])
def unresolved_counts(slide_id):
    """Body: {definition_ids} → {counts: {definition_id: unresolved}} (sparse)."""
    data = json_body()
    counts = svc.count_unresolved(id_list(data.get("definition_ids"), "definition_ids"), slide_id)
    return jsonify({"counts": counts}), 200
