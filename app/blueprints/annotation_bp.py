"""
Trendboard Annotation Service
Annotation blueprint: comment threads on definitions and data points.

Endpoints:
    GET/POST    /api/v1/definitions/<definition_id>/threads/entity
    GET/POST    /api/v1/definitions/<definition_id>/points
    POST        /api/v1/definitions/<definition_id>/points/counts
    POST        /api/v1/comments/counts
    PATCH/DELETE /api/v1/comments/<comment_id>

Writes require the X-User-Id header. Change events are published only
after the commit succeeds.
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_user_id, require_user
from app.blueprints import id_list, json_body, register_error_handlers
from app.core.exceptions import ValidationError
from app.models.annotation import THREAD_SCOPES
from app.services import annotation_service as svc
from app.services.change_feed import notify
from app.utils.helpers import db_commit

logger = logging.getLogger(__name__)

annotation_bp = Blueprint("annotation", __name__, url_prefix="/api/v1")
register_error_handlers(annotation_bp)


def _posted(thread, comment, created):
    db_commit("post_comment", thread_id=thread.id, comment_id=comment.id)
    notify(
        thread.definition_id, "comment.created",
        thread_id=thread.id, comment_id=comment.id, scope=thread.scope,
        bucket_type=thread.bucket_type, bucket_value=thread.bucket_value,
    )
    return jsonify({
        "thread": thread.to_dict(),
        "comment": comment.to_dict(),
        "thread_created": created,
    }), 201


# ═════════════════════════════════════════════════════════════════════════════
# Entity threads
# ═════════════════════════════════════════════════════════════════════════════

@annotation_bp.route("/definitions/<definition_id>/threads/entity", methods=["GET"])
def get_entity_thread(definition_id):
    """Query: slide_id?, cursor?, limit?"""
    page = svc.get_entity_thread(
        definition_id,
        slide_id=request.args.get("slide_id") or None,
        cursor=request.args.get("cursor") or None,
        limit=request.args.get("limit"),
    )
    return jsonify(page), 200


@annotation_bp.route("/definitions/<definition_id>/threads/entity", methods=["POST"])
@require_user
def post_entity_comment(definition_id):
    """Body: {body, slide_id?, parent_id?, title?}"""
    data = json_body()
    thread, comment, created = svc.post_entity_comment(
        definition_id, current_user_id(), data.get("body"),
        slide_id=data.get("slide_id"), parent_id=data.get("parent_id"), title=data.get("title"),
    )
    return _posted(thread, comment, created)


# ═════════════════════════════════════════════════════════════════════════════
# Point threads
# ═════════════════════════════════════════════════════════════════════════════

@annotation_bp.route("/definitions/<definition_id>/points", methods=["GET"])
def get_points(definition_id):
    """With bucket_value or timestamp: one thread page. Without: every point thread.

    Query: bucket_type?, bucket_value? or timestamp?, bucket_values? (comma list),
    cursor?, limit?
    """
    bucket_type = request.args.get("bucket_type") or None
    bucket_value = request.args.get("bucket_value")
    timestamp = request.args.get("timestamp")
    if bucket_value or timestamp:
        if not bucket_type:
            raise ValidationError("bucket_type is required", details={"bucket_type": "required"})
        page = svc.get_point_thread(
            definition_id, bucket_type, bucket_value,
            cursor=request.args.get("cursor") or None,
            limit=request.args.get("limit"),
            timestamp=timestamp,
        )
        return jsonify(page), 200

    values = request.args.get("bucket_values")
    threads = svc.list_point_threads(
        definition_id,
        bucket_type=bucket_type,
        bucket_values=id_list(values, "bucket_values") if values else None,
    )
    return jsonify({"threads": threads, "total": len(threads)}), 200


@annotation_bp.route("/definitions/<definition_id>/points", methods=["POST"])
@require_user
def post_point_comment(definition_id):
    """Body: {bucket_type, bucket_value | timestamp, body, parent_id?}"""
    data = json_body()
    thread, comment, created = svc.post_point_comment(
        definition_id, data.get("bucket_type"), data.get("bucket_value"),
        current_user_id(), data.get("body"),
        parent_id=data.get("parent_id"), timestamp=data.get("timestamp"),
    )
    return _posted(thread, comment, created)


@annotation_bp.route("/definitions/<definition_id>/points/counts", methods=["POST"])
def point_counts(definition_id):
    """Body: {bucket_type, bucket_values?} or {timestamps, bucket_type?}

    With ``timestamps`` (raw chart x values) the bucket type is detected
    unless given and the timestamps are folded to bucket values.
    → {bucket_type, counts: {bucket_value: n}}
    """
    data = json_body()
    bucket_type = data.get("bucket_type")
    values = data.get("bucket_values")
    if data.get("timestamps") is not None:
        bucket_type, values = svc.chart_buckets(data["timestamps"], bucket_type)
    counts = svc.count_point_comments_for_definition(
        definition_id, bucket_type,
        bucket_values=id_list(values, "bucket_values") if values is not None else None,
    )
    return jsonify({"bucket_type": bucket_type, "counts": counts}), 200


@annotation_bp.route("/comments/counts", methods=["POST"])
def batch_counts():
    """Sparse comment counts for many definitions.

    Body: {definition_ids, scope: "point" | "entity" (default point), bucket_type?}
    Point scope → {counts: {definition_id: {bucket_value: n}}}
    Entity scope → {counts: {definition_id: n}}
    """
    data = json_body()
    ids = id_list(data.get("definition_ids"), "definition_ids")
    scope = data.get("scope") or "point"
    if scope not in THREAD_SCOPES:
        raise ValidationError(f"Invalid scope: {scope}", details={"scope": scope})
    if scope == "entity":
        counts = svc.count_entity_comments(ids)
    else:
        counts = svc.count_point_comments(ids, data.get("bucket_type"))
    return jsonify({"counts": counts}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Comment edit / delete
# ═════════════════════════════════════════════════════════════════════════════

@annotation_bp.route("/comments/<comment_id>", methods=["PATCH"])
@require_user
def edit_comment(comment_id):
    """Body: {body}. Author only."""
    data = json_body()
    comment = svc.edit_comment(comment_id, current_user_id(), data.get("body"))
    thread = comment.thread
    db_commit("edit_comment", comment_id=comment.id, thread_id=thread.id)
    notify(thread.definition_id, "comment.updated", thread_id=thread.id, comment_id=comment.id)
    return jsonify(comment.to_dict()), 200


@annotation_bp.route("/comments/<comment_id>", methods=["DELETE"])
@require_user
def delete_comment(comment_id):
    """Author only; removes the comment and every reply below it."""
    result = svc.delete_comment(comment_id, current_user_id())
    db_commit("delete_comment", comment_id=comment_id, thread_id=result["thread_id"])
    notify(
        result["definition_id"], "comment.deleted",
        thread_id=result["thread_id"], deleted_ids=result["deleted_ids"],
    )
    return jsonify(result), 200
