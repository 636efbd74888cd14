"""Annotation service: comment threads anchored to definitions.

Transaction policy: methods flush or execute within the current session,
never commit(). The route handler commits, so the lazily created thread
and its first comment land in one transaction.

Two addressing schemes:
- entity scope: (definition_id, optional slide_id)
- point scope:  (definition_id, bucket_type, bucket_value); a raw timestamp
  may stand in for bucket_value and is folded to its bucket start

Operations:
- get_entity_thread / get_point_thread: thread + first comment page,
  or an empty result when no thread exists yet
- post_entity_comment / post_point_comment: lazy thread creation
- list_point_threads: every point thread of a definition with comments
- count_point_comments / count_point_comments_for_definition /
  count_entity_comments: sparse count maps
- chart_buckets: bucket type and keys for a chart's raw timestamps
- edit_comment / delete_comment: author only; delete removes the reply subtree

Pagination is keyset-based on (created_at, id). Cursor format:
"<created_at epoch milliseconds>_<comment id>".
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import and_, delete, func, or_, select

from app.core.exceptions import PermissionDeniedError, ValidationError
from app.models import db
from app.models.annotation import (
    Comment,
    CommentThread,
    entity_scope_key,
    point_scope_key,
)
from app.models.workspace import Slide
from app.services.definition_service import get_definition
from app.services.time_buckets import (
    bucket_label,
    detect_bucket_type,
    normalize_to_bucket,
    validate_bucket_type,
)
from app.utils.helpers import db_execute, dialect_insert, get_or_raise

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

BUCKET_VALUE_MAX_LENGTH = 64


def _utcnow():
    return datetime.now(timezone.utc)


def _setting(key, default):
    return current_app.config.get(key, default)


# ── Validation ───────────────────────────────────────────────────────────────

def validate_body(body) -> str:
    """Trim and bound a comment body; raise ValidationError when unusable."""
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("Comment body is required", details={"body": "required"})
    body = body.strip()
    max_len = _setting("COMMENT_BODY_MAX_LENGTH", 10000)
    if len(body) > max_len:
        raise ValidationError(
            f"Comment body must be at most {max_len} characters", details={"body": "too long"},
        )
    return body


def _validate_bucket_value(bucket_value) -> str:
    if not isinstance(bucket_value, str) or not bucket_value.strip():
        raise ValidationError("bucket_value is required", details={"bucket_value": "required"})
    bucket_value = bucket_value.strip()
    if len(bucket_value) > BUCKET_VALUE_MAX_LENGTH:
        raise ValidationError("bucket_value is too long", details={"bucket_value": "too long"})
    return bucket_value


def _require_user(user_id) -> str:
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    return str(user_id)


def _page_limit(limit) -> int:
    default = _setting("COMMENT_PAGE_DEFAULT", 20)
    maximum = _setting("COMMENT_PAGE_MAX", 100)
    if limit is None or limit == "":
        return default
    try:
        limit = int(limit)
    except (TypeError, ValueError) as exc:
        raise ValidationError("limit must be an integer", details={"limit": str(limit)}) from exc
    return max(1, min(limit, maximum))


def _bounded_ids(values, field, maximum):
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{field} must be a list", details={field: "type"})
    unique = list(dict.fromkeys(str(v) for v in values if v))
    if len(unique) > maximum:
        raise ValidationError(
            f"{field} accepts at most {maximum} entries", details={field: len(unique)},
        )
    return unique


# ── Cursor ───────────────────────────────────────────────────────────────────

def encode_cursor(comment) -> str:
    created = comment.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return f"{(created - _EPOCH) // _ONE_MS}_{comment.id}"


def decode_cursor(cursor: str):
    """Return (created_at, comment_id) from a cursor string."""
    ms_part, sep, comment_id = (cursor or "").partition("_")
    if not sep or not comment_id:
        raise ValidationError("Malformed cursor", details={"cursor": cursor})
    try:
        ms = int(ms_part)
    except ValueError as exc:
        raise ValidationError("Malformed cursor", details={"cursor": cursor}) from exc
    return _EPOCH + timedelta(milliseconds=ms), comment_id


def _page_comments(thread_id, cursor=None, limit=None) -> dict:
    limit = _page_limit(limit)
    query = select(Comment).where(Comment.thread_id == thread_id)
    if cursor:
        created_at, comment_id = decode_cursor(cursor)
        query = query.where(or_(
            Comment.created_at > created_at,
            and_(Comment.created_at == created_at, Comment.id > comment_id),
        ))
    query = query.order_by(Comment.created_at.asc(), Comment.id.asc()).limit(limit + 1)
    rows = db_execute(query, "page_comments", thread_id=thread_id).scalars().all()

    has_more = len(rows) > limit
    rows = rows[:limit]
    return {
        "comments": [c.to_dict() for c in rows],
        "has_more": has_more,
        "next_cursor": encode_cursor(rows[-1]) if has_more and rows else None,
    }


def _empty_page() -> dict:
    return {"thread": None, "comments": [], "has_more": False, "next_cursor": None}


# ── Thread lookup / creation ────────────────────────────────────────────────

def _find_thread(definition_id, scope, scope_key):
    return db_execute(
        select(CommentThread).where(
            CommentThread.definition_id == definition_id,
            CommentThread.scope == scope,
            CommentThread.scope_key == scope_key,
        ).execution_options(populate_existing=True),
        "find_thread", definition_id=definition_id,
    ).scalar_one_or_none()


def _get_or_create_thread(definition, scope, scope_key, user_id, **attrs):
    """Insert the thread if its natural key is free, then load whichever row won.

    Returns:
        (thread, created)
    """
    now = _utcnow()
    stmt = dialect_insert(CommentThread).values(
        id=str(uuid.uuid4()),
        workspace_id=definition.workspace_id,
        definition_id=definition.id,
        scope=scope,
        scope_key=scope_key,
        is_resolved=False,
        created_by=user_id,
        created_at=now,
        updated_at=now,
        **attrs,
    ).on_conflict_do_nothing(index_elements=["definition_id", "scope", "scope_key"])
    result = db_execute(stmt, "create_thread", definition_id=definition.id)
    return _find_thread(definition.id, scope, scope_key), result.rowcount == 1


def _check_slide(slide_id, definition):
    """Slide must exist and belong to the definition's workspace."""
    if not slide_id:
        return
    slide = get_or_raise(Slide, slide_id, "Slide")
    if slide.workspace_id != definition.workspace_id:
        raise ValidationError(
            "Slide belongs to a different workspace", details={"slide_id": slide_id},
        )


def _point_bucket(bucket_type, bucket_value, timestamp=None) -> str:
    """Explicit bucket values are opaque; raw timestamps are folded to their bucket start."""
    validate_bucket_type(bucket_type)
    if (bucket_value is None or bucket_value == "") and timestamp not in (None, ""):
        return normalize_to_bucket(timestamp, bucket_type)
    return _validate_bucket_value(bucket_value)


def get_entity_thread(definition_id, slide_id=None, cursor=None, limit=None) -> dict:
    definition = get_definition(definition_id)
    _check_slide(slide_id, definition)
    thread = _find_thread(definition.id, "entity", entity_scope_key(slide_id))
    if thread is None:
        return _empty_page()
    return {"thread": thread.to_dict(), **_page_comments(thread.id, cursor, limit)}


def get_point_thread(definition_id, bucket_type, bucket_value, cursor=None, limit=None,
                     timestamp=None) -> dict:
    bucket_value = _point_bucket(bucket_type, bucket_value, timestamp)
    definition = get_definition(definition_id)
    thread = _find_thread(definition.id, "point", point_scope_key(bucket_type, bucket_value))
    if thread is None:
        return _empty_page()
    return {"thread": thread.to_dict(), **_page_comments(thread.id, cursor, limit)}


# ── Posting ──────────────────────────────────────────────────────────────────

def _post(definition, scope, scope_key, user_id, body, parent_id, **thread_attrs):
    existing = _find_thread(definition.id, scope, scope_key)
    if parent_id:
        parent = db.session.get(Comment, parent_id)
        if existing is None or parent is None or parent.thread_id != existing.id:
            raise ValidationError("Invalid parent comment", details={"parent_id": parent_id})

    if existing is not None:
        thread, created = existing, False
    else:
        thread, created = _get_or_create_thread(definition, scope, scope_key, user_id, **thread_attrs)

    comment = Comment(thread_id=thread.id, user_id=user_id, body=body, parent_id=parent_id or None)
    db.session.add(comment)
    thread.updated_at = _utcnow()
    db.session.flush()

    logger.info(
        "Comment posted on %s thread", scope,
        extra={"definition_id": definition.id, "thread_id": thread.id, "comment_id": comment.id},
    )
    return thread, comment, created


def post_entity_comment(definition_id, user_id, body, slide_id=None, parent_id=None, title=None):
    """Append a comment to the entity thread, creating the thread on first use.

    Returns:
        (thread, comment, thread_created)
    """
    user_id = _require_user(user_id)
    body = validate_body(body)
    definition = get_definition(definition_id)
    _check_slide(slide_id, definition)
    return _post(
        definition, "entity", entity_scope_key(slide_id), user_id, body, parent_id,
        slide_id=slide_id or None, title=(title or "").strip() or None,
    )


def post_point_comment(definition_id, bucket_type, bucket_value, user_id, body,
                       parent_id=None, timestamp=None):
    """Append a comment to the point thread for one bucket, creating it on first use.

    Pass either ``bucket_value`` as stored on the chart or the raw
    ``timestamp`` of the observation.

    Returns:
        (thread, comment, thread_created)
    """
    user_id = _require_user(user_id)
    body = validate_body(body)
    bucket_value = _point_bucket(bucket_type, bucket_value, timestamp)
    definition = get_definition(definition_id)
    return _post(
        definition, "point", point_scope_key(bucket_type, bucket_value), user_id, body, parent_id,
        bucket_type=bucket_type, bucket_value=bucket_value,
    )


def list_point_threads(definition_id, bucket_type=None, bucket_values=None) -> list[dict]:
    """All point threads of a definition with their comments in order."""
    definition = get_definition(definition_id)
    query = select(CommentThread).where(
        CommentThread.definition_id == definition.id,
        CommentThread.scope == "point",
    )
    if bucket_type is not None:
        validate_bucket_type(bucket_type)
        query = query.where(CommentThread.bucket_type == bucket_type)
    if bucket_values is not None:
        values = _bounded_ids(bucket_values, "bucket_values", _setting("COUNT_BATCH_MAX", 100))
        query = query.where(CommentThread.bucket_value.in_(values))
    query = query.order_by(CommentThread.bucket_type, CommentThread.bucket_value)
    threads = db_execute(query, "list_point_threads", definition_id=definition.id).scalars().all()
    if not threads:
        return []

    comments = db_execute(
        select(Comment)
        .where(Comment.thread_id.in_([t.id for t in threads]))
        .order_by(Comment.created_at.asc(), Comment.id.asc()),
        "list_point_comments", definition_id=definition.id,
    ).scalars().all()
    by_thread: dict[str, list] = {}
    for c in comments:
        by_thread.setdefault(c.thread_id, []).append(c.to_dict())

    return [
        {
            "thread": {**t.to_dict(), "bucket_label": bucket_label(t.bucket_value, t.bucket_type)},
            "comments": by_thread.get(t.id, []),
        }
        for t in threads
    ]


# ── Counts ───────────────────────────────────────────────────────────────────

def count_point_comments(definition_ids, bucket_type) -> dict:
    """Sparse {definition_id: {bucket_value: count}} for point threads.

    Definitions and buckets without comments are absent, not zero.
    """
    validate_bucket_type(bucket_type)
    ids = _bounded_ids(definition_ids, "definition_ids", _setting("COUNT_BATCH_MAX", 100))
    if not ids:
        return {}

    rows = db_execute(
        select(CommentThread.definition_id, CommentThread.bucket_value, func.count(Comment.id))
        .join(Comment, Comment.thread_id == CommentThread.id)
        .where(
            CommentThread.definition_id.in_(ids),
            CommentThread.scope == "point",
            CommentThread.bucket_type == bucket_type,
        )
        .group_by(CommentThread.definition_id, CommentThread.bucket_value),
        "count_point_comments",
    ).all()

    counts: dict[str, dict[str, int]] = {}
    for definition_id, bucket_value, count in rows:
        if count:
            counts.setdefault(definition_id, {})[bucket_value] = count
    return counts


def count_point_comments_for_definition(definition_id, bucket_type, bucket_values=None) -> dict:
    """Sparse {bucket_value: count} for one definition."""
    validate_bucket_type(bucket_type)
    definition = get_definition(definition_id)
    query = (
        select(CommentThread.bucket_value, func.count(Comment.id))
        .join(Comment, Comment.thread_id == CommentThread.id)
        .where(
            CommentThread.definition_id == definition.id,
            CommentThread.scope == "point",
            CommentThread.bucket_type == bucket_type,
        )
    )
    if bucket_values is not None:
        values = _bounded_ids(bucket_values, "bucket_values", _setting("COUNT_BATCH_MAX", 100))
        if not values:
            return {}
        query = query.where(CommentThread.bucket_value.in_(values))
    rows = db_execute(
        query.group_by(CommentThread.bucket_value),
        "count_point_comments_for_definition", definition_id=definition.id,
    ).all()
    return {bucket_value: count for bucket_value, count in rows if count}


def chart_buckets(timestamps, bucket_type=None):
    """Bucket type and distinct bucket values for a chart's raw x-axis timestamps.

    The bucket type is detected from the spacing of the points unless given.

    Returns:
        (bucket_type, [bucket_value, ...]) in first-seen order
    """
    if not isinstance(timestamps, (list, tuple)):
        raise ValidationError("timestamps must be a list", details={"timestamps": "type"})
    bucket_type = bucket_type or detect_bucket_type(timestamps)
    validate_bucket_type(bucket_type)
    values = [normalize_to_bucket(ts, bucket_type) for ts in timestamps]
    return bucket_type, list(dict.fromkeys(values))


def count_entity_comments(definition_ids) -> dict:
    """Sparse {definition_id: count} across entity threads."""
    ids = _bounded_ids(definition_ids, "definition_ids", _setting("COUNT_BATCH_MAX", 100))
    if not ids:
        return {}
    rows = db_execute(
        select(CommentThread.definition_id, func.count(Comment.id))
        .join(Comment, Comment.thread_id == CommentThread.id)
        .where(CommentThread.definition_id.in_(ids), CommentThread.scope == "entity")
        .group_by(CommentThread.definition_id),
        "count_entity_comments",
    ).all()
    return {definition_id: count for definition_id, count in rows if count}


# ── Mutation ─────────────────────────────────────────────────────────────────

def _owned_comment(comment_id, user_id, action) -> Comment:
    user_id = _require_user(user_id)
    comment = get_or_raise(Comment, comment_id, "Comment")
    if comment.user_id != user_id:
        logger.warning(
            "Comment %s denied", action,
            extra={"comment_id": comment.id, "thread_id": comment.thread_id},
        )
        raise PermissionDeniedError(action, "Comment", comment.id)
    return comment


def edit_comment(comment_id, user_id, body) -> Comment:
    """Replace the body of a comment owned by ``user_id``."""
    body = validate_body(body)
    comment = _owned_comment(comment_id, user_id, "edit")
    comment.body = body
    comment.updated_at = _utcnow()
    db.session.flush()
    return comment


def _reply_subtree(root_id) -> list[str]:
    """Ids of a comment and all its descendants, breadth-first."""
    collected = [root_id]
    frontier = [root_id]
    while frontier:
        frontier = db_execute(
            select(Comment.id).where(Comment.parent_id.in_(frontier)),
            "reply_subtree", comment_id=root_id,
        ).scalars().all()
        collected.extend(frontier)
    return collected


def delete_comment(comment_id, user_id) -> dict:
    """Delete a comment owned by ``user_id`` together with its whole reply subtree.

    Returns:
        {"deleted_ids": [...], "thread_id": ..., "definition_id": ...}
    """
    comment = _owned_comment(comment_id, user_id, "delete")
    thread = comment.thread
    deleted_ids = _reply_subtree(comment.id)

    comment_key = comment.id
    db_execute(
        delete(Comment).where(Comment.id.in_(deleted_ids)),
        "delete_comments", comment_id=comment_key,
    )
    thread.updated_at = _utcnow()
    db.session.flush()

    logger.info(
        "Deleted %d comment(s)", len(deleted_ids),
        extra={"comment_id": comment_key, "thread_id": thread.id, "definition_id": thread.definition_id},
    )
    return {"deleted_ids": deleted_ids, "thread_id": thread.id, "definition_id": thread.definition_id}
