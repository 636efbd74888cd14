"""Follow-up service: remediation items and their as-of resolution.

Transaction policy: methods flush within the current session, never
commit(). Creation is the exception in shape only: each identifier
attempt runs inside a SAVEPOINT so a lost race rolls back just that
attempt and the caller's outer transaction survives.

Operations:
- create_follow_up: sequential FU-### identifier, bounded retry on collision
- update_follow_up: field edits + status side effects
- delete_follow_up
- classify_as_of / partition_as_of: resolution relative to a snapshot date
- list_follow_ups: workspace list with filters, sort, paging, optional as-of
- list_for_definition: per-definition view partitioned as of a slide
- count_unresolved: sparse {definition_id: n} as of a slide
"""
import logging
import math
import random
import re
import time
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictExhaustedError, ValidationError
from app.models import db
from app.models.annotation import CommentThread
from app.models.definition import SubmetricDefinition
from app.models.follow_up import (
    FOLLOW_UP_PRIORITIES,
    IDENTIFIER_PREFIX,
    PRIORITY_RANK,
    RESOLVED_STATUS,
    TERMINAL_STATUSES,
    FollowUp,
    FollowUpAssignee,
    canonical_status,
)
from app.models.workspace import Slide, Workspace
from app.services.definition_service import get_definition
from app.utils.helpers import get_or_raise, parse_date, parse_date_input

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000

_IDENTIFIER_RE = re.compile(rf"^{IDENTIFIER_PREFIX}-(\d+)$")

SORT_FIELDS = {
    "created_at": FollowUp.created_at,
    "updated_at": FollowUp.updated_at,
    "title": FollowUp.title,
    "status": FollowUp.status,
    "identifier": FollowUp.identifier,
}


def _utcnow():
    return datetime.now(timezone.utc)


def _setting(key, default):
    return current_app.config.get(key, default)


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════

def _validate_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required", details={"title": "required"})
    title = title.strip()
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(
            f"title must be at most {TITLE_MAX_LENGTH} characters", details={"title": "too long"},
        )
    return title


def _validate_description(description):
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValidationError("description must be a string", details={"description": "type"})
    description = description.strip()
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            details={"description": "too long"},
        )
    return description or None


def _validate_status(value) -> str:
    status = canonical_status(value)
    if status is None:
        raise ValidationError(f"Invalid status: {value}", details={"status": value})
    return status


def _validate_priority(value) -> str:
    priority = str(value or "").strip().lower()
    if priority not in FOLLOW_UP_PRIORITIES:
        raise ValidationError(f"Invalid priority: {value}", details={"priority": value})
    return priority


def _validate_assignees(values) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ValidationError("assignee_ids must be a list", details={"assignee_ids": "type"})
    return list(dict.fromkeys(str(v).strip() for v in values if v and str(v).strip()))


def _workspace_ref(model, pk, workspace_id, label):
    """Resolve an optional reference, enforcing workspace ownership."""
    if not pk:
        return None
    obj = get_or_raise(model, pk, label)
    if obj.workspace_id != workspace_id:
        raise ValidationError(
            f"{label} belongs to a different workspace", details={"workspace_id": obj.workspace_id},
        )
    return obj.id


def _slide_ref(slide_id, workspace_id, label="Slide"):
    return _workspace_ref(Slide, slide_id, workspace_id, label)


# ═════════════════════════════════════════════════════════════════════════════
# Identifier sequence & creation
# ═════════════════════════════════════════════════════════════════════════════

def _next_identifier(workspace_id) -> str:
    """FU-### one past the highest numeric suffix used in the workspace."""
    identifiers = db.session.execute(
        select(FollowUp.identifier).where(FollowUp.workspace_id == workspace_id)
    ).scalars()
    highest = 0
    for identifier in identifiers:
        match = _IDENTIFIER_RE.match(identifier or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{IDENTIFIER_PREFIX}-{highest + 1:03d}"


def _is_identifier_conflict(exc: IntegrityError) -> bool:
    return "identifier" in str(exc.orig).lower()


def create_follow_up(workspace_id, data, user_id) -> FollowUp:
    """Create a follow-up with the next free identifier in the workspace.

    Two concurrent creators can compute the same identifier; the unique
    constraint rejects the loser, whose attempt is rolled back to its
    savepoint and retried after a short random backoff.

    Raises:
        ValidationError: bad field values or cross-workspace references.
        NotFoundError: unknown workspace or referenced row.
        ConflictExhaustedError: every attempt collided.
    """
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    get_or_raise(Workspace, workspace_id, "Workspace")

    title = _validate_title(data.get("title"))
    description = _validate_description(data.get("description"))
    status = _validate_status(data.get("status") or "todo")
    priority = _validate_priority(data.get("priority") or "no_priority")
    due_date = parse_date_input(data.get("due_date"), "due_date")
    assignee_ids = _validate_assignees(data.get("assignee_ids"))

    slide_id = _slide_ref(data.get("slide_id"), workspace_id)
    resolved_at_slide_id = _slide_ref(data.get("resolved_at_slide_id"), workspace_id)
    definition_id = _workspace_ref(
        SubmetricDefinition, data.get("definition_id"), workspace_id, "Definition",
    )
    thread_id = _workspace_ref(CommentThread, data.get("thread_id"), workspace_id, "CommentThread")

    attempts = _setting("FOLLOW_UP_IDENTIFIER_ATTEMPTS", 5)
    backoff_max = _setting("FOLLOW_UP_RETRY_BACKOFF_MAX", 0.1)

    for attempt in range(1, attempts + 1):
        identifier = _next_identifier(workspace_id)
        follow_up = FollowUp(
            identifier=identifier,
            workspace_id=workspace_id,
            title=title,
            description=description,
            slide_id=slide_id,
            definition_id=definition_id,
            thread_id=thread_id,
            resolved_at_slide_id=resolved_at_slide_id,
            status=status,
            priority=priority,
            created_by=str(user_id),
            due_date=due_date,
            completed_at=_utcnow() if status == RESOLVED_STATUS else None,
        )
        follow_up.assignees = [FollowUpAssignee(user_id=uid) for uid in assignee_ids]
        try:
            with db.session.begin_nested():
                db.session.add(follow_up)
                db.session.flush()
        except IntegrityError as exc:
            if not _is_identifier_conflict(exc):
                raise
            logger.info(
                "Follow-up identifier %s taken (attempt %d/%d)", identifier, attempt, attempts,
                extra={"workspace_id": workspace_id},
            )
            if attempt < attempts and backoff_max:
                time.sleep(random.uniform(0, backoff_max))
            continue

        logger.info(
            "Follow-up %s created", identifier,
            extra={"workspace_id": workspace_id, "follow_up_id": follow_up.id},
        )
        return follow_up

    logger.warning(
        "Follow-up identifier retries exhausted after %d attempts", attempts,
        extra={"workspace_id": workspace_id},
    )
    raise ConflictExhaustedError(resource="FollowUp", field="identifier", attempts=attempts)


# ═════════════════════════════════════════════════════════════════════════════
# Update & delete
# ═════════════════════════════════════════════════════════════════════════════

def update_follow_up(follow_up_id, data, current_slide_id=None) -> FollowUp:
    """Apply a partial update.

    ``current_slide_id`` is the snapshot the user is looking at. Moving to
    ``done`` records it as ``resolved_at_slide_id`` unless the payload sets
    that field explicitly.
    """
    follow_up = get_or_raise(FollowUp, follow_up_id, "FollowUp")
    workspace_id = follow_up.workspace_id

    if "title" in data:
        follow_up.title = _validate_title(data["title"])
    if "description" in data:
        follow_up.description = _validate_description(data["description"])
    if "priority" in data:
        follow_up.priority = _validate_priority(data["priority"])
    if "due_date" in data:
        follow_up.due_date = parse_date_input(data["due_date"], "due_date")
    if "slide_id" in data:
        follow_up.slide_id = _slide_ref(data["slide_id"], workspace_id)
    if "definition_id" in data:
        follow_up.definition_id = _workspace_ref(
            SubmetricDefinition, data["definition_id"], workspace_id, "Definition",
        )
    if "thread_id" in data:
        follow_up.thread_id = _workspace_ref(
            CommentThread, data["thread_id"], workspace_id, "CommentThread",
        )

    explicit_resolved_at = "resolved_at_slide_id" in data
    if explicit_resolved_at:
        follow_up.resolved_at_slide_id = _slide_ref(data["resolved_at_slide_id"], workspace_id)

    if "status" in data:
        old_status = follow_up.status
        new_status = _validate_status(data["status"])
        if new_status != old_status:
            if new_status == RESOLVED_STATUS:
                follow_up.completed_at = _utcnow()
                if current_slide_id and not explicit_resolved_at:
                    follow_up.resolved_at_slide_id = _slide_ref(
                        current_slide_id, workspace_id, "Current slide",
                    )
            elif new_status not in TERMINAL_STATUSES:
                follow_up.completed_at = None
                if old_status in TERMINAL_STATUSES and not explicit_resolved_at:
                    follow_up.resolved_at_slide_id = None
            follow_up.status = new_status

    if "assignee_ids" in data:
        wanted = _validate_assignees(data["assignee_ids"])
        existing = {a.user_id: a for a in follow_up.assignees}
        follow_up.assignees = [existing.get(uid) or FollowUpAssignee(user_id=uid) for uid in wanted]

    follow_up.updated_at = _utcnow()
    db.session.flush()
    # Joined slide relationships must reflect the new foreign keys
    db.session.refresh(follow_up)
    return follow_up


def delete_follow_up(follow_up_id) -> dict:
    follow_up = get_or_raise(FollowUp, follow_up_id, "FollowUp")
    info = {"id": follow_up.id, "identifier": follow_up.identifier, "definition_id": follow_up.definition_id}
    db.session.delete(follow_up)
    db.session.flush()
    return info


# ═════════════════════════════════════════════════════════════════════════════
# As-of resolution
# ═════════════════════════════════════════════════════════════════════════════

def classify_as_of(follow_up, reference_date) -> bool:
    """True when the follow-up counts as resolved at ``reference_date``.

    Resolved means status ``done`` AND the snapshot it was resolved at is
    dated on or before the reference. Missing or unparseable dates on
    either side classify as unresolved.
    """
    if follow_up.status != RESOLVED_STATUS:
        return False
    reference = parse_date(reference_date)
    if reference is None:
        return False
    resolved_slide = follow_up.resolved_at_slide
    resolved_on = parse_date(resolved_slide.slide_date) if resolved_slide else None
    if resolved_on is None:
        return False
    return resolved_on <= reference


def partition_as_of(follow_ups, reference_date):
    """Split into (resolved, unresolved) lists, preserving input order."""
    resolved, unresolved = [], []
    for follow_up in follow_ups:
        (resolved if classify_as_of(follow_up, reference_date) else unresolved).append(follow_up)
    return resolved, unresolved


def _existed_as_of(reference: date | None):
    """SQL predicate keeping follow-ups raised on or before ``reference``.

    Undated and slide-less follow-ups are always kept.
    """
    if reference is None:
        return None
    later = select(Slide.id).where(Slide.slide_date > reference)
    return or_(FollowUp.slide_id.is_(None), FollowUp.slide_id.not_in(later))


def _reference_slide(slide_id, workspace_id=None):
    slide = get_or_raise(Slide, slide_id, "Slide")
    if workspace_id is not None and slide.workspace_id != workspace_id:
        raise ValidationError("Slide belongs to a different workspace", details={"slide_id": slide_id})
    return slide


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def _truthy(value) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes"}


def _int_param(params, key, default):
    raw = params.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer", details={key: str(raw)}) from exc


def _order_by(sort, order):
    descending = str(order or "desc").lower() != "asc"
    sort = sort or "created_at"
    if sort == "priority":
        column = case(PRIORITY_RANK, value=FollowUp.priority, else_=len(PRIORITY_RANK))
    elif sort == "due_date":
        column = FollowUp.due_date
        direction = column.desc() if descending else column.asc()
        return [FollowUp.due_date.is_(None), direction, FollowUp.id]
    elif sort in SORT_FIELDS:
        column = SORT_FIELDS[sort]
    else:
        raise ValidationError(f"Invalid sort field: {sort}", details={"sort": sort})
    return [column.desc() if descending else column.asc(), FollowUp.id]


def list_follow_ups(workspace_id, params) -> dict:
    """Workspace follow-up list.

    ``params`` is a mapping of query arguments (status, priority,
    assignee_id, unassigned, overdue, slide_id, definition_id, search,
    as_of, sort, order, page, limit). With ``as_of`` (a slide id) the list
    is pre-filtered to follow-ups that existed at that snapshot and each
    item carries ``resolved_as_of``.
    """
    get_or_raise(Workspace, workspace_id, "Workspace")
    stmt = select(FollowUp).where(FollowUp.workspace_id == workspace_id)

    if params.get("status"):
        stmt = stmt.where(FollowUp.status == _validate_status(params["status"]))
    if params.get("priority"):
        stmt = stmt.where(FollowUp.priority == _validate_priority(params["priority"]))
    if params.get("assignee_id"):
        ids = [s.strip() for s in str(params["assignee_id"]).split(",") if s.strip()]
        stmt = stmt.where(FollowUp.assignees.any(FollowUpAssignee.user_id.in_(ids)))
    if _truthy(params.get("unassigned", "")):
        stmt = stmt.where(~FollowUp.assignees.any())
    if _truthy(params.get("overdue", "")):
        stmt = stmt.where(
            FollowUp.due_date.is_not(None),
            FollowUp.due_date < date.today(),
            FollowUp.status.not_in(TERMINAL_STATUSES),
        )
    if params.get("slide_id"):
        stmt = stmt.where(FollowUp.slide_id == params["slide_id"])
    if params.get("definition_id"):
        stmt = stmt.where(FollowUp.definition_id == params["definition_id"])
    if params.get("search"):
        term = str(params["search"]).strip()
        stmt = stmt.where(or_(
            FollowUp.title.icontains(term, autoescape=True),
            FollowUp.description.icontains(term, autoescape=True),
            FollowUp.identifier.icontains(term, autoescape=True),
        ))

    reference = None
    if params.get("as_of"):
        reference = _reference_slide(params["as_of"], workspace_id).slide_date
        existed = _existed_as_of(reference)
        if existed is not None:
            stmt = stmt.where(existed)

    limit = max(1, min(
        _int_param(params, "limit", _setting("FOLLOW_UP_PAGE_DEFAULT", 20)),
        _setting("FOLLOW_UP_PAGE_MAX", 100),
    ))
    page = max(1, _int_param(params, "page", 1))

    total = db.session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    rows = db.session.execute(
        stmt.order_by(*_order_by(params.get("sort"), params.get("order")))
        .offset((page - 1) * limit).limit(limit)
    ).unique().scalars().all()

    items = []
    for follow_up in rows:
        item = follow_up.to_dict()
        if params.get("as_of"):
            item["resolved_as_of"] = classify_as_of(follow_up, reference)
        items.append(item)

    total_pages = math.ceil(total / limit) if total else 0
    return {
        "follow_ups": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_more": page < total_pages,
        },
    }


def list_for_definition(definition_id, slide_id=None) -> dict:
    """Follow-ups of one definition; partitioned when a slide is given."""
    definition = get_definition(definition_id)
    stmt = (
        select(FollowUp)
        .where(FollowUp.definition_id == definition.id)
        .order_by(FollowUp.created_at.desc(), FollowUp.id)
    )
    if slide_id is None:
        follow_ups = db.session.execute(stmt).unique().scalars().all()
        return {"follow_ups": [f.to_dict() for f in follow_ups], "count": len(follow_ups)}

    reference = _reference_slide(slide_id, definition.workspace_id).slide_date
    existed = _existed_as_of(reference)
    if existed is not None:
        stmt = stmt.where(existed)
    follow_ups = db.session.execute(stmt).unique().scalars().all()
    resolved, unresolved = partition_as_of(follow_ups, reference)
    return {
        "follow_ups": [f.to_dict() for f in follow_ups],
        "count": len(follow_ups),
        "as_of": reference.isoformat() if reference else None,
        "resolved": [f.to_dict() for f in resolved],
        "unresolved": [f.to_dict() for f in unresolved],
        "resolved_count": len(resolved),
        "unresolved_count": len(unresolved),
    }


def count_unresolved(definition_ids, slide_id) -> dict:
    """Sparse {definition_id: unresolved count} as of ``slide_id``."""
    if not isinstance(definition_ids, (list, tuple)):
        raise ValidationError("definition_ids must be a list", details={"definition_ids": "type"})
    ids = list(dict.fromkeys(str(v) for v in definition_ids if v))
    maximum = _setting("COUNT_BATCH_MAX", 100)
    if len(ids) > maximum:
        raise ValidationError(
            f"definition_ids accepts at most {maximum} entries", details={"definition_ids": len(ids)},
        )
    if not ids:
        return {}

    reference = _reference_slide(slide_id).slide_date
    stmt = select(FollowUp).where(FollowUp.definition_id.in_(ids))
    existed = _existed_as_of(reference)
    if existed is not None:
        stmt = stmt.where(existed)

    counts: dict[str, int] = {}
    for follow_up in db.session.execute(stmt).unique().scalars():
        if not classify_as_of(follow_up, reference):
            counts[follow_up.definition_id] = counts.get(follow_up.definition_id, 0) + 1
    return counts
