"""Re-key legacy submetric definitions to their canonical identity key.

Early ingestion derived ``submetric_key`` from the metric name alone, so
"[Nike] - Sales" and "[Adidas] - Sales" collapsed onto one definition and
shared comment threads. The canonical key folds the category in:

    category + metric_name → derive_from_category_and_name
    legacy "[Category] - Name" label → derive_from_label

Rows whose stored key differs are either renamed in place, or, when the
canonical row already exists, merged into it: submetrics, follow-ups and
threads are repointed and the legacy row deleted. Point/entity threads
that collide on the target's natural key have their comments moved into
the target thread.

Run through ``flask backfill-submetric-keys`` or
``scripts/backfill_submetric_keys.py``; both default to a dry run.
"""
import logging

from sqlalchemy import func, select, update

from app.models import db
from app.models.annotation import Comment, CommentThread
from app.models.definition import Submetric, SubmetricDefinition
from app.models.follow_up import FollowUp
from app.services.definition_service import find_definition
from app.services.key_derivation import (
    derive_from_category_and_name,
    derive_from_label,
)

logger = logging.getLogger(__name__)


def canonical_submetric_key(definition: SubmetricDefinition) -> str:
    """Key the current derivation would assign; "" when nothing derives one."""
    if definition.metric_name and definition.category:
        return derive_from_category_and_name(definition.category, definition.metric_name)
    if definition.label:
        return derive_from_label(definition.label)
    if definition.metric_name:
        return derive_from_category_and_name(None, definition.metric_name)
    return ""


def _merge_threads(source_id, target_id):
    """Move threads of ``source_id`` onto ``target_id``, folding collisions."""
    threads = db.session.execute(
        select(CommentThread).where(CommentThread.definition_id == source_id)
    ).scalars().all()
    for thread in threads:
        clash = db.session.execute(
            select(CommentThread).where(
                CommentThread.definition_id == target_id,
                CommentThread.scope == thread.scope,
                CommentThread.scope_key == thread.scope_key,
            )
        ).scalar_one_or_none()
        if clash is None:
            thread.definition_id = target_id
            continue
        db.session.execute(
            update(Comment).where(Comment.thread_id == thread.id).values(thread_id=clash.id)
        )
        db.session.execute(
            update(FollowUp).where(FollowUp.thread_id == thread.id).values(thread_id=clash.id)
        )
        db.session.delete(thread)
    db.session.flush()


def _merge_into(source: SubmetricDefinition, target: SubmetricDefinition):
    _merge_threads(source.id, target.id)
    db.session.execute(
        update(Submetric).where(Submetric.definition_id == source.id).values(definition_id=target.id)
    )
    db.session.execute(
        update(FollowUp).where(FollowUp.definition_id == source.id).values(definition_id=target.id)
    )
    if not target.definition and source.definition:
        target.definition = source.definition
    db.session.delete(source)
    db.session.flush()


def find_orphans(workspace_id=None) -> list[dict]:
    """Definitions no submetric references any more."""
    stmt = (
        select(SubmetricDefinition)
        .outerjoin(Submetric, Submetric.definition_id == SubmetricDefinition.id)
        .group_by(SubmetricDefinition.id)
        .having(func.count(Submetric.id) == 0)
        .order_by(SubmetricDefinition.metric_key, SubmetricDefinition.submetric_key)
    )
    if workspace_id:
        stmt = stmt.where(SubmetricDefinition.workspace_id == workspace_id)
    return [
        {"id": d.id, "metric_key": d.metric_key, "submetric_key": d.submetric_key, "label": d.label}
        for d in db.session.execute(stmt).scalars()
    ]


def backfill_submetric_keys(*, apply: bool = False, workspace_id=None) -> dict:
    """Re-key every submetric definition; commit only with ``apply``."""
    summary = {
        "mode": "apply" if apply else "dry-run",
        "processed": 0,
        "unchanged": 0,
        "rekeyed": 0,
        "merged": 0,
        "skipped": [],
        "orphans": [],
    }

    stmt = select(SubmetricDefinition).order_by(
        SubmetricDefinition.workspace_id,
        SubmetricDefinition.metric_key,
        SubmetricDefinition.created_at,
    )
    if workspace_id:
        stmt = stmt.where(SubmetricDefinition.workspace_id == workspace_id)
    definitions = db.session.execute(stmt).scalars().all()

    for definition in definitions:
        summary["processed"] += 1
        new_key = canonical_submetric_key(definition)
        if not new_key:
            summary["skipped"].append(definition.id)
            logger.warning("No derivable key", extra={"definition_id": definition.id})
            continue
        if new_key == definition.submetric_key:
            summary["unchanged"] += 1
            continue

        target = find_definition(definition.workspace_id, definition.metric_key, new_key)
        if target is None:
            logger.info(
                "Re-key %s -> %s", definition.submetric_key, new_key,
                extra={"definition_id": definition.id, "workspace_id": definition.workspace_id},
            )
            definition.submetric_key = new_key
            db.session.flush()
            summary["rekeyed"] += 1
        else:
            logger.info(
                "Merge %s into %s", definition.submetric_key, new_key,
                extra={"definition_id": target.id, "workspace_id": definition.workspace_id},
            )
            _merge_into(definition, target)
            summary["merged"] += 1

    summary["orphans"] = find_orphans(workspace_id)

    if apply:
        db.session.commit()
    else:
        db.session.rollback()

    logger.info(
        "Backfill %s: processed=%d rekeyed=%d merged=%d unchanged=%d orphans=%d",
        summary["mode"], summary["processed"], summary["rekeyed"], summary["merged"],
        summary["unchanged"], len(summary["orphans"]),
    )
    return summary
