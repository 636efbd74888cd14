"""Definition service: resolves derived identity keys to canonical rows.

Transaction policy: methods flush or execute within the current session,
never commit(). Caller (route handler or ingestion) commits.

Operations:
- resolve_definition: atomic INSERT ... ON CONFLICT DO UPDATE on the
  natural key, updating only fields explicitly present in the payload
- identity_from_payload: derive (metric_key, submetric_key, fields) from
  metric name, optional category and optional legacy label
- get_definition / find_definition: read helpers
- update_definition_text: curated description edits
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, fields as dataclass_fields
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.definition import (
    DEFINITION_TEXT_MAX_LENGTH,
    MetricDefinition,
    SubmetricDefinition,
)
from app.models.workspace import Workspace
from app.services.key_derivation import (
    derive_from_category_and_name,
    derive_from_label,
    format_label,
    normalize_key,
    split_label,
)
from app.utils.helpers import db_execute, dialect_insert, get_or_raise

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Presence-aware update record
# ═════════════════════════════════════════════════════════════════════════════

class _Missing:
    """Sentinel type for a field absent from the incoming payload."""

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class DefinitionFields:
    """Non-identity definition fields, each either MISSING or a value.

    MISSING leaves the stored value untouched on conflict; an explicit
    None clears it.
    """

    label: Any = MISSING
    category: Any = MISSING
    metric_name: Any = MISSING
    xaxis: Any = MISSING
    yaxis: Any = MISSING
    unit: Any = MISSING
    preferred_trend: Any = MISSING
    definition: Any = MISSING

    def present(self) -> dict:
        return {
            f.name: getattr(self, f.name)
            for f in dataclass_fields(self)
            if getattr(self, f.name) is not MISSING
        }

    @classmethod
    def from_mapping(cls, data: dict, *, skip_empty: bool = False) -> "DefinitionFields":
        """Build from a dict; keys not in the dict stay MISSING.

        With ``skip_empty`` a None/"" value is treated as absent, which is
        how ingestion payloads signal "not provided".
        """
        values = {}
        for f in dataclass_fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str):
                value = value.strip()
            if skip_empty and (value is None or value == ""):
                continue
            values[f.name] = value
        return cls(**values)


_METRIC_FAMILY_FIELDS = {"definition"}


# ═════════════════════════════════════════════════════════════════════════════
# Upsert
# ═════════════════════════════════════════════════════════════════════════════

def _utcnow():
    return datetime.now(timezone.utc)


def resolve_definition(workspace_id, metric_key, submetric_key=None, fields=None) -> str:
    """Return the id of the definition for the natural key, creating it if needed.

    Without ``submetric_key`` the metric family row is resolved; with it,
    the submetric row. On conflict only ``fields.present()`` is written,
    plus ``updated_at``. Safe under concurrent callers: the unique
    constraint arbitrates, there is no read-before-insert.

    Raises:
        ValidationError: a key normalizes to "" or a field does not apply.
        NotFoundError: unknown workspace.
    """
    fields = fields or DefinitionFields()
    metric_key = normalize_key(metric_key)
    if not metric_key:
        raise ValidationError("Metric key is empty after normalization", details={"metric_key": "empty"})
    if submetric_key is not None:
        submetric_key = normalize_key(submetric_key)
        if not submetric_key:
            raise ValidationError(
                "Submetric key is empty after normalization", details={"submetric_key": "empty"},
            )

    get_or_raise(Workspace, workspace_id, "Workspace")

    present = fields.present()
    now = _utcnow()

    if submetric_key is None:
        extra = set(present) - _METRIC_FAMILY_FIELDS
        if extra:
            raise ValidationError(
                "Fields not applicable to a metric family definition",
                details={name: "not applicable" for name in sorted(extra)},
            )
        model = MetricDefinition
        natural_key = {"workspace_id": workspace_id, "metric_key": metric_key}
    else:
        model = SubmetricDefinition
        natural_key = {
            "workspace_id": workspace_id,
            "metric_key": metric_key,
            "submetric_key": submetric_key,
        }

    stmt = dialect_insert(model).values(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        **natural_key,
        **present,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=list(natural_key),
        set_={**present, "updated_at": now},
    ).returning(model.id)

    definition_id = db_execute(
        stmt, "resolve_definition", workspace_id=workspace_id,
    ).scalar_one()

    logger.debug(
        "Resolved %s %s/%s -> %s", model.__tablename__, metric_key, submetric_key, definition_id,
        extra={"workspace_id": workspace_id, "definition_id": definition_id},
    )
    return definition_id


def identity_from_payload(metric_name=None, category=None, label=None):
    """Derive the submetric identity and display fields from a payload.

    Preferred path: explicit ``category`` + ``metric_name``. Legacy path:
    a ``label`` of the form "[Category] - Name" with no category.

    Returns:
        (metric_key, submetric_key, fields_dict) where fields_dict holds
        label/category/metric_name values to store.
    """
    category = (category or "").strip() or None
    metric_name = (metric_name or "").strip() or None
    label = (label or "").strip() or None

    if category is None and label is not None:
        label_category, label_name = split_label(label)
        submetric_key = derive_from_label(label)
        category = label_category
        metric_name = metric_name or label_name
    else:
        if metric_name is None:
            raise ValidationError("metric_name is required", details={"metric_name": "required"})
        submetric_key = derive_from_category_and_name(category, metric_name)
        label = format_label(category, metric_name)

    metric_key = normalize_key(metric_name)
    if not metric_key or not submetric_key:
        raise ValidationError(
            "Derived identity key is empty",
            details={"metric_key": metric_key, "submetric_key": submetric_key},
        )
    return metric_key, submetric_key, {
        "label": label,
        "category": category,
        "metric_name": metric_name,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Reads & curated edits
# ═════════════════════════════════════════════════════════════════════════════

def get_definition(definition_id) -> SubmetricDefinition:
    """Load a submetric definition, refreshing any stale identity-map copy."""
    if not definition_id:
        raise NotFoundError(resource="Definition", resource_id=definition_id)
    definition = db.session.get(SubmetricDefinition, definition_id, populate_existing=True)
    if definition is None:
        raise NotFoundError(resource="Definition", resource_id=definition_id)
    return definition


def find_definition(workspace_id, metric_key, submetric_key):
    """Look up a submetric definition by natural key; None when absent."""
    return db.session.execute(
        select(SubmetricDefinition).where(
            SubmetricDefinition.workspace_id == workspace_id,
            SubmetricDefinition.metric_key == metric_key,
            SubmetricDefinition.submetric_key == submetric_key,
        ).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def update_definition_text(model, definition_id, text):
    """Set the curated ``definition`` text on a metric or submetric definition.

    Empty text clears it. Returns the updated instance (flushed).
    """
    if text is not None and not isinstance(text, str):
        raise ValidationError("definition must be a string", details={"definition": "type"})
    text = (text or "").strip()
    if len(text) > DEFINITION_TEXT_MAX_LENGTH:
        raise ValidationError(
            f"definition must be at most {DEFINITION_TEXT_MAX_LENGTH} characters",
            details={"definition": "too long"},
        )
    label = "MetricDefinition" if model is MetricDefinition else "Definition"
    definition = get_or_raise(model, definition_id, label)
    definition.definition = text or None
    definition.updated_at = _utcnow()
    db.session.flush()
    return definition
