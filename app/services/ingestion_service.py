"""Ingestion service: external metric payloads into slides and definitions.

Transaction policy: flush only; the ingest route commits once so a
rejected payload leaves nothing behind.

Every metric resolves its family definition and every submetric its
submetric definition through the identity resolver, so repeated
ingestion of the same series lands on the same definition id and keeps
its comment threads and follow-ups attached.
"""
import logging
from numbers import Number

from flask import current_app
from sqlalchemy import func, select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.definition import Metric, Submetric
from app.models.workspace import Slide, Workspace
from app.services.definition_service import (
    DefinitionFields,
    identity_from_payload,
    resolve_definition,
)
from app.utils.helpers import get_or_raise, parse_date_input

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "API Ingestion Workspace"
CHART_TYPES = {"line", "bar", "area", "pie", "scatter"}
PREFERRED_TRENDS = {"uptrend", "downtrend", "stable"}


def _text(value):
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return value.strip() or None


# ── Workspace & slide ────────────────────────────────────────────────────────

def _workspace_for(payload) -> Workspace:
    workspace_id = payload.get("workspace_id")
    if workspace_id:
        return get_or_raise(Workspace, workspace_id, "Workspace")
    workspace = Workspace(
        name=_text(payload.get("slide_title")) or DEFAULT_WORKSPACE_NAME,
        description="Created via API",
        is_public=True,
    )
    db.session.add(workspace)
    db.session.flush()
    logger.info("Workspace created by ingestion", extra={"workspace_id": workspace.id})
    return workspace


def _slide_for(payload, workspace) -> Slide:
    slide_id = payload.get("slide_id")
    if slide_id:
        slide = get_or_raise(Slide, slide_id, "Slide")
        if slide.workspace_id != workspace.id:
            raise ValidationError(
                "Slide does not belong to the specified workspace",
                details={"slide_id": slide_id, "workspace_id": workspace.id},
            )
        return slide

    title = _text(payload.get("slide_title"))
    if not title:
        raise ValidationError(
            "Either 'slide_id' or 'slide_title' is required", details={"slide_title": "required"},
        )
    highest = db.session.execute(
        select(func.coalesce(func.max(Slide.slide_number), 0)).where(Slide.workspace_id == workspace.id)
    ).scalar_one()
    slide = Slide(
        workspace_id=workspace.id,
        title=title,
        description=_text(payload.get("slide_description")),
        slide_number=highest + 1,
        slide_date=parse_date_input(payload.get("slide_date"), "slide_date"),
    )
    db.session.add(slide)
    db.session.flush()
    return slide


# ── Validation ───────────────────────────────────────────────────────────────

def _data_points(raw, path) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{path}.data_points must be a list", details={path: "data_points"})
    points = []
    for i, dp in enumerate(raw):
        where = f"{path}.data_points[{i}]"
        if not isinstance(dp, dict) or not _text(dp.get("timestamp")):
            raise ValidationError(f"{where}.timestamp is required", details={where: "timestamp"})
        value = dp.get("value")
        if isinstance(value, bool) or not isinstance(value, Number):
            raise ValidationError(f"{where}.value must be a number", details={where: "value"})
        points.append({
            "timestamp": str(dp["timestamp"]).strip(),
            "value": value,
            "confidence": dp.get("confidence"),
            "source": dp.get("source"),
            "dimensions": dp.get("dimensions"),
        })
    return points


def _validate_metrics(payload) -> list:
    metrics = payload.get("metrics")
    if not isinstance(metrics, list) or not metrics:
        raise ValidationError(
            "Invalid request - 'metrics' array is required", details={"metrics": "required"},
        )
    for i, metric in enumerate(metrics):
        if not isinstance(metric, dict) or not _text(metric.get("metric_name")):
            raise ValidationError(
                f"metrics[{i}].metric_name is required", details={f"metrics[{i}]": "metric_name"},
            )
        chart_type = metric.get("chart_type")
        if chart_type is not None and chart_type not in CHART_TYPES:
            raise ValidationError(
                f"metrics[{i}].chart_type is invalid", details={f"metrics[{i}]": chart_type},
            )
        if not isinstance(metric.get("submetrics", []), list):
            raise ValidationError(
                f"metrics[{i}].submetrics must be a list", details={f"metrics[{i}]": "submetrics"},
            )
    return metrics


# ═════════════════════════════════════════════════════════════════════════════
# Ingest
# ═════════════════════════════════════════════════════════════════════════════

def _definition_fields(sub, identity_fields) -> DefinitionFields:
    """Presence-aware fields for one submetric; empty inputs stay absent."""
    preferred_trend = _text(sub.get("preferred_trend"))
    if preferred_trend is not None and preferred_trend not in PREFERRED_TRENDS:
        raise ValidationError(
            f"Invalid preferred_trend: {preferred_trend}", details={"preferred_trend": preferred_trend},
        )
    return DefinitionFields.from_mapping({
        **identity_fields,
        "xaxis": _text(sub.get("xaxis")),
        "yaxis": _text(sub.get("yaxis")),
        "unit": _text(sub.get("unit")) or _text(sub.get("yaxis")),
        "preferred_trend": preferred_trend,
    }, skip_empty=True)


def ingest_metrics(payload) -> dict:
    """Store one ingestion payload; see ``POST /api/v1/ingest/metrics``.

    Returns a summary with the created ids and the definition ids every
    submetric resolved to, in payload order.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    metrics = _validate_metrics(payload)

    workspace = _workspace_for(payload)
    slide = _slide_for(payload, workspace)

    metric_ids, definition_ids = [], []
    submetric_count = data_point_count = 0

    for i, metric_in in enumerate(metrics):
        metric_name = _text(metric_in["metric_name"])
        family_id = resolve_definition(
            workspace.id,
            metric_name,
            fields=DefinitionFields.from_mapping(
                {"definition": metric_in.get("description")}, skip_empty=True,
            ),
        )
        metric = Metric(
            slide_id=slide.id,
            definition_id=family_id,
            name=metric_name,
            ranking=metric_in.get("ranking") or None,
            chart_type=metric_in.get("chart_type") or "line",
        )
        db.session.add(metric)
        db.session.flush()
        metric_ids.append(metric.id)

        for j, sub in enumerate(metric_in.get("submetrics") or []):
            path = f"metrics[{i}].submetrics[{j}]"
            if not isinstance(sub, dict):
                raise ValidationError(f"{path} must be an object", details={path: "type"})
            metric_key, submetric_key, identity_fields = identity_from_payload(
                metric_name=metric_name,
                category=sub.get("category"),
                label=sub.get("label"),
            )
            definition_id = resolve_definition(
                workspace.id, metric_key, submetric_key,
                fields=_definition_fields(sub, identity_fields),
            )
            points = _data_points(sub.get("data_points"), path)
            db.session.add(Submetric(
                metric_id=metric.id,
                definition_id=definition_id,
                timezone=_text(sub.get("timezone")) or "UTC",
                aggregation_type=_text(sub.get("aggregation_type")) or "none",
                color=_text(sub.get("color")),
                extra_metadata=sub.get("metadata") or None,
                data_points=points,
            ))
            definition_ids.append(definition_id)
            submetric_count += 1
            data_point_count += len(points)

    db.session.flush()
    logger.info(
        "Ingested %d metrics, %d submetrics, %d data points",
        len(metric_ids), submetric_count, data_point_count,
        extra={"workspace_id": workspace.id},
    )
    return {
        "workspace_id": workspace.id,
        "slide_id": slide.id,
        "metrics_created": len(metric_ids),
        "submetrics_created": submetric_count,
        "data_points_created": data_point_count,
        "metric_ids": metric_ids,
        "definition_ids": definition_ids,
    }


def get_data_points(slide_id, submetric_ids) -> dict:
    """Batch-fetch data points of submetrics on one slide.

    Ids that do not belong to the slide are omitted from the result.
    """
    get_or_raise(Slide, slide_id, "Slide")
    if not isinstance(submetric_ids, list) or not submetric_ids:
        raise ValidationError("submetric_ids must be a non-empty list", details={"submetric_ids": "required"})
    ids = list(dict.fromkeys(str(v) for v in submetric_ids if v))
    maximum = current_app.config.get("DATA_POINT_BATCH_MAX", 50)
    if len(ids) > maximum:
        raise ValidationError(
            f"submetric_ids accepts at most {maximum} entries", details={"submetric_ids": len(ids)},
        )
    rows = db.session.execute(
        select(Submetric.id, Submetric.data_points)
        .join(Metric, Metric.id == Submetric.metric_id)
        .where(Metric.slide_id == slide_id, Submetric.id.in_(ids))
    ).all()
    return {submetric_id: points or [] for submetric_id, points in rows}
