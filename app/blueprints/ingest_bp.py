"""
Trendboard Annotation Service
Ingestion blueprint: external metric payloads.

Endpoints:
    POST /api/v1/ingest/metrics                          Bearer METRICS_API_KEY
    POST /api/v1/slides/<slide_id>/submetrics/data-points

The whole ingestion payload is committed once, after every definition
has been resolved and every submetric stored.
"""

import logging
import time

from flask import Blueprint, jsonify, request

from app.auth import require_ingest_key
from app.blueprints import json_body, register_error_handlers
from app.services import ingestion_service
from app.utils.helpers import db_commit

logger = logging.getLogger(__name__)

ingest_bp = Blueprint("ingest", __name__, url_prefix="/api/v1")
register_error_handlers(ingest_bp)


@ingest_bp.route("/ingest/metrics", methods=["POST"])
@require_ingest_key
def ingest_metrics():
    """Ingest one slide worth of metrics.

    Body: {workspace_id?, slide_id? | slide_title, slide_date?,
           slide_description?, metrics: [...]}
    Returns 201 with created ids and the resolved definition ids.
    """
    started = time.perf_counter()
    summary = ingestion_service.ingest_metrics(json_body())
    db_commit("ingest_metrics", workspace_id=summary["workspace_id"])
    logger.info(
        "Ingest from %s: slide=%s metrics=%d submetrics=%d points=%d (%.0fms)",
        request.remote_addr, summary["slide_id"], summary["metrics_created"],
        summary["submetrics_created"], summary["data_points_created"],
        (time.perf_counter() - started) * 1000,
        extra={"workspace_id": summary["workspace_id"]},
    )
    return jsonify(summary), 201


@ingest_bp.route("/slides/<slide_id>/submetrics/data-points", methods=["POST"])
def batch_data_points(slide_id):
    """Body: {submetric_ids: [...]} (at most DATA_POINT_BATCH_MAX)."""
    data = json_body()
    points = ingestion_service.get_data_points(slide_id, data.get("submetric_ids"))
    return jsonify({"data_points_by_submetric_id": points}), 200
