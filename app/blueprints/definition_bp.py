"""
Trendboard Annotation Service
Definition blueprint: identity resolution and curated definition text.

Endpoints:
    POST /api/v1/definitions/resolve               derive keys + upsert
    GET  /api/v1/submetric-definitions/<id>
    PUT  /api/v1/submetric-definitions/<id>        {definition}
    PUT  /api/v1/metric-definitions/<id>           {definition}
"""

import logging

from flask import Blueprint, jsonify

from app.blueprints import json_body, register_error_handlers
from app.core.exceptions import ValidationError
from app.models.definition import MetricDefinition, SubmetricDefinition
from app.services.definition_service import (
    DefinitionFields,
    get_definition,
    identity_from_payload,
    resolve_definition,
    update_definition_text,
)
from app.utils.helpers import db_commit

logger = logging.getLogger(__name__)

definition_bp = Blueprint("definition", __name__, url_prefix="/api/v1")
register_error_handlers(definition_bp)


@definition_bp.route("/definitions/resolve", methods=["POST"])
def resolve():
    """Resolve (and create if needed) a definition from raw identity input.

    Body: {
        workspace_id,
        metric_name, category? | label?        - derived identity, or
        metric_key, submetric_key?             - pre-derived keys
        xaxis?, yaxis?, unit?, preferred_trend?, definition?
    }
    Only fields present in the body are written; null clears a field.
    """
    data = json_body()
    workspace_id = data.get("workspace_id")
    if not workspace_id:
        raise ValidationError("workspace_id is required", details={"workspace_id": "required"})

    if data.get("metric_key"):
        metric_key = data["metric_key"]
        submetric_key = data.get("submetric_key")
        identity_fields = {}
    else:
        metric_key, submetric_key, identity_fields = identity_from_payload(
            metric_name=data.get("metric_name"),
            category=data.get("category"),
            label=data.get("label"),
        )

    if submetric_key is None:
        # Metric family rows only carry curated text
        family = {"definition": data["definition"]} if "definition" in data else {}
        fields = DefinitionFields.from_mapping(family)
    else:
        fields = DefinitionFields.from_mapping({**data, **identity_fields})

    definition_id = resolve_definition(workspace_id, metric_key, submetric_key, fields)
    db_commit("resolve_definition", workspace_id=workspace_id, definition_id=definition_id)
    return jsonify({
        "definition_id": definition_id,
        "metric_key": metric_key,
        "submetric_key": submetric_key,
    }), 200


@definition_bp.route("/submetric-definitions/<definition_id>", methods=["GET"])
def get_submetric_definition(definition_id):
    return jsonify(get_definition(definition_id).to_dict()), 200


@definition_bp.route("/submetric-definitions/<definition_id>", methods=["PUT"])
def update_submetric_definition(definition_id):
    """Body: {definition: str | null}. Empty text clears the curated description."""
    data = json_body()
    if "definition" not in data:
        raise ValidationError("definition is required", details={"definition": "required"})
    definition = update_definition_text(SubmetricDefinition, definition_id, data["definition"])
    db_commit("update_submetric_definition", definition_id=definition_id)
    logger.info("Submetric definition text updated", extra={"definition_id": definition_id})
    return jsonify(definition.to_dict()), 200


@definition_bp.route("/metric-definitions/<definition_id>", methods=["PUT"])
def update_metric_definition(definition_id):
    """Body: {definition: str | null}."""
    data = json_body()
    if "definition" not in data:
        raise ValidationError("definition is required", details={"definition": "required"})
    definition = update_definition_text(MetricDefinition, definition_id, data["definition"])
    db_commit("update_metric_definition", definition_id=definition_id)
    logger.info("Metric definition text updated", extra={"definition_id": definition_id})
    return jsonify(definition.to_dict()), 200
