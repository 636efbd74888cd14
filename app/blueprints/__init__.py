"""
Trendboard Annotation Service
Blueprint registry and shared request helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import BadRequest

from app.core.exceptions import (
    ConflictExhaustedError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Request JSON object, or raise ValidationError for non-object bodies."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            raise BadRequest("Malformed JSON body")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def id_list(value, field):
    """Normalise a list parameter given as a JSON list or a comma-separated string."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list):
        return value
    raise ValidationError(f"{field} must be a list", details={field: "type"})


def register_error_handlers(bp):
    """Map service exceptions to the standard error envelope on ``bp``.

    Every handler rolls the session back first so a failed request never
    leaves half-flushed rows in the scoped session.
    """

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(BadRequest)
    def _handle_bad_request(error: BadRequest):
        db.session.rollback()
        return api_error(E.VALIDATION_REQUIRED, error.description or "Bad request", status=400)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error: PermissionDeniedError):
        db.session.rollback()
        logger.warning(
            "Permission denied: %s %s", error.action, error.resource,
            extra={"comment_id": error.resource_id},
        )
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(ConflictExhaustedError)
    def _handle_conflict(error: ConflictExhaustedError):
        db.session.rollback()
        return api_error(
            E.CONFLICT_EXHAUSTED, str(error),
            details={"retryable": True, "field": error.field, "attempts": error.attempts},
        )

    @bp.errorhandler(StoreUnavailableError)
    def _handle_store(error: StoreUnavailableError):
        db.session.rollback()
        return api_error(
            E.STORE_UNAVAILABLE, "Storage temporarily unavailable",
            details={"retryable": True, "operation": error.operation},
        )

    @bp.errorhandler(OperationalError)
    def _handle_operational(error: OperationalError):
        db.session.rollback()
        logger.exception("Store unavailable endpoint=%s", request.endpoint)
        return api_error(
            E.STORE_UNAVAILABLE, "Storage temporarily unavailable", details={"retryable": True},
        )

    return bp
