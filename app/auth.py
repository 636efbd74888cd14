"""
Trendboard Annotation Service
Caller identity & ingestion key middleware.

Provides:
    - Caller identity via the X-User-Id header (set by the upstream session
      layer; this service does not authenticate users itself)
    - require_user decorator for mutating annotation/follow-up routes
    - require_ingest_key decorator: Bearer token checked against
      METRICS_API_KEY
    - Content-Type enforcement for state-changing requests

Configuration:
    METRICS_API_KEY   - shared secret for the ingestion endpoint; must be at
                        least METRICS_API_KEY_MIN_LENGTH characters, otherwise
                        ingestion is disabled (503)
"""

import functools
import hmac
import logging

from flask import current_app, g, request

from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ID_MAX_LENGTH = 64


def _client_ip() -> str:
    return (
        request.headers.get("X-Forwarded-For")
        or request.headers.get("X-Real-IP")
        or request.remote_addr
        or "unknown"
    )


# ── Caller identity ──────────────────────────────────────────────────────────

def current_user_id():
    """User id of the caller, or None for anonymous requests."""
    return getattr(g, "user_id", None)


def require_user(f):
    """Decorator: reject requests without a caller identity (401)."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not current_user_id():
            return api_error(E.UNAUTHORIZED, f"{USER_ID_HEADER} header is required")
        return f(*args, **kwargs)

    return decorated


# ── Ingestion key ────────────────────────────────────────────────────────────

def require_ingest_key(f):
    """
    Decorator: require ``Authorization: Bearer <METRICS_API_KEY>``.

    A missing or too-short configured key disables the endpoint (503)
    rather than accepting weak credentials.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("METRICS_API_KEY") or ""
        min_length = current_app.config.get("METRICS_API_KEY_MIN_LENGTH", 32)
        if not expected:
            logger.error("METRICS_API_KEY is not set; ingestion endpoint is disabled")
            return api_error(E.MISCONFIGURED, "Service temporarily unavailable")
        if len(expected) < min_length:
            logger.error("METRICS_API_KEY is shorter than %d characters", min_length)
            return api_error(E.MISCONFIGURED, "Service configuration error")

        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            logger.warning("Invalid authorization header format from %s", _client_ip())
            return api_error(E.UNAUTHORIZED, "Invalid authorization header")
        provided = header[len("Bearer "):].strip()
        if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("Failed ingestion key check from %s", _client_ip())
            return api_error(E.UNAUTHORIZED, "Invalid API key")

        return f(*args, **kwargs)

    return decorated


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. HTML forms cannot send that type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.VALIDATION_INVALID,
                "Content-Type must be application/json for state-changing requests",
                status=415,
            )
    return None


def init_auth(app):
    """Install the caller-identity and Content-Type hooks for /api/v1 routes."""

    @app.before_request
    def _before_request_auth():
        g.user_id = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.method == "OPTIONS":
            return None

        content_type_error = _check_content_type()
        if content_type_error:
            return content_type_error

        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        if user_id:
            if len(user_id) > USER_ID_MAX_LENGTH:
                return api_error(E.VALIDATION_INVALID, f"{USER_ID_HEADER} is too long")
            g.user_id = user_id
        return None

    logger.info("Auth middleware installed")
