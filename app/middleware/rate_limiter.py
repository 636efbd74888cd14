"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Ingestion:                INGEST_RATE_LIMIT (default 60/minute)
        - Annotations / follow-ups: 120/minute
        - Definitions:              300/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    ingest_limit = app.config.get("INGEST_RATE_LIMIT", "60/minute")
    bp = app.blueprints.get("ingest")
    if bp:
        limiter.limit(ingest_limit)(bp)

    for bp_name in ("annotation", "follow_up"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("definition")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured; ingest: %s, annotations: %s, definitions: %s",
        ingest_limit, WRITE_LIMIT, READ_LIMIT,
    )
