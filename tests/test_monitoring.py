"""Tests for monitoring: health checks, request timing and structured logging."""

import json
import logging

from app.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


# ── Health Endpoints ────────────────────────────────────────────────────


class TestHealthEndpoints:
    """Health check endpoint tests."""

    def test_health_ready(self, client):
        """GET /api/v1/health/ready returns 200."""
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_health_live(self, client):
        """GET /api/v1/health/live returns detailed checks."""
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert "latency_ms" in data["checks"]["database"]
        assert data["checks"]["redis"]["status"] == "skipped"
        assert data["checks"]["app"]["testing"] is True

    def test_health_no_auth_required(self, client):
        for path in ["/api/v1/health/ready", "/api/v1/health/live"]:
            assert client.get(path).status_code == 200, f"Auth required for {path}"


# ── Request Timing ──────────────────────────────────────────────────────


class TestRequestTiming:
    """Request timing middleware tests."""

    def test_duration_header_present(self, client):
        res = client.get("/api/v1/health/ready")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        res = client.get("/api/v1/health/ready")
        assert len(res.headers["X-Request-ID"]) == 12

    def test_custom_request_id_passthrough(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "trace-abc"})
        assert res.headers["X-Request-ID"] == "trace-abc"

    def test_error_responses_are_timed(self, client):
        res = client.get("/api/v1/submetric-definitions/missing")
        assert res.status_code == 404
        assert "X-Request-Duration-Ms" in res.headers


# ── Structured Logging ──────────────────────────────────────────────────


def _record(msg="hello", **extra):
    record = logging.LogRecord("app.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:

    def test_json_formatter_includes_ids(self):
        line = JSONFormatter().format(_record(definition_id="d1", thread_id="t1", duration_ms=1.5))
        entry = json.loads(line)
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["definition_id"] == "d1"
        assert entry["thread_id"] == "t1"
        assert "follow_up_id" not in entry

    def test_readable_formatter(self):
        line = ReadableFormatter().format(_record(request_id="abc123", duration_ms=12.0))
        assert "(abc123)" in line
        assert "[12ms]" in line

    def test_context_filter_stamps_request(self, app):
        with app.test_request_context("/api/v1/health/ready"):
            from flask import g

            g.request_id = "req-1"
            g.user_id = "user-alice"
            record = _record()
            assert RequestContextFilter().filter(record) is True
            assert record.request_id == "req-1"
            assert record.user_id == "user-alice"

    def test_context_filter_outside_request(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None
