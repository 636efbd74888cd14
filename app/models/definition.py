"""
Trendboard Annotation Service
Definition models: canonical metric identities.

Models:
    - MetricDefinition:    one row per metric family (workspace, metric_key)
    - SubmetricDefinition: one row per submetric identity
                           (workspace, metric_key, submetric_key)
    - Metric:              a metric as rendered on one slide
    - Submetric:           per-slide series with its data points

Keys are derived from labels by ``app.services.key_derivation`` and are
never edited directly. Annotation threads and follow-ups reference
``SubmetricDefinition.id`` only, never display labels.
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

DEFINITION_TEXT_MAX_LENGTH = 5000


# ═════════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════════

class MetricDefinition(db.Model):
    """Metric family identity with curated definition text."""

    __tablename__ = "metric_definitions"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "metric_key", name="uq_metric_def_ws_key"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    metric_key = db.Column(db.String(255), nullable=False, comment="normalize_key(metric_name)")
    definition = db.Column(db.Text, nullable=True, comment="Curated description; never nulled by ingestion")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "metric_key": self.metric_key,
            "definition": self.definition,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<MetricDefinition {self.metric_key}>"


class SubmetricDefinition(db.Model):
    """Submetric identity; the anchor for threads and follow-ups."""

    __tablename__ = "submetric_definitions"
    __table_args__ = (
        db.UniqueConstraint(
            "workspace_id", "metric_key", "submetric_key", name="uq_submetric_def_ws_keys",
        ),
        db.Index("idx_submetric_def_ws_metric", "workspace_id", "metric_key"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    metric_key = db.Column(db.String(255), nullable=False)
    submetric_key = db.Column(db.String(255), nullable=False)
    label = db.Column(db.String(500), nullable=True, comment="Latest display label")
    category = db.Column(db.String(255), nullable=True)
    metric_name = db.Column(db.String(255), nullable=True)
    xaxis = db.Column(db.String(100), nullable=True)
    yaxis = db.Column(db.String(100), nullable=True)
    unit = db.Column(db.String(50), nullable=True)
    preferred_trend = db.Column(db.String(20), nullable=True, comment="uptrend | downtrend | stable")
    definition = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "metric_key": self.metric_key,
            "submetric_key": self.submetric_key,
            "label": self.label,
            "category": self.category,
            "metric_name": self.metric_name,
            "xaxis": self.xaxis,
            "yaxis": self.yaxis,
            "unit": self.unit,
            "preferred_trend": self.preferred_trend,
            "definition": self.definition,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SubmetricDefinition {self.metric_key}/{self.submetric_key}>"


# ═════════════════════════════════════════════════════════════════════════════
# Per-slide instances
# ═════════════════════════════════════════════════════════════════════════════

class Metric(db.Model):
    """A metric placed on a slide, linked to its family definition."""

    __tablename__ = "metrics"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    slide_id = db.Column(
        db.String(36), db.ForeignKey("slides.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    definition_id = db.Column(
        db.String(36), db.ForeignKey("metric_definitions.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    ranking = db.Column(db.Integer, nullable=True, comment="1 = top")
    chart_type = db.Column(db.String(30), nullable=False, default="line")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    submetrics = db.relationship(
        "Submetric", backref="metric", lazy="selectin",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self, include_submetrics=False):
        d = {
            "id": self.id,
            "slide_id": self.slide_id,
            "definition_id": self.definition_id,
            "name": self.name,
            "ranking": self.ranking,
            "chart_type": self.chart_type,
        }
        if include_submetrics:
            d["submetrics"] = [s.to_dict() for s in self.submetrics]
        return d

    def __repr__(self):
        return f"<Metric {self.name}>"


class Submetric(db.Model):
    """One ingested series; ``data_points`` is a JSON list of observations."""

    __tablename__ = "submetrics"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    metric_id = db.Column(
        db.String(36), db.ForeignKey("metrics.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    definition_id = db.Column(
        db.String(36), db.ForeignKey("submetric_definitions.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    timezone = db.Column(db.String(50), nullable=False, default="UTC")
    aggregation_type = db.Column(db.String(20), nullable=False, default="none")
    color = db.Column(db.String(20), nullable=True)
    extra_metadata = db.Column("metadata", db.JSON, nullable=True)
    data_points = db.Column(
        db.JSON, nullable=False, default=list,
        comment='[{"timestamp", "value", "confidence", "source", "dimensions"}]',
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "metric_id": self.metric_id,
            "definition_id": self.definition_id,
            "timezone": self.timezone,
            "aggregation_type": self.aggregation_type,
            "color": self.color,
            "metadata": self.extra_metadata,
            "data_points": self.data_points or [],
        }

    def __repr__(self):
        return f"<Submetric {self.id} def={self.definition_id}>"
