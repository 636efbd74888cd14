"""trendboard_initial_schema

Creates the annotation service schema:
  - workspaces, slides                      - snapshot timeline
  - metric_definitions, submetric_definitions - derived identity rows
  - metrics, submetrics                     - per-slide ingested series
  - comment_threads, comments               - annotations
  - follow_ups, follow_up_assignees         - resolution tracker

Tables are created conditionally so the revision can be stamped onto a
development database that already received them via db.create_all().

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-03-02 09:41:27.118305
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e4a9b2d30'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Workspaces & slides ───────────────────────────────────────────────
    if "workspaces" not in existing:
        op.create_table(
            "workspaces",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )

    if "slides" not in existing:
        op.create_table(
            "slides",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workspace_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("slide_number", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("slide_date", sa.Date(), nullable=True,
                      comment="Date the slide's data represents; reference point for follow-up resolution"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_slides_workspace_id", "slides", ["workspace_id"])
        op.create_index("idx_slide_workspace_date", "slides", ["workspace_id", "slide_date"])

    # ── Definitions ───────────────────────────────────────────────────────
    if "metric_definitions" not in existing:
        op.create_table(
            "metric_definitions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workspace_id", sa.String(length=36), nullable=False),
            sa.Column("metric_key", sa.String(length=255), nullable=False,
                      comment="normalize_key(metric_name)"),
            sa.Column("definition", sa.Text(), nullable=True,
                      comment="Curated description; never nulled by ingestion"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "metric_key", name="uq_metric_def_ws_key"),
        )
        op.create_index("ix_metric_definitions_workspace_id", "metric_definitions", ["workspace_id"])

    if "submetric_definitions" not in existing:
        op.create_table(
            "submetric_definitions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workspace_id", sa.String(length=36), nullable=False),
            sa.Column("metric_key", sa.String(length=255), nullable=False),
            sa.Column("submetric_key", sa.String(length=255), nullable=False),
            sa.Column("label", sa.String(length=500), nullable=True, comment="Latest display label"),
            sa.Column("category", sa.String(length=255), nullable=True),
            sa.Column("metric_name", sa.String(length=255), nullable=True),
            sa.Column("xaxis", sa.String(length=100), nullable=True),
            sa.Column("yaxis", sa.String(length=100), nullable=True),
            sa.Column("unit", sa.String(length=50), nullable=True),
            sa.Column("preferred_trend", sa.String(length=20), nullable=True,
                      comment="uptrend | downtrend | stable"),
            sa.Column("definition", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "metric_key", "submetric_key",
                                name="uq_submetric_def_ws_keys"),
        )
        op.create_index("ix_submetric_definitions_workspace_id", "submetric_definitions", ["workspace_id"])
        op.create_index("idx_submetric_def_ws_metric", "submetric_definitions",
                        ["workspace_id", "metric_key"])

    # ── Per-slide series ──────────────────────────────────────────────────
    if "metrics" not in existing:
        op.create_table(
            "metrics",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("slide_id", sa.String(length=36), nullable=False),
            sa.Column("definition_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("ranking", sa.Integer(), nullable=True, comment="1 = top"),
            sa.Column("chart_type", sa.String(length=30), nullable=False, server_default="line"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["slide_id"], ["slides.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["definition_id"], ["metric_definitions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_metrics_slide_id", "metrics", ["slide_id"])
        op.create_index("ix_metrics_definition_id", "metrics", ["definition_id"])

    if "submetrics" not in existing:
        op.create_table(
            "submetrics",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("metric_id", sa.String(length=36), nullable=False),
            sa.Column("definition_id", sa.String(length=36), nullable=True),
            sa.Column("timezone", sa.String(length=50), nullable=False, server_default="UTC"),
            sa.Column("aggregation_type", sa.String(length=20), nullable=False, server_default="none"),
            sa.Column("color", sa.String(length=20), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("data_points", sa.JSON(), nullable=False,
                      comment='[{"timestamp", "value", "confidence", "source", "dimensions"}]'),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["metric_id"], ["metrics.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["definition_id"], ["submetric_definitions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_submetrics_metric_id", "submetrics", ["metric_id"])
        op.create_index("ix_submetrics_definition_id", "submetrics", ["definition_id"])

    # ── Annotations ───────────────────────────────────────────────────────
    if "comment_threads" not in existing:
        op.create_table(
            "comment_threads",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workspace_id", sa.String(length=36), nullable=False),
            sa.Column("definition_id", sa.String(length=36), nullable=False),
            sa.Column("scope", sa.String(length=10), nullable=False, comment="point | entity"),
            sa.Column("scope_key", sa.String(length=120), nullable=False),
            sa.Column("slide_id", sa.String(length=36), nullable=True),
            sa.Column("bucket_type", sa.String(length=10), nullable=True,
                      comment="day | week | month | quarter | year"),
            sa.Column("bucket_value", sa.String(length=64), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=True),
            sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["definition_id"], ["submetric_definitions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["slide_id"], ["slides.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("definition_id", "scope", "scope_key",
                                name="uq_thread_definition_scope_key"),
            sa.CheckConstraint(
                "(scope = 'point' AND bucket_type IS NOT NULL AND bucket_value IS NOT NULL"
                " AND slide_id IS NULL)"
                " OR (scope = 'entity' AND bucket_type IS NULL AND bucket_value IS NULL)",
                name="ck_thread_scope_shape",
            ),
        )
        op.create_index("ix_comment_threads_workspace_id", "comment_threads", ["workspace_id"])
        op.create_index("ix_comment_threads_definition_id", "comment_threads", ["definition_id"])
        op.create_index("ix_comment_threads_slide_id", "comment_threads", ["slide_id"])
        op.create_index("idx_thread_def_bucket", "comment_threads",
                        ["definition_id", "bucket_type", "bucket_value"])

    if "comments" not in existing:
        op.create_table(
            "comments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("thread_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("parent_id", sa.String(length=36), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["thread_id"], ["comment_threads.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_id"], ["comments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_comments_thread_id", "comments", ["thread_id"])
        op.create_index("ix_comments_user_id", "comments", ["user_id"])
        op.create_index("ix_comments_parent_id", "comments", ["parent_id"])
        op.create_index("idx_comment_thread_created", "comments", ["thread_id", "created_at", "id"])

    # ── Follow-ups ────────────────────────────────────────────────────────
    if "follow_ups" not in existing:
        op.create_table(
            "follow_ups",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("identifier", sa.String(length=20), nullable=False, comment="FU-{seq}"),
            sa.Column("workspace_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("slide_id", sa.String(length=36), nullable=True,
                      comment="Snapshot the follow-up was raised on"),
            sa.Column("definition_id", sa.String(length=36), nullable=True),
            sa.Column("thread_id", sa.String(length=36), nullable=True),
            sa.Column("resolved_at_slide_id", sa.String(length=36), nullable=True,
                      comment="Snapshot at which it was marked done"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="todo"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="no_priority"),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["slide_id"], ["slides.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["definition_id"], ["submetric_definitions.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["thread_id"], ["comment_threads.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["resolved_at_slide_id"], ["slides.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workspace_id", "identifier", name="uq_follow_up_ws_identifier"),
        )
        op.create_index("ix_follow_ups_workspace_id", "follow_ups", ["workspace_id"])
        op.create_index("ix_follow_ups_slide_id", "follow_ups", ["slide_id"])
        op.create_index("ix_follow_ups_definition_id", "follow_ups", ["definition_id"])
        op.create_index("ix_follow_ups_resolved_at_slide_id", "follow_ups", ["resolved_at_slide_id"])
        op.create_index("idx_follow_up_ws_status", "follow_ups", ["workspace_id", "status"])

    if "follow_up_assignees" not in existing:
        op.create_table(
            "follow_up_assignees",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("follow_up_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["follow_up_id"], ["follow_ups.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("follow_up_id", "user_id", name="uq_follow_up_assignee"),
        )
        op.create_index("ix_follow_up_assignees_follow_up_id", "follow_up_assignees", ["follow_up_id"])
        op.create_index("ix_follow_up_assignees_user_id", "follow_up_assignees", ["user_id"])


def downgrade():
    for table in (
        "follow_up_assignees",
        "follow_ups",
        "comments",
        "comment_threads",
        "submetrics",
        "metrics",
        "submetric_definitions",
        "metric_definitions",
        "slides",
        "workspaces",
    ):
        op.drop_table(table)
