"""
Trendboard Annotation Service
Annotation models: comment threads and comments.

A thread is anchored to one SubmetricDefinition, either as a whole
("entity" scope, optionally tied to the slide it was raised on) or to a
single time-bucketed observation ("point" scope). ``scope_key`` folds the
addressing columns into one non-null string so that the natural key
``(definition_id, scope, scope_key)`` can be enforced by a unique
constraint on every backend:

    point   → "<bucket_type>:<bucket_value>"   e.g. "week:2025-08-04"
    entity  → "slide:<slide_id>" | "definition"

Only slide-anchored entity threads carry ``slide_id``; deleting the slide
deletes them with their comments. Point threads span slides and never
reference one.
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _utcnow_ms():
    """UTC now truncated to milliseconds (cursor resolution)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


# ── Constants ────────────────────────────────────────────────────────────────

THREAD_SCOPES = {"point", "entity"}
BUCKET_TYPES = ("day", "week", "month", "quarter", "year")

ENTITY_DEFINITION_KEY = "definition"


def point_scope_key(bucket_type: str, bucket_value: str) -> str:
    return f"{bucket_type}:{bucket_value}"


def entity_scope_key(slide_id: str | None) -> str:
    return f"slide:{slide_id}" if slide_id else ENTITY_DEFINITION_KEY


# ═════════════════════════════════════════════════════════════════════════════
# CommentThread
# ═════════════════════════════════════════════════════════════════════════════

class CommentThread(db.Model):
    """Lazily created container for comments on one scope key."""

    __tablename__ = "comment_threads"
    __table_args__ = (
        db.UniqueConstraint(
            "definition_id", "scope", "scope_key", name="uq_thread_definition_scope_key",
        ),
        db.CheckConstraint(
            "(scope = 'point' AND bucket_type IS NOT NULL AND bucket_value IS NOT NULL"
            " AND slide_id IS NULL)"
            " OR (scope = 'entity' AND bucket_type IS NULL AND bucket_value IS NULL)",
            name="ck_thread_scope_shape",
        ),
        db.Index("idx_thread_def_bucket", "definition_id", "bucket_type", "bucket_value"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    definition_id = db.Column(
        db.String(36), db.ForeignKey("submetric_definitions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    scope = db.Column(db.String(10), nullable=False, comment="point | entity")
    scope_key = db.Column(db.String(120), nullable=False)
    slide_id = db.Column(
        db.String(36), db.ForeignKey("slides.id", ondelete="CASCADE"),
        nullable=True, index=True, comment="Entity threads only; goes with its slide",
    )
    bucket_type = db.Column(db.String(10), nullable=True, comment="day | week | month | quarter | year")
    bucket_value = db.Column(db.String(64), nullable=True)
    title = db.Column(db.String(300), nullable=True)
    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    comments = db.relationship(
        "Comment", backref="thread", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "definition_id": self.definition_id,
            "scope": self.scope,
            "slide_id": self.slide_id,
            "bucket_type": self.bucket_type,
            "bucket_value": self.bucket_value,
            "title": self.title,
            "is_resolved": self.is_resolved,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<CommentThread {self.id} {self.scope}:{self.scope_key}>"


# ═════════════════════════════════════════════════════════════════════════════
# Comment
# ═════════════════════════════════════════════════════════════════════════════

class Comment(db.Model):
    """A comment, optionally replying to another comment in the same thread."""

    __tablename__ = "comments"
    __table_args__ = (
        db.Index("idx_comment_thread_created", "thread_id", "created_at", "id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    thread_id = db.Column(
        db.String(36), db.ForeignKey("comment_threads.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    body = db.Column(db.Text, nullable=False)
    parent_id = db.Column(
        db.String(36), db.ForeignKey("comments.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow_ms)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "user_id": self.user_id,
            "body": self.body,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Comment {self.id} thread={self.thread_id}>"
