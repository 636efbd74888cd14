"""
Trendboard Annotation Service
Follow-up models: remediation items tracked against definitions.

Status vocabulary (canonical, closed):
    todo → in_progress → {done, cancelled}

Any status may move to any other. ``done`` is the only state that can
count as resolved; whether it does depends on the reference snapshot
(see ``app.services.follow_up_service.classify_as_of``). Older clients
send ``backlog`` and ``resolved``; those are mapped at the API boundary
through ``STATUS_ALIASES``.

Identifier: FU-{seq} (3-digit minimum, workspace-wide, never reused).
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

FOLLOW_UP_STATUSES = ("todo", "in_progress", "done", "cancelled")
TERMINAL_STATUSES = {"done", "cancelled"}
RESOLVED_STATUS = "done"

STATUS_ALIASES = {
    "backlog": "todo",
    "resolved": "done",
}

FOLLOW_UP_PRIORITIES = ("no_priority", "urgent", "high", "medium", "low")

# Sort rank: urgent first, no_priority last.
PRIORITY_RANK = {
    "urgent": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
    "no_priority": 4,
}

IDENTIFIER_PREFIX = "FU"


def canonical_status(value):
    """Map a status from either vocabulary to the canonical set, or None."""
    if value is None:
        return None
    status = str(value).strip().lower()
    status = STATUS_ALIASES.get(status, status)
    return status if status in FOLLOW_UP_STATUSES else None


# ═════════════════════════════════════════════════════════════════════════════
# FollowUp
# ═════════════════════════════════════════════════════════════════════════════

class FollowUp(db.Model):
    """A trackable remediation item with a chronologically evaluated resolution."""

    __tablename__ = "follow_ups"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "identifier", name="uq_follow_up_ws_identifier"),
        db.Index("idx_follow_up_ws_status", "workspace_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    identifier = db.Column(db.String(20), nullable=False, comment="FU-{seq}")
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    slide_id = db.Column(
        db.String(36), db.ForeignKey("slides.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="Snapshot the follow-up was raised on",
    )
    definition_id = db.Column(
        db.String(36), db.ForeignKey("submetric_definitions.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    thread_id = db.Column(
        db.String(36), db.ForeignKey("comment_threads.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolved_at_slide_id = db.Column(
        db.String(36), db.ForeignKey("slides.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="Snapshot at which it was marked done",
    )
    status = db.Column(db.String(20), nullable=False, default="todo")
    priority = db.Column(db.String(20), nullable=False, default="no_priority")
    created_by = db.Column(db.String(64), nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    slide = db.relationship("Slide", foreign_keys=[slide_id], lazy="joined")
    resolved_at_slide = db.relationship("Slide", foreign_keys=[resolved_at_slide_id], lazy="joined")
    assignees = db.relationship(
        "FollowUpAssignee", backref="follow_up", lazy="selectin",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="FollowUpAssignee.created_at",
    )

    @property
    def assignee_ids(self):
        return [a.user_id for a in self.assignees]

    def to_dict(self):
        return {
            "id": self.id,
            "identifier": self.identifier,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "description": self.description,
            "slide_id": self.slide_id,
            "slide_date": self.slide.slide_date.isoformat() if self.slide and self.slide.slide_date else None,
            "definition_id": self.definition_id,
            "thread_id": self.thread_id,
            "resolved_at_slide_id": self.resolved_at_slide_id,
            "resolved_at_slide_date": (
                self.resolved_at_slide.slide_date.isoformat()
                if self.resolved_at_slide and self.resolved_at_slide.slide_date else None
            ),
            "status": self.status,
            "priority": self.priority,
            "assignee_ids": self.assignee_ids,
            "created_by": self.created_by,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<FollowUp {self.identifier}: {self.title[:40]}>"


class FollowUpAssignee(db.Model):
    """Many-to-many link between a follow-up and an assigned user id."""

    __tablename__ = "follow_up_assignees"
    __table_args__ = (
        db.UniqueConstraint("follow_up_id", "user_id", name="uq_follow_up_assignee"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    follow_up_id = db.Column(
        db.String(36), db.ForeignKey("follow_ups.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<FollowUpAssignee {self.follow_up_id} → {self.user_id}>"
