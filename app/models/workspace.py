"""
Trendboard Annotation Service
Workspace & Slide models.

A workspace is the identity boundary: definition keys and follow-up
identifiers are unique per workspace only. Slides are dated snapshots
inside a workspace; ``slide_date`` is the reference point used for
"as of" resolution of follow-ups.
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class Workspace(db.Model):
    """Top-level container for slides, definitions and follow-ups."""

    __tablename__ = "workspaces"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_public = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    slides = db.relationship(
        "Slide", backref="workspace", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_public": self.is_public,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Workspace {self.id}: {self.name}>"


class Slide(db.Model):
    """A dated snapshot of metrics within a workspace."""

    __tablename__ = "slides"
    __table_args__ = (
        db.Index("idx_slide_workspace_date", "workspace_id", "slide_date"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    slide_number = db.Column(db.Integer, nullable=False, default=1)
    slide_date = db.Column(
        db.Date, nullable=True,
        comment="Date the slide's data represents; reference point for follow-up resolution",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "description": self.description,
            "slide_number": self.slide_number,
            "slide_date": self.slide_date.isoformat() if self.slide_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Slide {self.id}: {self.title} ({self.slide_date})>"
