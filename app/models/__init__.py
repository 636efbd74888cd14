"""
Trendboard Annotation Service
Model package.

The shared ``db`` handle is bound to the app in ``create_app``.
Domain modules:
    - workspace:   Workspace, Slide
    - definition:  MetricDefinition, SubmetricDefinition, Metric, Submetric
    - annotation:  CommentThread, Comment
    - follow_up:   FollowUp, FollowUpAssignee
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
