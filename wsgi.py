"""
WSGI entry point (gunicorn wsgi:app) and Flask-Migrate / Alembic target.

Usage:
    flask db upgrade
    flask backfill-submetric-keys --apply
"""

from app import create_app

app = create_app()
