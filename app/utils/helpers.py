"""Shared utility functions used by services and blueprints.

get_or_raise:       fetch by primary key or raise NotFoundError
parse_date:         lenient date parsing, None on bad input
parse_date_input:   strict YYYY-MM-DD parsing, ValidationError on bad input
db_commit:          commit the session, mapping storage failures to StoreUnavailableError
dialect_insert:     PostgreSQL / SQLite INSERT with ON CONFLICT support
db_execute:         execute a statement with the same mapping
"""
import logging
from datetime import date, datetime

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError

from app.core.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from app.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    if not pk:
        raise NotFoundError(resource=label, resource_id=pk)
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def parse_date(value):
    """Parse a date string (ISO date or ISO datetime) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - date / datetime instances
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value, field="date"):
    """Parse a strict YYYY-MM-DD string, raising ValidationError on bad input.

    Empty input returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field} format. Use YYYY-MM-DD.", details={field: str(value)},
        ) from exc


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit(operation: str, **log_ids):
    """Commit the current SQLAlchemy session.

    OperationalError (statement timeout, lost connection) is rolled back,
    logged with ids only and re-raised as StoreUnavailableError so the
    caller sees a retryable failure. Anything else is rolled back and
    propagates unchanged.

    Usage::

        db_commit("post_comment", thread_id=thread.id)
    """
    try:
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Store unavailable on commit: %s", operation, extra=log_ids)
        raise StoreUnavailableError(operation) from exc
    except Exception:
        db.session.rollback()
        logger.exception("Commit failed: %s", operation, extra=log_ids)
        raise


def dialect_insert(model):
    """Dialect-specific INSERT construct supporting ON CONFLICT clauses."""
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"ON CONFLICT inserts not supported on dialect {dialect!r}")


def db_execute(statement, operation: str, **log_ids):
    """Execute a Core/ORM statement, mapping OperationalError to StoreUnavailableError."""
    try:
        return db.session.execute(statement)
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Store unavailable: %s", operation, extra=log_ids)
        raise StoreUnavailableError(operation) from exc
