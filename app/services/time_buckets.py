"""
Time bucket normalization for point-scoped comment threads.

Every observation timestamp is folded to the first day of its bucket and
rendered as "YYYY-MM-DD", so the same point on different slides lands on
the same thread key:

    normalize_to_bucket("2025-08-07", "week")    → "2025-08-04"  (ISO Monday)
    normalize_to_bucket("202508", "quarter")     → "2025-07-01"
"""

from collections import Counter
from datetime import date, datetime, timedelta

from app.core.exceptions import ValidationError
from app.models.annotation import BUCKET_TYPES


def validate_bucket_type(bucket_type) -> str:
    """Return the bucket type or raise ValidationError for anything outside the closed set."""
    if bucket_type not in BUCKET_TYPES:
        raise ValidationError(
            f"bucket_type must be one of: {', '.join(BUCKET_TYPES)}",
            details={"bucket_type": bucket_type},
        )
    return bucket_type


def parse_timestamp(value):
    """Parse YYYYMM, YYYYMMDD, ISO date or ISO datetime to a date; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) == 6 and text.isdigit():
            return date(int(text[:4]), int(text[4:6]), 1)
        if len(text) == 8 and text.isdigit():
            return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def bucket_start(day: date, bucket_type: str) -> date:
    if bucket_type == "day":
        return day
    if bucket_type == "week":
        return day - timedelta(days=day.weekday())
    if bucket_type == "month":
        return day.replace(day=1)
    if bucket_type == "quarter":
        return date(day.year, ((day.month - 1) // 3) * 3 + 1, 1)
    if bucket_type == "year":
        return date(day.year, 1, 1)
    validate_bucket_type(bucket_type)


def normalize_to_bucket(timestamp, bucket_type: str) -> str:
    """Stable bucket key ("YYYY-MM-DD") for a timestamp.

    Raises:
        ValidationError: unknown bucket type or unparseable timestamp.
    """
    validate_bucket_type(bucket_type)
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        raise ValidationError("Unparseable timestamp", details={"timestamp": str(timestamp)})
    return bucket_start(parsed, bucket_type).isoformat()


def detect_bucket_type(timestamps) -> str:
    """Guess the bucket type from the most common gap between consecutive points."""
    parsed = [d for d in (parse_timestamp(t) for t in timestamps or []) if d is not None]
    if len(parsed) < 2:
        return "day"

    deltas = Counter(abs((b - a).days) for a, b in zip(parsed, parsed[1:]))
    # Ties resolve to the wider interval
    interval = max(deltas, key=lambda d: (deltas[d], d))

    if interval < 7:
        return "day"
    if interval < 28:
        return "week"
    if interval < 90:
        return "month"
    if interval < 365:
        return "quarter"
    return "year"


def bucket_label(bucket_value: str, bucket_type: str) -> str:
    """Human-readable label for a bucket key; falls back to the raw value."""
    start = parse_timestamp(bucket_value)
    if start is None:
        return bucket_value
    if bucket_type == "day":
        return start.strftime("%d %b %Y")
    if bucket_type == "week":
        return f"Week of {start.strftime('%d %b %Y')}"
    if bucket_type == "month":
        return start.strftime("%B %Y")
    if bucket_type == "quarter":
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    if bucket_type == "year":
        return str(start.year)
    return bucket_value
