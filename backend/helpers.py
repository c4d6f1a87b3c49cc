import math
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_object_id(value) -> Optional[ObjectId]:
    """Return ``value`` as an ObjectId, or None when it is not a valid one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def isoformat_datetime(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    # pymongo hands back naive UTC datetimes
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what pymongo returns from the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
