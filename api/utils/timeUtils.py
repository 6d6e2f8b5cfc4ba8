# utils/timeUtils.py
from datetime import datetime, timezone
from typing import Any, Optional

# Same layout SQLAlchemy uses for DATETIME on SQLite, so string comparisons
# in SQL order correctly there; PostgreSQL casts it to timestamptz.
DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcNow() -> datetime:
    return datetime.now(timezone.utc)


def toDbTime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(DB_TIME_FORMAT)


def fromDbTime(value: Any) -> Optional[datetime]:
    """
    Normalizes a timestamp read back from either driver into an aware UTC datetime.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
