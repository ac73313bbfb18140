from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; stored as-is so SQLite and PostgreSQL compare alike."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
