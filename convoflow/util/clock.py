from datetime import UTC, datetime


def utcnow() -> datetime:
    # naive UTC: SQLite drops tzinfo, so every stored timestamp is naive
    return datetime.now(UTC).replace(tzinfo=None)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
