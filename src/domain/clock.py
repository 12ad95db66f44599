from datetime import datetime, timedelta, timezone

# Events without an explicit end time are treated as running this long.
DEFAULT_EVENT_DURATION = timedelta(hours=24)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_until(moment: datetime, now: datetime) -> float:
    return (as_utc(moment) - as_utc(now)).total_seconds() / 3600


def event_end(starts_at: datetime, ends_at: datetime | None) -> datetime:
    if ends_at is not None:
        return as_utc(ends_at)
    return as_utc(starts_at) + DEFAULT_EVENT_DURATION


def event_has_passed(
    starts_at: datetime,
    ends_at: datetime | None,
    now: datetime,
) -> bool:
    return as_utc(now) > event_end(starts_at, ends_at)
