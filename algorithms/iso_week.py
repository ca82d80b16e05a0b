"""ISO-8601 week identifiers and boundaries.

A week identifier is the integer ``YYYYWW`` built from the ISO year and ISO
week number. Boundaries run from Monday 00:00 to the following Monday 00:00
in an explicit reference timezone; nothing here reads the wall clock.
"""

import datetime
import re
from zoneinfo import ZoneInfo

DB_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_WEEK_TEXT = re.compile(r"^(\d{4})-?W(\d{2})$")


def _zone(tz: str | datetime.tzinfo) -> datetime.tzinfo:
    if isinstance(tz, datetime.tzinfo):
        return tz
    return ZoneInfo(tz)


def _aware(instant: datetime.datetime) -> datetime.datetime:
    # Naive instants are UTC throughout the engine.
    if instant.tzinfo is None:
        return instant.replace(tzinfo=datetime.timezone.utc)
    return instant


def week_id(instant: datetime.datetime, tz: str | datetime.tzinfo = "UTC") -> int:
    """Return the ``YYYYWW`` identifier of the week containing ``instant``."""
    year, week, _ = _aware(instant).astimezone(_zone(tz)).isocalendar()
    return year * 100 + week


def parse_week_id(value: int | str) -> int:
    """Normalise ``202642``, ``"202642"`` or ``"2026-W42"`` and validate it."""
    if isinstance(value, str):
        text = value.strip()
        match = _WEEK_TEXT.match(text)
        if match:
            year, week = int(match.group(1)), int(match.group(2))
        elif text.isdigit() and len(text) == 6:
            year, week = int(text[:4]), int(text[4:])
        else:
            raise ValueError(f"invalid ISO week identifier: {value!r}")
    else:
        year, week = divmod(int(value), 100)
    try:
        datetime.date.fromisocalendar(year, week, 1)
    except ValueError:
        raise ValueError(f"invalid ISO week identifier: {value!r}")
    return year * 100 + week


def week_bounds(
    iso_week: int, tz: str | datetime.tzinfo = "UTC"
) -> tuple[datetime.datetime, datetime.datetime]:
    """Return the half-open ``[start, end)`` UTC instants of ``iso_week``."""
    year, week = divmod(parse_week_id(iso_week), 100)
    zone = _zone(tz)
    monday = datetime.date.fromisocalendar(year, week, 1)
    next_monday = monday + datetime.timedelta(days=7)
    start = datetime.datetime.combine(monday, datetime.time(), tzinfo=zone)
    end = datetime.datetime.combine(next_monday, datetime.time(), tzinfo=zone)
    return start.astimezone(datetime.timezone.utc), end.astimezone(datetime.timezone.utc)


def previous_weeks(iso_week: int, count: int) -> list[int]:
    """The ``count`` week identifiers preceding ``iso_week``, most recent first."""
    year, week = divmod(parse_week_id(iso_week), 100)
    monday = datetime.date.fromisocalendar(year, week, 1)
    result = []
    for i in range(1, count + 1):
        y, w, _ = (monday - datetime.timedelta(weeks=i)).isocalendar()
        result.append(y * 100 + w)
    return result


def local_date(instant: datetime.datetime, tz: str | datetime.tzinfo = "UTC") -> datetime.date:
    return _aware(instant).astimezone(_zone(tz)).date()


def to_db_timestamp(instant: datetime.datetime) -> str:
    return _aware(instant).astimezone(datetime.timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def from_db_timestamp(text: str) -> datetime.datetime:
    value = datetime.datetime.fromisoformat(text.replace("T", " ").replace("Z", "+00:00"))
    return _aware(value).astimezone(datetime.timezone.utc)
