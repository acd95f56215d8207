"""
Calendar-day bucketing — pure functions, no DB access.

Offsets follow the browser convention: minutes to ADD to local time to get
UTC (UTC+2 is -120, UTC-5 is 300).
"""
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

logger = logging.getLogger(__name__)

DAY_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_OFFSET_MINUTES = 1440


@dataclass(frozen=True)
class DayRange:
    start: datetime
    end: datetime
    fallback: bool = False  # True when client hints were unusable and UTC was used

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


def is_day_key(value) -> bool:
    if not isinstance(value, str) or not DAY_KEY_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_day_key(value) -> str:
    """Stored dates may carry a time component; the day key is the first 10 chars."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def shift_day_key(day_key: str, days: int) -> str | None:
    """None when the shift leaves the representable calendar."""
    try:
        return (date.fromisoformat(day_key) + timedelta(days=days)).isoformat()
    except OverflowError:
        return None


def parse_offset(raw) -> float | None:
    """Header value -> offset in minutes, or None when unusable."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or abs(value) > MAX_OFFSET_MINUTES:
        return None
    return value


def parse_instant(value) -> datetime | None:
    """ISO string or datetime -> aware UTC datetime. Naive values are UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError:
        return None


def _utc_midnight(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def resolve_day_range(
    client_day: str | None = None,
    tz_offset_minutes=None,
    day_offset: int = 0,
    now: datetime | None = None,
) -> DayRange:
    """
    Returns the [start, end) UTC interval of one calendar day.

    With a valid client day and offset the day is the client's local day.
    Otherwise falls back to the UTC day of `now`; the result is flagged and
    the reason logged. Never raises on bad client hints.
    """
    offset = parse_offset(tz_offset_minutes)
    if is_day_key(client_day) and offset is not None:
        local_midnight = datetime.fromisoformat(client_day).replace(tzinfo=timezone.utc)
        try:
            start = local_midnight + timedelta(minutes=offset) + timedelta(days=day_offset)
            return DayRange(start, start + timedelta(days=1))
        except OverflowError:
            # 0001-01-01 / 9999-12-31 pushed past the calendar edge
            logger.info("Client day %r with offset %r is out of range: using UTC midnight",
                        client_day, tz_offset_minutes)
    elif client_day is not None or tz_offset_minutes is not None:
        logger.info(
            "Degraded day resolution (day=%r, offset=%r): using UTC midnight",
            client_day, tz_offset_minutes,
        )
    else:
        logger.info("No client timezone hints: using UTC midnight")
    start = _utc_midnight(now or datetime.now(timezone.utc)) + timedelta(days=day_offset)
    return DayRange(start, start + timedelta(days=1), fallback=True)


def resolve_day_key(instant, tz_offset_minutes=None) -> str:
    """Calendar day containing `instant`, in the client frame when an offset is given."""
    dt = parse_instant(instant)
    if dt is None:
        raise ValueError(f"not an instant: {instant!r}")
    offset = parse_offset(tz_offset_minutes)
    if offset is not None:
        try:
            dt = dt - timedelta(minutes=offset)
        except OverflowError:
            raise ValueError(f"{instant!r} is outside the calendar at offset {offset}") from None
    return dt.date().isoformat()


def frame_offset(day_range: DayRange, tz_offset_minutes) -> float | None:
    """The offset to key days with: None when the range fell back to UTC."""
    return None if day_range.fallback else parse_offset(tz_offset_minutes)
