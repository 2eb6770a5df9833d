"""Recurrence calculator: cron synthesis and timezone-aware next-run math.

Pure functions, no I/O. Cron expressions produced here use a 0-indexed month
field for YEARLY schedules (stored months are 1-12, the cron field carries
``month - 1``). Evaluation reads the month field back in that same dialect,
so every synthesized expression round-trips through croniter.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, NamedTuple, Optional, Sequence, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from schedule_engine.core.exceptions import RecurrenceError, ValidationError
from schedule_engine.models.schedule import IntervalUnit, ScheduleFrequency

DEFAULT_TIME_OF_DAY = "00:00"
DEFAULT_TIMEZONE = "UTC"
CRON_FIELD_COUNT = 5

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{1,2})$")

DateLike = Union[datetime, date, str]


@dataclass(frozen=True)
class RecurrenceConfig:
    """The frequency-related part of a schedule definition."""

    frequency: ScheduleFrequency = ScheduleFrequency.ONCE
    week_days: Optional[Sequence[int]] = None
    month_days: Optional[Sequence[int]] = None
    months: Optional[Sequence[int]] = None

    @classmethod
    def from_fields(cls, fields: Any) -> "RecurrenceConfig":
        """Build from a mapping or from any object exposing the same attributes."""
        get = fields.get if isinstance(fields, dict) else (lambda k: getattr(fields, k, None))
        return cls(
            frequency=ScheduleFrequency(get("frequency") or ScheduleFrequency.ONCE),
            week_days=get("week_days"),
            month_days=get("month_days"),
            months=get("months"),
        )


class NextRun(NamedTuple):
    next_run_at: datetime
    is_active: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name; raises RecurrenceError when unknown."""
    tz_name = name or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise RecurrenceError(f"Unknown timezone '{tz_name}'", tz_name) from e


def parse_time_of_day(value: Optional[str]) -> tuple[int, int]:
    """Parse ``HH:MM`` into ``(hour, minute)``."""
    raw = value or DEFAULT_TIME_OF_DAY
    match = _TIME_RE.match(raw.strip())
    if not match:
        raise ValidationError(f"timeOfDay must be in HH:MM format, got '{raw}'")
    hour, minute = int(match.group(1)), int(match.group(2))
    if not 0 <= hour <= 23:
        raise ValidationError(f"timeOfDay hour must be between 0 and 23, got '{raw}'")
    if not 0 <= minute <= 59:
        raise ValidationError(f"timeOfDay minute must be between 0 and 59, got '{raw}'")
    return hour, minute


def _join(values: Optional[Iterable[int]], default: str, offset: int = 0) -> str:
    items = [str(int(v) + offset) for v in (values or [])]
    return ",".join(items) if items else default


def synthesize_cron(
    config: RecurrenceConfig,
    time_of_day: Optional[str] = DEFAULT_TIME_OF_DAY,
    delay_minutes: int = 0,
) -> str:
    """Map a recurrence definition to a 5-field cron expression.

    ``delay_minutes`` shifts the time of day (wrapping across midnight) and
    is only used for first-occurrence expressions.
    """
    hour, minute = parse_time_of_day(time_of_day)
    if delay_minutes > 0:
        total = (hour * 60 + minute + delay_minutes) % (24 * 60)
        hour, minute = divmod(total, 60)

    frequency = ScheduleFrequency(config.frequency)
    if frequency == ScheduleFrequency.WEEKLY:
        expr = f"{minute} {hour} * * {_join(config.week_days, '*')}"
    elif frequency == ScheduleFrequency.MONTHLY:
        expr = f"{minute} {hour} {_join(config.month_days, '1')} * *"
    elif frequency == ScheduleFrequency.YEARLY:
        expr = f"{minute} {hour} {_join(config.month_days, '1')} {_join(config.months, '0', -1)} *"
    else:
        # DAILY and ONCE share a shape; ONCE is finished through status
        expr = f"{minute} {hour} * * *"

    if len(expr.split()) != CRON_FIELD_COUNT:
        raise RecurrenceError(f"Invalid cron expression generated: '{expr}'", expr)
    return expr


def _shift_month_item(item: str) -> str:
    if item == "*" or not item:
        return item
    base, sep, step = item.partition("/")
    if base != "*":
        base = "-".join(str(int(part) + 1) for part in base.split("-"))
    return f"{base}{sep}{step}"


def _to_croniter_expression(expr: str) -> str:
    """Translate the 0-indexed month field into croniter's 1-12 months."""
    fields = expr.split()
    if len(fields) != CRON_FIELD_COUNT:
        raise RecurrenceError(
            f"Cron expression must have {CRON_FIELD_COUNT} fields: '{expr}'", expr
        )
    try:
        fields[3] = ",".join(_shift_month_item(i) for i in fields[3].split(","))
    except ValueError as e:
        raise RecurrenceError(f"Invalid month field in cron expression '{expr}'", expr) from e
    return " ".join(fields)


def _iterate(expr: str, anchor: datetime) -> croniter:
    translated = _to_croniter_expression(expr)
    try:
        return croniter(translated, anchor)
    except (ValueError, KeyError) as e:
        raise RecurrenceError(f"Invalid cron expression '{expr}': {e}", expr) from e


def _next_after(expr: str, anchor: datetime) -> datetime:
    iterator = _iterate(expr, anchor)
    try:
        nxt = iterator.get_next(datetime)
    except (ValueError, KeyError) as e:
        raise RecurrenceError(f"Cannot evaluate cron expression '{expr}': {e}", expr) from e
    return nxt.astimezone(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def next_occurrence(
    cron_expression: str,
    start_date: datetime,
    end_date: Optional[datetime],
    tz_name: Optional[str] = DEFAULT_TIMEZONE,
    now: Optional[datetime] = None,
) -> NextRun:
    """First run at or after ``start_date`` if it lies ahead, else strictly after now.

    ``is_active`` is False when that run falls after ``end_date``.
    """
    zone = get_zone(tz_name)
    now = _aware(now or utcnow())
    start = _aware(start_date)

    if start > now:
        # croniter is exclusive; step back so a run exactly at start counts
        anchor = start - timedelta(seconds=1) if start.second == 0 and start.microsecond == 0 else start
    else:
        anchor = now
    next_run_at = _next_after(cron_expression, anchor.astimezone(zone))

    is_active = end_date is None or next_run_at <= _aware(end_date)
    return NextRun(next_run_at, is_active)


def next_occurrence_after(
    cron_expression: str,
    from_instant: datetime,
    tz_name: Optional[str] = DEFAULT_TIMEZONE,
) -> datetime:
    """Next run strictly after ``from_instant``, used to advance after an execution."""
    zone = get_zone(tz_name)
    return _next_after(cron_expression, _aware(from_instant).astimezone(zone))


# longest each month gets; February 29 still occurs in leap years
_MONTH_LENGTHS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}


def validate_recurrence(config: RecurrenceConfig) -> None:
    """Ensure the list matching the frequency is present and in range."""
    frequency = ScheduleFrequency(config.frequency)
    required = {
        ScheduleFrequency.WEEKLY: ("weekDays", config.week_days),
        ScheduleFrequency.MONTHLY: ("monthDays", config.month_days),
        ScheduleFrequency.YEARLY: ("months", config.months),
    }
    if frequency in required:
        name, values = required[frequency]
        if not values:
            raise ValidationError(f"{name} is required for {frequency.value} frequency")

    for name, values, low, high in (
        ("weekDays", config.week_days, 0, 6),
        ("monthDays", config.month_days, 1, 31),
        ("months", config.months, 1, 12),
    ):
        for v in values or []:
            if isinstance(v, bool) or not isinstance(v, int) or not low <= v <= high:
                raise ValidationError(f"{name} values must be integers between {low} and {high}")

    if frequency == ScheduleFrequency.YEARLY and config.month_days:
        if not any(day <= _MONTH_LENGTHS[month] for month in config.months for day in config.month_days):
            raise ValidationError("monthDays contains no day that exists in the selected months")


def validate_timezone(tz_name: Optional[str]) -> str:
    """Return the zone name, or raise ValidationError for user-supplied garbage."""
    try:
        get_zone(tz_name)
    except RecurrenceError:
        raise ValidationError(f"timezone '{tz_name}' is not a valid IANA timezone")
    return tz_name or DEFAULT_TIMEZONE


def parse_instant(value: DateLike, tz_name: Optional[str], field: str) -> datetime:
    """Coerce a date, datetime or ISO string into an aware UTC datetime.

    Naive values and bare dates are read in ``tz_name``.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{field} must be a valid date")
    zone = get_zone(tz_name)
    if isinstance(value, datetime):
        local = value if value.tzinfo else value.replace(tzinfo=zone)
    elif isinstance(value, date):
        local = datetime.combine(value, time(0, 0), tzinfo=zone)
    else:
        raise ValidationError(f"{field} must be a valid date")
    return local.astimezone(timezone.utc)


def normalize_start_date(value: Optional[DateLike], tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    if value is None:
        return _aware(now or utcnow())
    return parse_instant(value, tz_name, "startDate")


def normalize_end_date(value: Optional[DateLike], tz_name: Optional[str]) -> Optional[datetime]:
    """Move the end date to 23:59:59.999 on its calendar day in ``tz_name``."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("endDate must be a valid date")
    if isinstance(value, datetime):
        # the calendar day as the caller wrote it, whatever its offset
        day = value.date()
    elif isinstance(value, date):
        day = value
    else:
        raise ValidationError("endDate must be a valid date")
    end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=get_zone(tz_name))
    return end.astimezone(timezone.utc)


def interval_minutes(value: Optional[int], unit: Optional[IntervalUnit]) -> Optional[int]:
    """Sub-daily repeat interval in minutes; None when no interval is set."""
    if not value:
        return None
    if unit is not None and IntervalUnit(unit) == IntervalUnit.hours:
        return value * 60
    return value


def today_at(time_of_day: Optional[str], tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Today's ``HH:MM`` in ``tz_name``, as an aware UTC instant."""
    zone = get_zone(tz_name)
    hour, minute = parse_time_of_day(time_of_day)
    local_now = _aware(now or utcnow()).astimezone(zone)
    local = datetime.combine(local_now.date(), time(hour, minute), tzinfo=zone)
    return local.astimezone(timezone.utc)


def local_date(instant: datetime, tz_name: Optional[str]) -> date:
    return _aware(instant).astimezone(get_zone(tz_name)).date()


def local_midnight(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Start of the current day in ``tz_name``, as an aware UTC instant."""
    zone = get_zone(tz_name)
    local_now = _aware(now or utcnow()).astimezone(zone)
    return datetime.combine(local_now.date(), time(0, 0), tzinfo=zone).astimezone(timezone.utc)
