"""Date range resolution for sync windows.

Turns a preset ("last_7d", "this_month", ...) or a custom string
("2025-01-01,2025-01-31", "2025-01-01 to 2025-01-31", "2025-01-15") into an
inclusive [start, end] calendar range in the caller's timezone.

Current-period presets end at YESTERDAY: the current day's upstream data is
still accumulating. Only the literal "today" preset includes today.
"""

from __future__ import annotations

import logging
import re
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
MAX_RANGE_DAYS = 365

_ISO_DATE = r"\d{4}-\d{2}-\d{2}"
_SINGLE_DATE_RE = re.compile(rf"^({_ISO_DATE})$")
_CUSTOM_RANGE_RE = re.compile(rf"^({_ISO_DATE})\s*(?:,|\s+to\s+)\s*({_ISO_DATE})$", re.IGNORECASE)

# Preset aliases -> canonical preset
PRESET_ALIASES = {
    "today": "today",
    "yesterday": "yesterday",
    "last_7d": "last_7d",
    "last_7_days": "last_7d",
    "last_14d": "last_14d",
    "last_14_days": "last_14d",
    "last_30d": "last_30d",
    "last_30_days": "last_30d",
    "this_week": "this_week",
    "last_week": "last_week",
    "this_month": "this_month",
    "last_month": "last_month",
    "this_quarter": "this_quarter",
    "last_quarter": "last_quarter",
    "this_year": "this_year",
    "last_year": "last_year",
}


class DateRangeError(ValueError):
    """Raised for an unusable date range. `input` holds the offending value."""

    def __init__(self, message: str, input: Optional[str] = None):
        super().__init__(message)
        self.input = input


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar range as ISO `YYYY-MM-DD` strings."""

    start_date: str
    end_date: str

    @property
    def start(self) -> date:
        return datetime.strptime(self.start_date, DATE_FORMAT).date()

    @property
    def end(self) -> date:
        return datetime.strptime(self.end_date, DATE_FORMAT).date()

    @property
    def days(self) -> int:
        """Number of calendar days covered, both ends included."""
        return (self.end - self.start).days + 1

    @classmethod
    def from_dates(cls, start: date, end: date) -> "DateRange":
        return cls(start.strftime(DATE_FORMAT), end.strftime(DATE_FORMAT))


def _parse_iso_date(value: str, original: str) -> date:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError as exc:
        raise DateRangeError(f"Invalid calendar date '{value}'", input=original) from exc


def _parse_strict_date(value: Any) -> date:
    """Zero-padded YYYY-MM-DD only; strptime alone also accepts '2025-1-5'."""
    if not isinstance(value, str) or not _SINGLE_DATE_RE.match(value):
        raise DateRangeError(f"Malformed date {value!r}, expected YYYY-MM-DD", input=value)
    return _parse_iso_date(value, value)


def _week_start(day: date) -> date:
    """Sunday on or before `day` (weeks start on Sunday)."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _quarter_range(year: int, quarter: int) -> Tuple[date, date]:
    first_month = (quarter - 1) * 3 + 1
    last_month = first_month + 2
    return date(year, first_month, 1), date(year, last_month, monthrange(year, last_month)[1])


class DateRangeResolver:
    """
    Resolves presets and custom strings into validated date ranges.

    `timezone` decides what "today" means; `today_provider` overrides the clock
    (tests pin it to a fixed date).
    """

    def __init__(self, timezone: str = "UTC", today_provider: Optional[Callable[[], date]] = None):
        try:
            self.tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise DateRangeError(f"Unknown timezone '{timezone}'", input=timezone) from exc
        self._today_provider = today_provider

    def today(self) -> date:
        if self._today_provider is not None:
            return self._today_provider()
        return datetime.now(self.tz).date()

    def resolve(self, value: str) -> DateRange:
        """Resolve a preset, a custom range or a single date.

        Raises:
            DateRangeError: unknown preset, malformed or invalid date,
                or a custom range whose start is after its end.
        """
        if value is None:
            raise DateRangeError("Date range is required", input=value)
        if not isinstance(value, str):
            raise DateRangeError(f"Date range must be a string, got {type(value).__name__}", input=value)

        text = value.strip()
        preset = PRESET_ALIASES.get(text.lower())
        if preset is not None:
            return self._resolve_preset(preset)

        match = _CUSTOM_RANGE_RE.match(text)
        if match:
            start = _parse_iso_date(match.group(1), value)
            end = _parse_iso_date(match.group(2), value)
            if start > end:
                raise DateRangeError(
                    f"Start date {match.group(1)} is after end date {match.group(2)}", input=value
                )
            return DateRange.from_dates(start, end)

        match = _SINGLE_DATE_RE.match(text)
        if match:
            day = _parse_iso_date(match.group(1), value)
            return DateRange.from_dates(day, day)

        raise DateRangeError(
            f"Unrecognized date range '{value}'. Use a preset such as 'last_7d', "
            "'YYYY-MM-DD,YYYY-MM-DD', 'YYYY-MM-DD to YYYY-MM-DD' or 'YYYY-MM-DD'",
            input=value,
        )

    def _resolve_preset(self, preset: str) -> DateRange:
        today = self.today()
        yesterday = today - timedelta(days=1)

        if preset == "today":
            return DateRange.from_dates(today, today)
        if preset == "yesterday":
            return DateRange.from_dates(yesterday, yesterday)
        if preset in ("last_7d", "last_14d", "last_30d"):
            days = int(preset[len("last_"):-1])
            return DateRange.from_dates(today - timedelta(days=days), yesterday)

        if preset == "last_week":
            this_week_start = _week_start(today)
            return DateRange.from_dates(this_week_start - timedelta(days=7), this_week_start - timedelta(days=1))
        if preset == "last_month":
            first_of_this_month = today.replace(day=1)
            last_of_prev = first_of_this_month - timedelta(days=1)
            return DateRange.from_dates(last_of_prev.replace(day=1), last_of_prev)
        if preset == "last_quarter":
            quarter = (today.month - 1) // 3 + 1
            year = today.year
            if quarter == 1:
                quarter, year = 4, year - 1
            else:
                quarter -= 1
            return DateRange.from_dates(*_quarter_range(year, quarter))
        if preset == "last_year":
            return DateRange.from_dates(date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))

        # Current periods: this_week / this_month / this_quarter / this_year
        if preset == "this_week":
            period_start = _week_start(today)
        elif preset == "this_month":
            period_start = today.replace(day=1)
        elif preset == "this_quarter":
            period_start, _ = _quarter_range(today.year, (today.month - 1) // 3 + 1)
        else:
            period_start = date(today.year, 1, 1)

        # On the first day of a period nothing is complete yet: fall back to yesterday alone.
        if period_start > yesterday:
            logger.debug("[DATE_RANGE] %s has no completed day yet, using yesterday", preset)
            period_start = yesterday
        return DateRange.from_dates(period_start, yesterday)

    def validate(self, date_range: DateRange) -> DateRange:
        """Check syntax, ordering and the maximum span of a range.

        Call this on ranges built from separate fields (API payloads, CLI flags),
        not only on `resolve` output.
        """
        start = _parse_strict_date(date_range.start_date)
        end = _parse_strict_date(date_range.end_date)
        literal = f"{date_range.start_date} to {date_range.end_date}"

        if start > end:
            raise DateRangeError(
                f"Start date {date_range.start_date} is after end date {date_range.end_date}",
                input=literal,
            )
        if (end - start).days > MAX_RANGE_DAYS:
            raise DateRangeError(
                f"Date range spans {(end - start).days} days, maximum is {MAX_RANGE_DAYS}",
                input=literal,
            )
        return date_range

    def from_fields(self, start_date: str, end_date: str) -> DateRange:
        """Build a range from two deserialized fields and validate it."""
        if not isinstance(start_date, str) or not isinstance(end_date, str):
            raise DateRangeError("start_date and end_date must be YYYY-MM-DD strings",
                                 input=f"{start_date!r} to {end_date!r}")
        for value in (start_date, end_date):
            if not _SINGLE_DATE_RE.match(value.strip()):
                raise DateRangeError(f"Malformed date '{value}', expected YYYY-MM-DD", input=value)
        return self.validate(DateRange(start_date.strip(), end_date.strip()))

    def format_for_display(self, date_range: DateRange) -> str:
        return format_for_display(date_range)

    def get_relative_description(self, date_range: DateRange) -> str:
        """Human wording for a range: 'today', 'yesterday', 'last N days' or the literal range."""
        today = self.today()
        yesterday = today - timedelta(days=1)
        start, end = date_range.start, date_range.end

        if start == end == today:
            return "today"
        if start == end == yesterday:
            return "yesterday"
        if end == yesterday:
            span = (end - start).days + 1
            if span in (7, 14, 30):
                return f"last {span} days"
        return format_for_display(date_range)


def format_for_display(date_range: DateRange) -> str:
    """'YYYY-MM-DD' for a single day, otherwise 'YYYY-MM-DD to YYYY-MM-DD'."""
    if date_range.start_date == date_range.end_date:
        return date_range.start_date
    return f"{date_range.start_date} to {date_range.end_date}"
