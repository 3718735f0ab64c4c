"""
Recurring event projection.

Each recurring market event type carries a calendar rule. Projection is pure
arithmetic over that rule: given "now" it returns the first occurrence
strictly after it, so repeated projection is idempotent and never moves a
type's date backwards.
"""

import calendar
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from eventwatch.database.models import Category, Event, Impact, make_event_id

logger = logging.getLogger(__name__)

WEEKDAYS = {name.lower(): index for index, name in enumerate(calendar.day_name)}
INTERVAL_UNITS = ("days", "weeks", "months", "years")


class ProjectionError(Exception):
    """Raised when a recurrence rule is malformed."""

    pass


def ensure_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ProjectionError(f"Unknown timezone: {name}") from e


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _clamped_date(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _at(day: date, at: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=zone)


def _weekday(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 6:
        return value
    if isinstance(value, str) and value.lower() in WEEKDAYS:
        return WEEKDAYS[value.lower()]
    raise ProjectionError(f"Unknown weekday: {value!r}")


def parse_time(value: Any) -> time:
    """Parse "HH:MM" (or a time) into a time of day."""
    if isinstance(value, time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        # YAML 1.1 reads an unquoted 14:00 as the sexagesimal integer 840
        value = f"{value // 60}:{value % 60}"
    try:
        hour, minute = str(value).split(":")
        return time(int(hour), int(minute))
    except ValueError as e:
        raise ProjectionError(f"Invalid time of day: {value!r}") from e


class RecurrenceRule(ABC):
    """A calendar rule producing an infinite, fixed series of occurrences."""

    tz: str

    @property
    def zone(self) -> ZoneInfo:
        return _zone(self.tz)

    @abstractmethod
    def next_after(self, now: datetime) -> datetime:
        """First occurrence strictly after now, as an aware UTC datetime."""
        pass


@dataclass(frozen=True)
class MonthlyDayRule(RecurrenceRule):
    """The same day of every month; short months use their last day."""

    day: int
    at: time = time(0, 0)
    tz: str = "UTC"

    def __post_init__(self):
        if not 1 <= self.day <= 31:
            raise ProjectionError(f"Day of month out of range: {self.day}")
        _zone(self.tz)

    def next_after(self, now: datetime) -> datetime:
        now = ensure_aware(now)
        zone = self.zone
        local = now.astimezone(zone)
        year, month = local.year, local.month
        while True:
            candidate = _at(_clamped_date(year, month, self.day), self.at, zone)
            if candidate > now:
                return candidate.astimezone(timezone.utc)
            year, month = _add_months(year, month, 1)


@dataclass(frozen=True)
class NthWeekdayRule(RecurrenceRule):
    """The n-th weekday of each month (n=-1 for the last one)."""

    weekday: int
    n: int
    at: time = time(0, 0)
    tz: str = "UTC"

    def __post_init__(self):
        object.__setattr__(self, "weekday", _weekday(self.weekday))
        if self.n not in (1, 2, 3, 4, -1):
            raise ProjectionError(f"Weekday ordinal must be 1-4 or -1: {self.n}")
        _zone(self.tz)

    def _day_in(self, year: int, month: int) -> date:
        if self.n == -1:
            last = date(year, month, calendar.monthrange(year, month)[1])
            return last - timedelta(days=(last.weekday() - self.weekday) % 7)
        first = date(year, month, 1)
        offset = (self.weekday - first.weekday()) % 7
        return first + timedelta(days=offset + (self.n - 1) * 7)

    def next_after(self, now: datetime) -> datetime:
        now = ensure_aware(now)
        zone = self.zone
        local = now.astimezone(zone)
        year, month = local.year, local.month
        while True:
            candidate = _at(self._day_in(year, month), self.at, zone)
            if candidate > now:
                return candidate.astimezone(timezone.utc)
            year, month = _add_months(year, month, 1)


@dataclass(frozen=True)
class WeeklyRule(RecurrenceRule):
    """Every week on the same weekday."""

    weekday: int
    at: time = time(0, 0)
    tz: str = "UTC"

    def __post_init__(self):
        object.__setattr__(self, "weekday", _weekday(self.weekday))
        _zone(self.tz)

    def next_after(self, now: datetime) -> datetime:
        now = ensure_aware(now)
        zone = self.zone
        local = now.astimezone(zone)
        day = local.date() + timedelta(days=(self.weekday - local.weekday()) % 7)
        candidate = _at(day, self.at, zone)
        while candidate <= now:
            day += timedelta(days=7)
            candidate = _at(day, self.at, zone)
        return candidate.astimezone(timezone.utc)


@dataclass(frozen=True)
class IntervalRule(RecurrenceRule):
    """
    Anchor plus whole multiples of a fixed interval.

    Arithmetic runs on local wall-clock time so a release stays at its
    published hour across DST changes. Month and year steps keep the
    anchor's day of month, clamped for short months.
    """

    anchor: datetime
    every: int
    unit: str = "days"
    tz: str = "UTC"

    def __post_init__(self):
        if isinstance(self.every, bool) or not isinstance(self.every, int) or self.every <= 0:
            raise ProjectionError(f"Interval must be a positive integer: {self.every!r}")
        if self.unit not in INTERVAL_UNITS:
            raise ProjectionError(f"Unknown interval unit: {self.unit!r}")
        _zone(self.tz)

    def _occurrence(self, k: int) -> datetime:
        zone = self.zone
        base = self.anchor.astimezone(zone) if self.anchor.tzinfo else self.anchor
        wall_day, wall_time = base.date(), base.time().replace(tzinfo=None)
        if self.unit in ("days", "weeks"):
            step = timedelta(days=self.every * (7 if self.unit == "weeks" else 1))
            return _at(wall_day + step * k, wall_time, zone)
        months = self.every * (12 if self.unit == "years" else 1) * k
        year, month = _add_months(wall_day.year, wall_day.month, months)
        return _at(_clamped_date(year, month, wall_day.day), wall_time, zone)

    def _estimate(self, now: datetime) -> int:
        first = self._occurrence(0)
        if now < first:
            return 0
        if self.unit in ("days", "weeks"):
            step_days = self.every * (7 if self.unit == "weeks" else 1)
            return max(0, (now - first).days // step_days - 1)
        local = now.astimezone(self.zone)
        elapsed = (local.year - first.year) * 12 + (local.month - first.month)
        step_months = self.every * (12 if self.unit == "years" else 1)
        return max(0, elapsed // step_months - 1)

    def next_after(self, now: datetime) -> datetime:
        now = ensure_aware(now)
        k = self._estimate(now)
        candidate = self._occurrence(k)
        while candidate <= now:
            k += 1
            candidate = self._occurrence(k)
        return candidate.astimezone(timezone.utc)


@dataclass(frozen=True)
class FixedDatesRule(RecurrenceRule):
    """A published schedule that continues with a fallback rule once exhausted."""

    dates: tuple[datetime, ...]
    fallback: RecurrenceRule
    tz: str = "UTC"

    def __post_init__(self):
        if not isinstance(self.fallback, RecurrenceRule):
            raise ProjectionError("Fixed schedule requires a fallback rule")
        object.__setattr__(
            self, "dates", tuple(sorted(ensure_aware(d) for d in self.dates))
        )
        _zone(self.tz)

    def next_after(self, now: datetime) -> datetime:
        now = ensure_aware(now)
        for moment in self.dates:
            if moment > now:
                return moment.astimezone(timezone.utc)
        start = max(now, self.dates[-1]) if self.dates else now
        return self.fallback.next_after(start)


@dataclass(frozen=True)
class EventType:
    """A known recurring market event and its calendar rule."""

    key: str
    title: str
    description: str
    category: Category
    impact: Impact
    source: str
    rule: RecurrenceRule


def _parse_moment(value: Any, at: time, zone: ZoneInfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=zone)
    if isinstance(value, date):
        return _at(value, at, zone)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ProjectionError(f"Invalid date: {value!r}") from e
    if "T" not in str(value) and " " not in str(value):
        parsed = datetime.combine(parsed.date(), at)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=zone)


def build_rule(options: dict[str, Any], default_tz: str = "UTC") -> RecurrenceRule:
    """
    Build a recurrence rule from its configuration mapping.

    Args:
        options: Mapping with a ``kind`` key (monthly_day, nth_weekday, weekly,
            interval, fixed_dates) and the kind's parameters
        default_tz: Timezone used when the rule names none

    Returns:
        RecurrenceRule instance

    Raises:
        ProjectionError: If the rule is malformed
    """
    if not isinstance(options, dict):
        raise ProjectionError(f"Rule must be a mapping, got {type(options).__name__}")

    kind = options.get("kind")
    tz = options.get("timezone", default_tz)
    zone = _zone(tz)
    at = parse_time(options.get("time", "00:00"))

    try:
        if kind == "monthly_day":
            return MonthlyDayRule(day=int(options["day"]), at=at, tz=tz)

        elif kind == "nth_weekday":
            return NthWeekdayRule(
                weekday=_weekday(options["weekday"]), n=int(options["n"]), at=at, tz=tz
            )

        elif kind == "weekly":
            return WeeklyRule(weekday=_weekday(options["weekday"]), at=at, tz=tz)

        elif kind == "interval":
            return IntervalRule(
                anchor=_parse_moment(options["anchor"], at, zone),
                every=options["every"],
                unit=options.get("unit", "days"),
                tz=tz,
            )

        elif kind == "fixed_dates":
            fallback_options = options.get("fallback")
            if fallback_options is None:
                raise ProjectionError("fixed_dates rule requires a fallback")
            return FixedDatesRule(
                dates=tuple(_parse_moment(d, at, zone) for d in options["dates"]),
                fallback=build_rule(fallback_options, tz),
                tz=tz,
            )

        else:
            raise ProjectionError(f"Unknown rule kind: {kind!r}")

    except KeyError as e:
        raise ProjectionError(f"{kind} rule is missing {e.args[0]!r}") from e
    except (TypeError, ValueError) as e:
        raise ProjectionError(f"Malformed {kind} rule: {e}") from e


class EventProjector:
    """Projects recurring event types onto their next future date."""

    def project_next(self, event_type: EventType, now: datetime) -> datetime:
        """
        Next occurrence of an event type strictly after now.

        Raises:
            ProjectionError: If the rule cannot produce a future date
        """
        now = ensure_aware(now)
        occurs_at = event_type.rule.next_after(now)
        if occurs_at <= now:
            raise ProjectionError(
                f"Rule for {event_type.key} did not advance past {now.isoformat()}"
            )
        return occurs_at

    def project(self, event_type: EventType, now: datetime) -> Event:
        """Build the next Event of a type, with its stable id."""
        occurs_at = self.project_next(event_type, now)
        local_date = occurs_at.astimezone(event_type.rule.zone).date()
        return Event(
            event_id=make_event_id(event_type.key, local_date),
            title=event_type.title,
            description=event_type.description,
            category=event_type.category,
            impact=event_type.impact,
            occurs_at=occurs_at,
            source=event_type.source,
        )

    def project_all(
        self, event_types: Iterable[EventType], now: datetime
    ) -> Iterator[Event]:
        """Project every type; a broken rule only skips its own type."""
        for event_type in event_types:
            try:
                yield self.project(event_type, now)
            except ProjectionError as e:
                logger.error(f"Cannot project {event_type.key}: {e}")
