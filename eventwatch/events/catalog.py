"""
Known recurring market events.
"""

import logging
from datetime import datetime, time, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from eventwatch.database.models import Category, Impact
from .projector import (
    EventType,
    FixedDatesRule,
    IntervalRule,
    MonthlyDayRule,
    NthWeekdayRule,
    ProjectionError,
    WeeklyRule,
    build_rule,
)

logger = logging.getLogger(__name__)

US_EASTERN = "America/New_York"

_ET = ZoneInfo(US_EASTERN)

# FOMC policy decision days (second day of each meeting), 14:00 ET
FOMC_DECISIONS = tuple(
    datetime(year, month, day, 14, 0, tzinfo=_ET)
    for year, month, day in [
        (2025, 1, 29), (2025, 3, 19), (2025, 5, 7), (2025, 6, 18),
        (2025, 7, 30), (2025, 9, 17), (2025, 10, 29), (2025, 12, 10),
        (2026, 1, 28), (2026, 3, 18), (2026, 4, 29), (2026, 6, 17),
        (2026, 7, 29), (2026, 9, 16), (2026, 10, 28), (2026, 12, 9),
    ]
)

# Published BLS CPI release days, 08:30 ET
CPI_RELEASES = tuple(
    datetime(2025, month, day, 8, 30, tzinfo=_ET)
    for month, day in [
        (1, 14), (2, 12), (3, 12), (4, 10), (5, 14), (6, 12),
        (7, 10), (8, 13), (9, 11), (10, 10), (11, 12), (12, 11),
    ]
)

DEFAULT_EVENT_TYPES: tuple[EventType, ...] = (
    EventType(
        key="FOMC",
        title="FOMC Meeting",
        description="Federal Open Market Committee meeting to discuss monetary policy",
        category=Category.FED,
        impact=Impact.HIGH,
        source="Federal Reserve",
        rule=FixedDatesRule(
            dates=FOMC_DECISIONS,
            fallback=IntervalRule(
                anchor=FOMC_DECISIONS[-1], every=6, unit="weeks", tz=US_EASTERN
            ),
            tz=US_EASTERN,
        ),
    ),
    EventType(
        key="FED-SPEECH",
        title="Fed Chair Speech",
        description="Federal Reserve Chair public remarks",
        category=Category.FED,
        impact=Impact.MEDIUM,
        source="Federal Reserve",
        rule=WeeklyRule(weekday=3, at=time(10, 0), tz=US_EASTERN),
    ),
    EventType(
        key="CPI",
        title="CPI Data Release",
        description="Consumer Price Index inflation data release",
        category=Category.FED,
        impact=Impact.HIGH,
        source="Bureau of Labor Statistics",
        rule=FixedDatesRule(
            dates=CPI_RELEASES,
            fallback=NthWeekdayRule(weekday=1, n=2, at=time(8, 30), tz=US_EASTERN),
            tz=US_EASTERN,
        ),
    ),
    EventType(
        key="NFP",
        title="Non-Farm Payrolls",
        description="Employment situation report",
        category=Category.FED,
        impact=Impact.HIGH,
        source="Bureau of Labor Statistics",
        rule=NthWeekdayRule(weekday=4, n=1, at=time(8, 30), tz=US_EASTERN),
    ),
    EventType(
        key="BTC-HALVING",
        title="Bitcoin Halving",
        description="Bitcoin block reward halving event",
        category=Category.CRYPTO,
        impact=Impact.HIGH,
        source="Bitcoin Network",
        rule=IntervalRule(
            anchor=datetime(2024, 4, 20, 0, 0, tzinfo=timezone.utc),
            every=4,
            unit="years",
        ),
    ),
    EventType(
        key="ETH-UPGRADE",
        title="Ethereum Network Upgrade",
        description="Major Ethereum network upgrade",
        category=Category.CRYPTO,
        impact=Impact.MEDIUM,
        source="Ethereum Foundation",
        rule=IntervalRule(
            anchor=datetime(2025, 5, 7, 10, 0, tzinfo=timezone.utc),
            every=8,
            unit="months",
        ),
    ),
    EventType(
        key="SEC-CRYPTO",
        title="SEC Crypto Regulation Update",
        description="SEC announcement on cryptocurrency regulations",
        category=Category.REGULATION,
        impact=Impact.HIGH,
        source="SEC",
        rule=MonthlyDayRule(day=15, at=time(10, 0), tz=US_EASTERN),
    ),
    EventType(
        key="CFTC-HEARING",
        title="CFTC Crypto Hearing",
        description="CFTC hearing on cryptocurrency derivatives",
        category=Category.REGULATION,
        impact=Impact.MEDIUM,
        source="CFTC",
        rule=IntervalRule(
            anchor=datetime(2025, 1, 15, 10, 0, tzinfo=_ET),
            every=3,
            unit="months",
            tz=US_EASTERN,
        ),
    ),
    EventType(
        key="TSLA-EARNINGS",
        title="Tesla Earnings",
        description="Tesla quarterly earnings report",
        category=Category.EARNINGS,
        impact=Impact.MEDIUM,
        source="Tesla Inc.",
        rule=IntervalRule(
            anchor=datetime(2025, 1, 22, 16, 30, tzinfo=_ET),
            every=3,
            unit="months",
            tz=US_EASTERN,
        ),
    ),
    EventType(
        key="MSTR-BTC",
        title="MicroStrategy Bitcoin Purchase",
        description="Potential MicroStrategy Bitcoin acquisition",
        category=Category.CRYPTO,
        impact=Impact.MEDIUM,
        source="MicroStrategy",
        rule=IntervalRule(
            anchor=datetime(2025, 1, 8, 8, 0, tzinfo=_ET),
            every=3,
            unit="months",
            tz=US_EASTERN,
        ),
    ),
)


def event_type_from_dict(entry: dict[str, Any], default_tz: str) -> EventType:
    """
    Build an EventType from a config entry.

    Raises:
        ProjectionError: If the entry or its rule is malformed
    """
    try:
        return EventType(
            key=str(entry["key"]),
            title=str(entry["title"]),
            description=str(entry.get("description", "")),
            category=Category(entry.get("category", "other")),
            impact=Impact(entry.get("impact", "medium")),
            source=str(entry.get("source", "")),
            rule=build_rule(entry["rule"], default_tz),
        )
    except KeyError as e:
        raise ProjectionError(f"Event type is missing {e.args[0]!r}") from e
    except ValueError as e:
        raise ProjectionError(str(e)) from e


def load_event_types(
    entries: Optional[list[dict[str, Any]]], default_tz: str = US_EASTERN
) -> list[EventType]:
    """
    Event types from configuration, or the built-in calendar when None.

    Malformed entries are logged and skipped so one bad rule never hides
    the other types.
    """
    if entries is None:
        return list(DEFAULT_EVENT_TYPES)

    event_types = []
    for index, entry in enumerate(entries):
        try:
            event_types.append(event_type_from_dict(entry, default_tz))
        except (ProjectionError, AttributeError, TypeError) as e:
            name = entry.get("key", index) if isinstance(entry, dict) else index
            logger.error(f"Skipping event type {name}: {e}")
    return event_types
