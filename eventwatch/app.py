"""
Dispatch cycle orchestration.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from eventwatch.config import AppConfig
from eventwatch.database.connection import Database, StoreUnavailable
from eventwatch.database.models import Channel
from eventwatch.database.repository import (
    DispatchLedger,
    EventRepository,
    PolicyRepository,
)
from eventwatch.events.catalog import load_event_types
from eventwatch.events.projector import EventProjector, EventType
from eventwatch.notifiers.base import DeliveryOutcome, DeliveryStatus, NotifierFactory
from eventwatch.notifiers.dispatcher import ChannelDispatcher
from eventwatch.rules.engine import EligibilityMatcher, Notification

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleState(str, Enum):
    """Observable phase of a dispatch cycle."""

    IDLE = "idle"
    PROJECTING = "projecting"
    MATCHING = "matching"
    DISPATCHING = "dispatching"


@dataclass
class CycleSummary:
    """Counts for one run; delivered/failed/skipped are channel outcomes."""

    events_projected: int = 0
    candidates_matched: int = 0
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def count(self, outcomes: Iterable[DeliveryOutcome]) -> None:
        for outcome in outcomes:
            if outcome.status is DeliveryStatus.DELIVERED:
                self.delivered += 1
            elif outcome.status is DeliveryStatus.FAILED:
                self.failed += 1
            else:
                self.skipped += 1


class DispatchCycle:
    """One pass of project, match, claim and dispatch."""

    def __init__(
        self,
        events: EventRepository,
        policies: PolicyRepository,
        ledger: DispatchLedger,
        dispatcher: ChannelDispatcher,
        event_types: Iterable[EventType] = (),
        projector: Optional[EventProjector] = None,
        matcher: Optional[EligibilityMatcher] = None,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int = 4,
        upcoming_limit: int = 50,
        retention_margin_days: int = 7,
        prune: bool = True,
        dry_run: bool = False,
    ):
        """
        Initialize dispatch cycle.

        Args:
            events: Event store
            policies: Policy source; anything with list_active_policies()
            ledger: Dedup ledger
            dispatcher: Channel fan-out
            event_types: Recurring event types to project each run
            projector: Event projector
            matcher: Eligibility matcher
            clock: Returns the current aware datetime
            max_workers: Concurrent candidate dispatches
            upcoming_limit: Max events considered per run
            retention_margin_days: Days kept past the longest lead window
            prune: Prune the ledger after dispatching
            dry_run: Match and log without claiming or sending
        """
        self.events = events
        self.policies = policies
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.event_types = list(event_types)
        self.projector = projector or EventProjector()
        self.matcher = matcher or EligibilityMatcher()
        self.clock = clock
        self.max_workers = max_workers
        self.upcoming_limit = upcoming_limit
        self.retention_margin_days = retention_margin_days
        self.prune = prune
        self.dry_run = dry_run
        self._state = CycleState.IDLE

    @property
    def state(self) -> CycleState:
        return self._state

    def run_cycle(self) -> CycleSummary:
        """
        Run one dispatch cycle.

        Never raises for store, policy-source or channel trouble; those end
        up in the returned summary.
        """
        summary = CycleSummary()
        now = self.clock()
        logger.info(f"Dispatch cycle starting at {now.isoformat()}")

        try:
            self._state = CycleState.PROJECTING
            summary.events_projected = self._project(now)

            self._state = CycleState.MATCHING
            upcoming = self.events.list_upcoming(self.upcoming_limit, now)
            subscribers = self.policies.list_active_policies()
            candidates = list(self.matcher.match_all(upcoming, subscribers, now))
            summary.candidates_matched = len(candidates)
        except StoreUnavailable as e:
            return self._abort(summary, f"Store unavailable: {e}")
        except Exception as e:
            logger.exception("Unexpected error before dispatch")
            return self._abort(summary, str(e))

        logger.info(
            f"{len(upcoming)} upcoming events, {len(subscribers)} active policies, "
            f"{len(candidates)} candidates"
        )

        if self.dry_run:
            for candidate in candidates:
                logger.info(
                    f"[dry run] would notify user {candidate.user_id} about "
                    f"{candidate.event.event_id} ({candidate.lead_window_days}d) via "
                    f"{', '.join(c.value for c in candidate.channels)}"
                )
            self._state = CycleState.IDLE
            return summary

        self._state = CycleState.DISPATCHING
        try:
            self._dispatch(candidates, now, summary)
        finally:
            self._state = CycleState.IDLE

        if self.prune and not summary.aborted:
            self._prune(subscribers, now)

        logger.info(f"Dispatch cycle finished: {summary.as_dict()}")
        return summary

    def _abort(self, summary: CycleSummary, error: str) -> CycleSummary:
        logger.error(f"Dispatch cycle aborted: {error}")
        summary.aborted = True
        summary.error = error
        self._state = CycleState.IDLE
        return summary

    def _project(self, now: datetime) -> int:
        """Upsert the next occurrence of every event type."""
        projected = 0
        for event in self.projector.project_all(self.event_types, now):
            if self.events.upsert(event, now=now):
                logger.debug(f"New event {event.event_id} at {event.occurs_at.isoformat()}")
            projected += 1
        return projected

    def _dispatch(
        self, candidates: list[Notification], now: datetime, summary: CycleSummary
    ) -> None:
        """Claim on this thread, send on the pool, record on this thread."""
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dispatch"
        ) as pool:
            in_flight = {}
            for candidate in candidates:
                try:
                    claimed = self.ledger.try_claim(
                        candidate.event.event_id,
                        candidate.user_id,
                        candidate.lead_window_days,
                        candidate.event.occurs_at,
                        now=now,
                    )
                except StoreUnavailable as e:
                    # Unclaimed candidates are retried next cycle
                    logger.error(f"Ledger unavailable, stopping claims: {e}")
                    summary.aborted = True
                    summary.error = f"Store unavailable: {e}"
                    break
                except Exception as e:
                    logger.error(f"Error claiming {candidate.dedup_key}: {e}")
                    summary.failed += 1
                    continue

                if not claimed:
                    logger.debug(f"Already notified: {candidate.dedup_key}")
                    continue

                summary.claimed += 1
                in_flight[pool.submit(self.dispatcher.dispatch, candidate)] = candidate

            for future in as_completed(in_flight):
                candidate = in_flight[future]
                try:
                    outcomes = future.result()
                except Exception as e:
                    logger.error(f"Error dispatching {candidate.dedup_key}: {e}")
                    summary.failed += 1
                    continue

                summary.count(outcomes.values())
                self._record(candidate, outcomes)

    def _record(
        self, candidate: Notification, outcomes: dict[Channel, DeliveryOutcome]
    ) -> None:
        delivered = [channel for channel, outcome in outcomes.items() if outcome.success]
        try:
            self.ledger.record_delivery(candidate.dedup_key, delivered)
        except StoreUnavailable as e:
            # The claim itself is durable, so no duplicate can follow
            logger.error(f"Could not record delivery for {candidate.dedup_key}: {e}")
        if delivered:
            logger.info(
                f"Notified user {candidate.user_id} about {candidate.event.event_id} "
                f"via {', '.join(c.value for c in delivered)}"
            )

    def _prune(self, subscribers, now: datetime) -> None:
        try:
            horizon = self.ledger.retention_horizon_days(
                subscribers, self.retention_margin_days
            )
            removed = self.ledger.prune(now, horizon)
            if removed:
                logger.info(f"Pruned {removed} dispatch records older than {horizon} days")
        except Exception as e:
            logger.error(f"Ledger prune failed: {e}")


def build_notifiers(config: AppConfig) -> dict:
    """Create one notifier per channel from the notifications section."""
    notifications = config.notifications
    sections = {
        Channel.EMAIL: ("email", notifications.email),
        Channel.PUSH: ("push", notifications.push),
        Channel.CHAT: ("chat", notifications.chat),
    }
    # Transports give up by the dispatch deadline
    timeout = config.dispatch.channel_timeout_seconds
    return {
        channel: NotifierFactory.create({"type": kind, "timeout": timeout, **asdict(section)})
        for channel, (kind, section) in sections.items()
    }


def build_cycle(
    config: AppConfig,
    db: Database,
    clock: Callable[[], datetime] = utc_now,
    dry_run: bool = False,
) -> DispatchCycle:
    """Wire a DispatchCycle from configuration and an open database."""
    dispatcher = ChannelDispatcher(
        build_notifiers(config),
        timeout_seconds=config.dispatch.channel_timeout_seconds,
    )
    return DispatchCycle(
        events=EventRepository(db),
        policies=PolicyRepository(db),
        ledger=DispatchLedger(db),
        dispatcher=dispatcher,
        event_types=load_event_types(config.events, config.schedule.timezone),
        matcher=EligibilityMatcher(config.schedule.timezone),
        clock=clock,
        max_workers=config.dispatch.max_workers,
        upcoming_limit=config.dispatch.upcoming_limit,
        retention_margin_days=config.ledger.retention_margin_days,
        prune=config.ledger.prune_each_cycle,
        dry_run=dry_run,
    )
