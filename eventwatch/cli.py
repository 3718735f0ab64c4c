"""
CLI commands for eventwatch.
"""

import argparse
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from eventwatch.app import build_notifiers
from eventwatch.config import AppConfig, load_config
from eventwatch.database.connection import Database
from eventwatch.database.models import (
    Channel,
    Event,
    ImpactFilter,
    NotificationPolicy,
    Subscriber,
    User,
)
from eventwatch.database.repository import (
    DispatchLedger,
    EventRepository,
    PolicyRepository,
    UserRepository,
)
from eventwatch.events.catalog import US_EASTERN, load_event_types
from eventwatch.events.projector import EventProjector
from eventwatch.notifiers.base import DeliveryOutcome
from eventwatch.notifiers.dispatcher import ChannelDispatcher
from eventwatch.rules.engine import EligibilityMatcher
from eventwatch.rules.types import Notification, build_message


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def add_user(
    db: Database,
    email: Optional[str] = None,
    push_endpoint: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> User:
    """Add a new user; a channel is opted in when its address is given."""
    repo = UserRepository(db)
    user = User(
        email=email,
        push_endpoint=push_endpoint,
        chat_id=chat_id,
        email_enabled=bool(email),
        push_enabled=bool(push_endpoint),
        chat_enabled=bool(chat_id),
    )
    return repo.create(user)


def set_policy(
    db: Database,
    user_id: int,
    windows: str,
    channels: str,
    impact_filter: str = "all",
    enabled: bool = True,
) -> NotificationPolicy:
    """Create or replace a user's notification policy."""
    policy = NotificationPolicy(
        lead_windows_days=frozenset(int(w) for w in _split(windows)),
        channels=frozenset(_split(channels)),
        impact_filter=ImpactFilter(impact_filter),
    )
    PolicyRepository(db).set_policy(user_id, policy, enabled=enabled)
    return policy


def project_events(
    db: Database,
    event_entries: Optional[list] = None,
    tz: str = US_EASTERN,
    now: Optional[datetime] = None,
) -> dict:
    """Project every event type and store new occurrences."""
    now = now or datetime.now(timezone.utc)
    repo = EventRepository(db)
    projector = EventProjector()

    created = []
    existing = []
    for event in projector.project_all(load_event_types(event_entries, tz), now):
        if repo.upsert(event, now=now):
            created.append(event.event_id)
        else:
            existing.append(event.event_id)

    return {"created": created, "existing": existing}


def send_test_notification(
    db: Database,
    dispatcher: ChannelDispatcher,
    user_id: int,
    tz: str = US_EASTERN,
    now: Optional[datetime] = None,
) -> Optional[dict[Channel, DeliveryOutcome]]:
    """
    Send the next upcoming event to one user right away.

    Lead windows and the dispatch ledger are bypassed, so this can be run
    any number of times. Returns None when no event is upcoming.
    """
    now = now or datetime.now(timezone.utc)
    user = UserRepository(db).get_by_id(user_id)
    policy = PolicyRepository(db).get_policy(user_id)
    if user is None or policy is None:
        raise ValueError(f"User {user_id} has no notification policy")

    upcoming = EventRepository(db).list_upcoming(1, now)
    if not upcoming:
        return None

    event = upcoming[0]
    days = EligibilityMatcher(tz).days_until(event, now)
    resolved = policy.resolve_channels(user.enabled_channels)
    notification = Notification(
        event=event,
        subscriber=Subscriber(
            user_id=user.id,
            policy=policy,
            enabled_channels=user.enabled_channels,
            contact=user.contact,
        ),
        lead_window_days=days,
        channels=tuple(c for c in Channel if c in resolved),
        message=build_message(event, days),
    )
    return dispatcher.dispatch(notification)


def _format_event(event: Event) -> str:
    flag = " [ignored]" if event.ignored else ""
    when = event.occurs_at.strftime("%Y-%m-%d %H:%M UTC")
    return f"{event.event_id}: {event.title} @ {when} ({event.impact.value}){flag}"


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="eventwatch CLI")
    parser.add_argument("--db", help="Database path (overrides config)")
    parser.add_argument("--config", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="Email address")
    add_user_parser.add_argument("--push", help="Push endpoint URL")
    add_user_parser.add_argument("--chat", help="Telegram chat ID")

    user_subparsers.add_parser("list", help="List users")

    # Policy commands
    policy_parser = subparsers.add_parser("policy", help="Notification policies")
    policy_subparsers = policy_parser.add_subparsers(dest="action")

    set_policy_parser = policy_subparsers.add_parser("set", help="Set policy")
    set_policy_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_policy_parser.add_argument(
        "--windows", required=True, help="Comma-separated lead windows in days"
    )
    set_policy_parser.add_argument(
        "--channels", required=True, help="Comma-separated channels (email,push,chat)"
    )
    set_policy_parser.add_argument(
        "--filter", default="all", choices=[f.value for f in ImpactFilter]
    )
    set_policy_parser.add_argument(
        "--disabled", action="store_true", help="Store the policy switched off"
    )

    show_policy_parser = policy_subparsers.add_parser("show", help="Show policy")
    show_policy_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Event commands
    events_parser = subparsers.add_parser("events", help="Event management")
    events_subparsers = events_parser.add_subparsers(dest="action")

    events_subparsers.add_parser("project", help="Project upcoming events")

    list_events_parser = events_subparsers.add_parser("list", help="List upcoming events")
    list_events_parser.add_argument("--limit", type=int, default=50)
    list_events_parser.add_argument(
        "--all", action="store_true", help="Include ignored events"
    )

    approaching_parser = events_subparsers.add_parser(
        "approaching", help="Events within the next days"
    )
    approaching_parser.add_argument("--days", type=int, default=7)

    for action, help_text in (
        ("ignore", "Ignore event"),
        ("unignore", "Stop ignoring event"),
        ("delete", "Delete event"),
    ):
        event_id_parser = events_subparsers.add_parser(action, help=help_text)
        event_id_parser.add_argument("event_id", help="Event ID, e.g. FOMC-2025-09-17")

    events_subparsers.add_parser("summary", help="Upcoming impact summary")

    test_events_parser = events_subparsers.add_parser(
        "test", help="Send the next event to a user now"
    )
    test_events_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Ledger commands
    ledger_parser = subparsers.add_parser("ledger", help="Dispatch ledger")
    ledger_subparsers = ledger_parser.add_subparsers(dest="action")

    show_ledger_parser = ledger_subparsers.add_parser("show", help="Show user history")
    show_ledger_parser.add_argument("--user", type=int, required=True, help="User ID")
    show_ledger_parser.add_argument("--limit", type=int, default=50)

    prune_parser = ledger_subparsers.add_parser("prune", help="Prune old records")
    prune_parser.add_argument(
        "--margin", type=int, help="Days kept past the longest lead window"
    )

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("init", help="Create tables")

    args = parser.parse_args()

    config = load_config(args.config) if args.config else None
    db_path = args.db or (config.database.path if config else "data/eventwatch.db")
    tz = config.schedule.timezone if config else US_EASTERN
    now = datetime.now(timezone.utc)

    # Initialize database
    db = Database(db_path)
    db.initialize()

    # Handle commands
    if args.command == "user":
        if args.action == "add":
            user = add_user(db, email=args.email, push_endpoint=args.push, chat_id=args.chat)
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            repo = UserRepository(db)
            for user in repo.list_all():
                channels = ", ".join(c.value for c in Channel if c in user.enabled_channels)
                print(f"ID: {user.id}, Email: {user.email}, Channels: {channels or '-'}")

    elif args.command == "policy":
        if args.action == "set":
            policy = set_policy(
                db,
                args.user,
                windows=args.windows,
                channels=args.channels,
                impact_filter=args.filter,
                enabled=not args.disabled,
            )
            print(f"Policy saved for user {args.user}: {sorted(policy.lead_windows_days)}")
        elif args.action == "show":
            policy = PolicyRepository(db).get_policy(args.user)
            if policy is None:
                print(f"No policy for user {args.user}")
            else:
                print(f"Lead windows: {sorted(policy.lead_windows_days)}")
                print(f"Channels: {sorted(c.value for c in policy.channels)}")
                print(f"Impact filter: {policy.impact_filter.value}")

    elif args.command == "events":
        repo = EventRepository(db)
        if args.action == "project":
            result = project_events(db, config.events if config else None, tz, now)
            print(f"Created: {result['created']}")
            if result["existing"]:
                print(f"Already known: {result['existing']}")
        elif args.action == "list":
            if args.all:
                events = repo.list_all_upcoming(args.limit, now)
            else:
                events = repo.list_upcoming(args.limit, now)
            for event in events:
                print(_format_event(event))
        elif args.action == "approaching":
            matcher = EligibilityMatcher(tz)
            upcoming = repo.list_upcoming(50, now)
            for event, days in matcher.approaching(upcoming, now, args.days):
                print(f"{days}d  {_format_event(event)}")
        elif args.action in ("ignore", "unignore", "delete"):
            action = {
                "ignore": repo.mark_ignored,
                "unignore": repo.unignore,
                "delete": repo.delete,
            }[args.action]
            if action(args.event_id):
                print(f"{args.action.title()}d {args.event_id}")
            else:
                print(f"Event not found: {args.event_id}")
        elif args.action == "summary":
            summary = repo.summarize(now)
            print(f"Upcoming events: {summary['total_events']}")
            print(
                f"High: {summary['high_impact']}, Medium: {summary['medium_impact']}, "
                f"Low: {summary['low_impact']}"
            )
            next_high = summary["next_high_impact_event"]
            if next_high:
                print(f"Next high impact: {_format_event(next_high)}")
        elif args.action == "test":
            app_config = config or AppConfig()
            dispatcher = ChannelDispatcher(
                build_notifiers(app_config),
                timeout_seconds=app_config.dispatch.channel_timeout_seconds,
            )
            try:
                outcomes = send_test_notification(db, dispatcher, args.user, tz, now)
            except ValueError as e:
                print(e)
            else:
                if outcomes is None:
                    print("No upcoming events found")
                elif not outcomes:
                    print(f"User {args.user} has no enabled channels")
                for channel, outcome in (outcomes or {}).items():
                    detail = f" ({outcome.error})" if outcome.error else ""
                    print(f"{channel.value}: {outcome.status.value}{detail}")

    elif args.command == "ledger":
        ledger = DispatchLedger(db)
        if args.action == "show":
            for record in ledger.list_for_user(args.user, args.limit):
                sent = ", ".join(sorted(c.value for c in record.channels_sent)) or "-"
                print(
                    f"{record.event_id} ({record.lead_window_days}d) "
                    f"claimed {record.created_at.isoformat()} sent: {sent}"
                )
        elif args.action == "prune":
            if args.margin is not None:
                margin = args.margin
            else:
                margin = config.ledger.retention_margin_days if config else 7
            subscribers = PolicyRepository(db).list_active_policies()
            horizon = ledger.retention_horizon_days(subscribers, margin)
            removed = ledger.prune(now, horizon)
            print(f"Pruned {removed} records older than {horizon} days")

    elif args.command == "db":
        if args.action == "init":
            print(f"Database initialized at {db_path}")

    db.close()


if __name__ == "__main__":
    main()
