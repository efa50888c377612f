# main.py

import argparse
import signal
import threading
from datetime import datetime, timedelta, timezone

from clansync.clans import clan_key, get_registry
from clansync.config import get_settings
from clansync.database import Database
from clansync.errors import ClanSyncError, ConfigurationError
from clansync.log import configure_logging
from clansync.models import OPERATION_ALL, OPERATIONS, BatchOutcome, FullUpdateOutcome, SyncOutcome
from clansync.orchestrator import build_orchestrator


def _safe_print(message: str) -> None:
    """Print with ASCII fallback for restricted terminal encodings."""
    try:
        print(message)
    except UnicodeEncodeError:
        print(message.encode("ascii", "replace").decode("ascii"))


def _print_outcome(outcome: SyncOutcome) -> None:
    status = "cancelled" if outcome.cancelled else "done"
    _safe_print(
        f"[{outcome.clan_tag}] {outcome.operation} {status}: "
        f"attempted={outcome.attempted} succeeded={outcome.succeeded} "
        f"failed={outcome.failed} new={outcome.new_records}"
    )
    for error in outcome.errors[:10]:
        _safe_print(f"    - {error.item_id}: {error.error_kind}")
    if len(outcome.errors) > 10:
        _safe_print(f"    ... {len(outcome.errors) - 10} more")


def _print_batch(batch: BatchOutcome) -> None:
    for outcome in batch.outcomes:
        _print_outcome(outcome)
    _safe_print(
        f"Total: attempted={batch.total_attempted} succeeded={batch.total_succeeded} "
        f"failed={batch.total_failed} new={batch.total_new_records}"
    )


def _print_full_update(full: FullUpdateOutcome) -> None:
    _print_batch(full.players)
    _print_batch(full.battles)


def cmd_sync(args, settings) -> int:
    registry = get_registry()
    db = Database(settings.db_path)
    orchestrator = build_orchestrator(settings, db=db, registry=registry)
    cancel_event = threading.Event()

    def _request_cancel(signum, frame):
        _safe_print("Cancelling after the in-flight item...")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _request_cancel)
    try:
        if args.operation == OPERATION_ALL:
            full = orchestrator.sync_full_update(
                cancel_event=cancel_event,
                max_workers=args.workers,
                tag=None if args.all else clan_key(args.clan or registry.default_clan().tag),
            )
            _print_full_update(full)
            return 0 if full.total_failed == 0 else 2
        if args.all:
            batch = orchestrator.sync_all_clans(
                args.operation, cancel_event=cancel_event, max_workers=args.workers
            )
            _print_batch(batch)
            return 0 if batch.total_failed == 0 else 2
        tag = clan_key(args.clan) if args.clan else registry.default_clan().tag
        outcome = orchestrator.sync_one_clan(tag, args.operation, cancel_event=cancel_event)
        _print_outcome(outcome)
        return 0 if outcome.failed == 0 else 2
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        db.close()


def cmd_clans(args, settings) -> int:
    registry = get_registry()
    try:
        default_tag = registry.default_clan().tag
    except ConfigurationError:
        default_tag = None
    for clan in registry.list_all():
        marker = "*" if clan.tag == default_tag else " "
        credential = "ladder" if clan.credential else "public"
        _safe_print(f"{marker} {clan.tag:<6} {clan.clan_id:<12} {clan.region:<4} {credential:<6} {clan.name}")
    return 0


def cmd_register(args, settings) -> int:
    registry = get_registry()
    db = Database(settings.db_path)
    orchestrator = build_orchestrator(settings, db=db, registry=registry)
    tag = clan_key(args.clan) if args.clan else registry.default_clan().tag
    try:
        result = orchestrator.register_player(tag, args.player, originating_user_id=args.user)
    except ConfigurationError:
        raise
    except ClanSyncError as e:
        _safe_print(f"Could not register {args.player}: {e}")
        return 2
    finally:
        db.close()
    _safe_print(f"Registered {args.player} as {result.player_id} ({result.action})")
    return 0


def cmd_stats(args, settings) -> int:
    registry = get_registry()
    clan = registry.resolve(clan_key(args.clan)) if args.clan else registry.default_clan()
    start = (datetime.now(timezone.utc) - timedelta(days=args.days)).isoformat()
    db = Database(settings.db_path)
    try:
        rows = db.get_clan_battle_player_stats(clan.clan_id, start=start)
        _safe_print(
            f"{clan.tag} clan battles, last {args.days} days "
            f"({db.count_battles()} battles stored, {db.count_players()} players)"
        )
        if not rows:
            _safe_print("No clan battles in range.")
            return 0
        for row in rows[: args.limit]:
            top_ship = max(row["ship_usage"].items(), key=lambda kv: kv[1])[0]
            _safe_print(
                f"  {row['player_name']:<24} battles={row['battles']:<4} "
                f"WR={row['win_rate']:.1f}% SR={row['survival_rate']:.1f}% ship={top_ship}"
            )
        return 0
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Clan roster and clan battle sync")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Sync players or clan battles")
    target = sync.add_mutually_exclusive_group()
    target.add_argument("--clan", help="Clan tag or id (default: configured default clan)")
    target.add_argument("--all", action="store_true", help="Sync every configured clan")
    sync.add_argument(
        "--operation",
        choices=OPERATIONS + (OPERATION_ALL,),
        default=OPERATIONS[0],
        help="all runs players then battles",
    )
    sync.add_argument("--workers", type=int, default=None, help="Concurrent clans for --all")
    sync.set_defaults(func=cmd_sync)

    clans = sub.add_parser("clans", help="List configured clans")
    clans.set_defaults(func=cmd_clans)

    register = sub.add_parser("register", help="Track a player for a clan on behalf of a user")
    register.add_argument("player", help="In-game name or account id")
    register.add_argument("--clan", help="Clan tag or id (default: configured default clan)")
    register.add_argument("--user", default="", help="Id of the user adding the player")
    register.set_defaults(func=cmd_register)

    stats = sub.add_parser("stats", help="Per-player clan battle stats")
    stats.add_argument("--clan", help="Clan tag or id (default: configured default clan)")
    stats.add_argument("--days", type=int, default=30)
    stats.add_argument("--limit", type=int, default=25)
    stats.set_defaults(func=cmd_stats)

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, verbose=args.verbose)

    try:
        return args.func(args, settings)
    except ConfigurationError as e:
        _safe_print(f"Configuration error: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
