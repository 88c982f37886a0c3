"""Deferred request administration.

Usage:
    python -m scripts.deferred_admin cleanup [--days N] [--dry-run]
    python -m scripts.deferred_admin reconcile [--grace SECONDS]
    python -m scripts.deferred_admin status
    python -m scripts.deferred_admin work [--lanes high,default,low]

Operates on the configured store and lanes (DEFERRED_STORE_BACKEND,
DATABASE_URL, REDIS_URL); with the in-memory backend there is nothing
persistent to act on.
"""

import argparse
import asyncio
import logging
import sys

from backend.app.application import create_app
from backend.app.config import Settings, get_settings
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.service import DeferredServices
from backend.app.models.common import Priority


async def cleanup(services: DeferredServices, days: int, dry_run: bool) -> None:
    """Delete expired records past the retention window."""
    count = await services.maintenance.cleanup(days, dry_run=dry_run)
    if dry_run:
        print(f"Would delete {count} deferred request(s) expired more than {days} day(s) ago")
    else:
        print(f"Deleted {count} deferred request(s) expired more than {days} day(s) ago")


async def reconcile(services: DeferredServices, grace: int) -> None:
    """Re-enqueue pending records that were never picked up."""
    count = await services.maintenance.reconcile(grace)
    print(f"Re-enqueued {count} pending deferred request(s)")


async def status(services: DeferredServices) -> None:
    """Print lane depths and record counts."""
    snapshot = await services.maintenance.lane_status()

    print("Lanes:")
    for name, depth in snapshot.lanes.items():
        print(f"  {name:<16} {depth:>8} waiting")

    print("Requests:")
    for state, count in snapshot.statuses.items():
        print(f"  {state:<16} {count:>8}")


async def work(services: DeferredServices, lanes: list[Priority]) -> None:
    """Consume the given lanes until interrupted.

    Raises:
        StoreUnavailableError: If a consumer stops because the store is down.
    """
    await services.pool.start(lanes)
    print(f"Consuming lanes: {', '.join(lane.value for lane in lanes)} (Ctrl+C to stop)")
    try:
        await services.pool.wait()
    finally:
        await services.pool.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deferred request administration")
    sub = parser.add_subparsers(dest="command", required=True)

    p_cleanup = sub.add_parser("cleanup", help="Delete expired deferred requests")
    p_cleanup.add_argument("--days", type=int, default=None, help="Retention in days")
    p_cleanup.add_argument("--dry-run", action="store_true", help="Count without deleting")

    p_reconcile = sub.add_parser("reconcile", help="Re-enqueue stale pending requests")
    p_reconcile.add_argument("--grace", type=int, default=None, help="Grace period in seconds")

    sub.add_parser("status", help="Show lane depths and status counts")

    p_work = sub.add_parser("work", help="Run lane consumers in the foreground")
    p_work.add_argument(
        "--lanes", default="high,default,low", help="Comma-separated lanes to consume"
    )

    return parser


async def run(args: argparse.Namespace, settings: Settings) -> None:
    app = create_app(settings, start_workers=False)
    services: DeferredServices = app.state.deferred
    try:
        if args.command == "cleanup":
            days = settings.deferred_cleanup_retention_days if args.days is None else args.days
            await cleanup(services, days, args.dry_run)
        elif args.command == "reconcile":
            grace = settings.deferred_reconcile_grace_seconds if args.grace is None else args.grace
            await reconcile(services, grace)
        elif args.command == "status":
            await status(services)
        elif args.command == "work":
            lanes = [Priority(part.strip()) for part in args.lanes.split(",") if part.strip()]
            await work(services, lanes)
    finally:
        await services.close()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)

    try:
        asyncio.run(run(args, get_settings()))
    except KeyboardInterrupt:
        return 130
    except StoreUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
