"""
finsync command-line runner

Usage:
    python -m app.main run        # recurring engine now and every hour
    python -m app.main pull [--full]
    python -m app.main push
    python -m app.main sync
    python -m app.main snapshot
    python -m app.main balances
    python -m app.main budgets [YYYY-MM]
    python -m app.main serve      # start the mirror server
    python -m app.main status     # configuration and mirror reachability
"""

import argparse
import asyncio
import sys
from datetime import date
from typing import Optional

from finsync.audit import configure_logging
from finsync.config import get_settings, validate_all_settings
from finsync.models.records import month_key
from finsync.orchestrator import AppComponents, create_app_components
from finsync.server import run_server
from finsync.services.remote import RemoteMirrorClient


async def _run_scheduler(components: AppComponents) -> int:
    components.scheduler.start()
    print("Recurring scheduler running, Ctrl+C to stop.")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await components.scheduler.stop()


async def _run(command: str, args: argparse.Namespace) -> int:
    components = create_app_components()
    try:
        if get_settings().app.seed_defaults:
            await components.ledger.seed_defaults()

        if command == "run":
            return await _run_scheduler(components)

        if command == "pull":
            if args.full:
                result, message = await components.sync.force_full_pull()
            else:
                result, message = await components.sync.pull()
        elif command == "push":
            result, message = await components.sync.push()
            if result is not None:
                for error in result.errors:
                    print(f"  {error.table} #{error.item.get('id')}: {error.error}")
        elif command == "sync":
            result, message = await components.sync.full_sync()
        elif command == "snapshot":
            snapshot = await components.net_worth.take_snapshot()
            print(f"Net worth on {snapshot.date}: {snapshot.net_worth}")
            return 0
        elif command == "balances":
            summary = await components.net_worth.calculate()
            for balance in summary.accounts:
                print(f"{balance.name:<20} {balance.type.value:<12} {balance.balance:>12}")
            print(f"{'Net worth':<33} {summary.net_worth:>12}")
            return 0
        elif command == "budgets":
            month = args.month or month_key(date.today())
            summary = await components.budgets.monthly_summary(month)
            for line in summary.lines:
                print(f"{line.name:<20} {line.spent:>10} / {line.budget:<10} {line.percentage}%")
            print(f"{'Total':<20} {summary.total_spent:>10} / {summary.total_budget:<10}")
            return 0
        else:
            raise ValueError(f"Unknown command: {command}")

        print(message)
        return 0 if result is not None else 1
    except Exception as e:
        await components.audit_logger.log_error(
            error_type=type(e).__name__,
            error_message=str(e),
            details={"command": command},
        )
        raise
    finally:
        await components.remote.aclose()
        await components.store.close()


async def _status() -> int:
    """Print which settings groups load and whether the mirror answers."""
    status = validate_all_settings()
    ok = True
    for name in ("store", "remote", "sync", "recurring", "server", "app"):
        if status.get(name):
            print(f"  {name}: ok")
        else:
            ok = False
            print(f"  {name}: {status.get(f'{name}_error', 'invalid')}")

    remote = RemoteMirrorClient()
    try:
        reachable = await remote.health()
    finally:
        await remote.aclose()
    print(f"  mirror at {remote.base_url}: {'ok' if reachable else 'unreachable'}")
    return 0 if ok and reachable else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="finsync")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the recurring engine on a timer")
    pull = sub.add_parser("pull", help="Pull changes from the mirror")
    pull.add_argument("--full", action="store_true", help="Ignore the watermark")
    sub.add_parser("push", help="Push all local rows to the mirror")
    sub.add_parser("sync", help="Pull, then push")
    sub.add_parser("snapshot", help="Record today's net worth")
    sub.add_parser("balances", help="Show account balances and net worth")
    budgets = sub.add_parser("budgets", help="Show budget vs. spending")
    budgets.add_argument("month", nargs="?", help="YYYY-MM (default: this month)")
    sub.add_parser("serve", help="Run the mirror server")
    sub.add_parser("status", help="Check configuration and the mirror")
    args = parser.parse_args(argv)

    configure_logging(get_settings().app.debug_mode)

    if args.command == "serve":
        run_server()
        return 0

    try:
        if args.command == "status":
            return asyncio.run(_status())
        return asyncio.run(_run(args.command, args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
