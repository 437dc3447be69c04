"""
Loreweaver CLI - manage offline-first sync from the command line.

Usage:
    loreweaver sync status [--json]
    loreweaver sync run [--json]
    loreweaver sync migrate [--json]
    loreweaver sync pending [--json]
    loreweaver sync conflicts [--json]
    loreweaver sync resolve CONFLICT_ID --strategy {local-wins,remote-wins,merge}
    loreweaver sync enable | disable
    loreweaver sync settings [--interval N] [--policy P] [--auto-sync | --no-auto-sync]
"""

import argparse
import logging
import sys

from loreweaver.bootstrap import create_services
from loreweaver.cli.commands import cmd_sync
from loreweaver.types import ConflictPolicy, SyncError

logger = logging.getLogger(__name__)

RESOLVE_STRATEGIES = ["local-wins", "remote-wins", "merge"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loreweaver",
        description="Offline-first sync for worldbuilding data",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_sync = subparsers.add_parser("sync", help="Sync with the remote store")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    sync_status = sync_sub.add_parser("status", help="Show sync status")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_run = sync_sub.add_parser("run", help="Run a full sync pass now")
    sync_run.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_migrate = sync_sub.add_parser(
        "migrate", help="First sync: upload everything when the remote is empty"
    )
    sync_migrate.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_pending = sync_sub.add_parser("pending", help="List queued operations")
    sync_pending.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_conflicts = sync_sub.add_parser("conflicts", help="List unresolved conflicts")
    sync_conflicts.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_resolve = sync_sub.add_parser("resolve", help="Resolve a pending conflict")
    sync_resolve.add_argument("conflict_id", help="Conflict ID (entityType:id)")
    sync_resolve.add_argument(
        "--strategy", "-s", choices=RESOLVE_STRATEGIES, default="merge", help="How to resolve"
    )

    sync_sub.add_parser("enable", help="Enable sync")
    sync_sub.add_parser("disable", help="Disable sync")

    sync_settings = sync_sub.add_parser("settings", help="Show or change sync settings")
    sync_settings.add_argument("--interval", type=int, help="Auto-sync interval in minutes")
    sync_settings.add_argument(
        "--policy", choices=[p.value for p in ConflictPolicy], help="Conflict policy"
    )
    sync_settings.add_argument(
        "--auto-sync", dest="auto_sync", action="store_true", default=None, help="Enable auto-sync"
    )
    sync_settings.add_argument(
        "--no-auto-sync", dest="auto_sync", action="store_false", help="Disable auto-sync"
    )
    sync_settings.add_argument(
        "--max-offline", dest="max_offline", type=int, help="Queue size that triggers a warning"
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        services = create_services()
    except (ValueError, OSError) as e:
        logger.error(f"Failed to initialize loreweaver: {e}")
        sys.exit(1)

    try:
        if args.command == "sync":
            cmd_sync(args, services)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    main()
