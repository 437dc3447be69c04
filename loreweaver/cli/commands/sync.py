"""Sync commands for the loreweaver CLI."""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from loreweaver.types import ConflictPolicy, ConflictStrategy, SyncReport, parse_datetime

if TYPE_CHECKING:
    from loreweaver.bootstrap import Services

logger = logging.getLogger(__name__)


def format_elapsed(value) -> str:
    """Human-readable age of an ISO timestamp."""
    when = parse_datetime(value)
    if when is None:
        return "Never"
    seconds = (datetime.now(timezone.utc) - when).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds / 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds / 3600)} hours ago"
    return f"{int(seconds / 86400)} days ago"


def _print_report(report: SyncReport, as_json: bool = False) -> None:
    if as_json:
        data = {
            "success": report.success,
            "pushed": report.pushed,
            "pulled": report.pulled,
            "conflicts_detected": report.conflicts_detected,
            "conflicts_resolved": report.conflicts_resolved,
            "operations_processed": report.operations_processed,
            "operations_failed": report.operations_failed,
            "errors": report.errors,
            "skipped_reason": report.skipped_reason,
        }
        print(json.dumps(data, indent=2))
        return

    if report.skipped_reason:
        print(f"⚠️  Sync skipped: {report.skipped_reason}")
        return
    icon = "✓" if report.success else "✗"
    print(f"{icon} Pushed {report.pushed}, pulled {report.pulled}")
    if report.conflicts_detected:
        print(
            f"   Conflicts: {report.conflicts_detected} detected, "
            f"{report.conflicts_resolved} resolved"
        )
    if report.operations_processed or report.operations_failed:
        print(
            f"   Queue: {report.operations_processed} sent, "
            f"{report.operations_failed} still pending"
        )
    for error in report.errors:
        print(f"   ✗ {error}")


def cmd_sync(args, services: "Services"):
    """Handle sync subcommands."""
    manager = services.manager

    if args.sync_action == "status":
        status = manager.get_sync_status()
        if args.json:
            print(json.dumps(status.to_dict(), indent=2, default=str))
            return

        print("Sync Status")
        print("=" * 50)
        print()
        enabled_icon = "🟢" if status.sync_enabled else "⚪"
        print(f"{enabled_icon} Sync: {'enabled' if status.sync_enabled else 'disabled'}")
        online = services.remote.is_online()
        print(f"{'🟢' if online else '🔴'} Remote: {'reachable' if online else 'offline'}")
        if services.remote.user_id:
            print(f"   User: {services.remote.user_id}")
        print()
        pending = status.pending_changes
        pending_icon = "🟢" if pending == 0 else "🟡" if pending < 10 else "🟠"
        print(f"{pending_icon} Pending operations: {pending}")
        if status.conflicts_count:
            print(f"⚠️  Unresolved conflicts: {status.conflicts_count}")
        print(f"🕐 Last sync: {format_elapsed(status.last_sync_time)}")
        if status.last_sync_time:
            print(f"   ({status.last_sync_time[:19]})")

        print()
        if not status.sync_enabled:
            print("💡 Run `loreweaver sync enable` to start syncing")
        elif status.conflicts_count:
            print("💡 Run `loreweaver sync conflicts` to review them")

    elif args.sync_action == "run":
        _print_report(manager.sync_all(), as_json=args.json)

    elif args.sync_action == "migrate":
        _print_report(manager.migrate_to_sync(), as_json=args.json)

    elif args.sync_action == "pending":
        operations = manager.queue.list()
        if args.json:
            data = [
                {
                    "operation_id": op.operation_id,
                    "operation": op.operation.value,
                    "entity_type": op.entity_type,
                    "record_id": op.record_id,
                    "queued_at": op.queued_at,
                    "attempts": op.attempts,
                    "last_error": op.last_error,
                }
                for op in operations
            ]
            print(json.dumps(data, indent=2))
            return
        if not operations:
            print("✓ No pending operations")
            return
        print(f"Pending operations ({len(operations)}):")
        for op in operations:
            line = f"  {op.operation.value:<7} {op.entity_type}:{op.record_id}  queued {op.queued_at[:19]}"
            if op.attempts:
                line += f"  ({op.attempts} failed: {op.last_error})"
            print(line)

    elif args.sync_action == "conflicts":
        conflicts = manager.get_conflicts()
        if args.json:
            print(json.dumps([c.to_dict() for c in conflicts], indent=2, default=str))
            return
        if not conflicts:
            print("✓ No unresolved conflicts")
            return
        print(f"Unresolved conflicts ({len(conflicts)}):")
        for conflict in conflicts:
            fields = manager.resolver.analyze_field_conflicts(
                conflict.local, conflict.remote, entity_type=conflict.entity_type
            )
            print(f"\n  {conflict.id}  (detected {conflict.detected_at[:19]})")
            for fc in fields:
                print(f"    [{fc.importance.value}] {fc.field}")
                print(f"      local:  {json.dumps(fc.local_value, default=str)[:80]}")
                print(f"      remote: {json.dumps(fc.remote_value, default=str)[:80]}")

    elif args.sync_action == "resolve":
        resolution = manager.resolve_conflict_with(
            args.conflict_id, ConflictStrategy(args.strategy)
        )
        if resolution is None:
            print(f"✗ No pending conflict {args.conflict_id}")
            return
        print(f"✓ Resolved {args.conflict_id} ({resolution.strategy.value})")
        meta = resolution.metadata
        if meta.merged_fields:
            print(f"   Merged: {', '.join(meta.merged_fields)}")
        if meta.discarded_changes:
            print(f"   Discarded: {', '.join(meta.discarded_changes)}")
        if meta.unresolved_fields:
            print(f"   ⚠️  Kept local value for: {', '.join(meta.unresolved_fields)}")

    elif args.sync_action == "enable":
        manager.update_settings(enabled=True)
        print("✓ Sync enabled")

    elif args.sync_action == "disable":
        manager.update_settings(enabled=False)
        print("✓ Sync disabled")

    elif args.sync_action == "settings":
        changes = {}
        if args.interval is not None:
            changes["sync_interval"] = args.interval
        if args.policy is not None:
            changes["conflict_resolution"] = ConflictPolicy(args.policy)
        if args.auto_sync is not None:
            changes["auto_sync"] = args.auto_sync
        if args.max_offline is not None:
            changes["max_offline_changes"] = args.max_offline
        settings = manager.update_settings(**changes) if changes else manager.settings
        print(json.dumps(settings.model_dump(by_alias=True, mode="json"), indent=2))
