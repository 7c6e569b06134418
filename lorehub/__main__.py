"""CLI entry point for lorehub."""

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import DEFAULT_CONFIG_PATH, load_config
from .context import LoreContext, open_context
from .models import LORE_TYPES, Realm, Workspace, WorkspaceFilters
from .store import WorkspaceError
from .sync import SyncAdapter, SyncResult, SyncSetupError
from .sync.remote import probe_remote


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open(args: argparse.Namespace) -> LoreContext:
    config = load_config(args.config or DEFAULT_CONFIG_PATH)
    return open_context(config)


def _resolve_workspace(ctx: LoreContext, name: str | None) -> Workspace | None:
    if name:
        return ctx.store.find_workspace_by_name(name) or ctx.store.find_workspace(name)
    return ctx.store.get_default_workspace()


def _resolve_realm(ctx: LoreContext, ref: str) -> Realm | None:
    realm = ctx.store.find_realm(ref) or ctx.store.find_realm_by_path(
        str(Path(ref).expanduser().resolve())
    )
    if realm:
        return realm
    matches = [r for r in ctx.store.list_realms() if r.name == ref]
    return matches[0] if len(matches) == 1 else None


async def _sync_adapter(
    ctx: LoreContext, name: str | None, require_remote: bool = False
) -> SyncAdapter | None:
    """Resolve a workspace and its adapter, printing configuration errors."""
    if not ctx.tracker.enabled:
        print("Error: sync is disabled in the configuration (sync.enabled)", file=sys.stderr)
        return None

    workspace = _resolve_workspace(ctx, name)
    if workspace is None:
        if name:
            print(f"Error: workspace '{name}' not found", file=sys.stderr)
        else:
            print("Error: no default workspace; create one with 'lorehub workspace create'", file=sys.stderr)
        return None
    if not workspace.sync_enabled:
        print(
            f"Error: sync is not enabled for workspace '{workspace.name}'. "
            f"Enable it with 'lorehub workspace edit {workspace.name} --sync'",
            file=sys.stderr,
        )
        return None
    if require_remote and not workspace.sync_repo:
        print(
            f"Error: workspace '{workspace.name}' has no sync repository. "
            f"Set one with 'lorehub workspace edit {workspace.name} --repo URL'",
            file=sys.stderr,
        )
        return None

    try:
        return await ctx.tracker.get_adapter(workspace)
    except SyncSetupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _print_errors(result: SyncResult) -> None:
    if result.errors:
        print("Errors:")
        for error in result.errors:
            print(f"  - {error}")


# ==================== sync ====================


async def cmd_sync_init(args: argparse.Namespace) -> int:
    """Initialize the sync repository of a workspace."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace)
        if adapter is None:
            return 1

        print(f"Sync initialized for workspace '{adapter.workspace.name}'")
        print(f"  Repository: {adapter.repo.path}")
        print(f"  Remote: {adapter.remote or 'none (local only)'}")
        print(f"  Branch: {adapter.branch}")
        print(f"  Device: {ctx.device_id}")
        return 0
    finally:
        await ctx.close()


async def cmd_sync_push(args: argparse.Namespace) -> int:
    """Export and push a workspace."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace, require_remote=True)
        if adapter is None:
            return 1

        await adapter.export_workspace_data()
        result = await adapter.push()
        if result.pushed:
            noun = "change" if result.pushed == 1 else "changes"
            print(f"Pushed {result.pushed} {noun} to {adapter.remote} ({adapter.branch})")
        elif result.ok:
            print("Nothing to push")
        _print_errors(result)
        return 0
    finally:
        await ctx.close()


async def cmd_sync_pull(args: argparse.Namespace) -> int:
    """Pull remote changes into a workspace."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace, require_remote=True)
        if adapter is None:
            return 1

        result = await adapter.pull()
        if result.pulled or result.conflicts:
            print(f"Pulled {result.pulled} changes, {result.conflicts} conflicts")
        elif result.ok:
            print("Already up to date")
        if result.conflicts:
            print(
                "Conflicts need manual resolution: "
                f"'lorehub sync conflicts {adapter.workspace.name}'"
            )
        _print_errors(result)
        return 0
    finally:
        await ctx.close()


async def cmd_sync_status(args: argparse.Namespace) -> int:
    """Show sync status of a workspace."""
    ctx = _open(args)
    try:
        workspace = _resolve_workspace(ctx, args.workspace)
        if workspace is None:
            print(f"Error: workspace '{args.workspace or 'default'}' not found", file=sys.stderr)
            return 1

        status: dict = {
            "timestamp": datetime.now().isoformat(),
            "workspace": {"id": workspace.id, "name": workspace.name},
            "sync_enabled": workspace.sync_enabled,
            "auto_sync": workspace.auto_sync,
            "remote": workspace.sync_repo,
            "branch": workspace.sync_branch,
            "device_id": ctx.device_id,
            "initialized": False,
        }

        repo_path = Path(ctx.config.sync.repos_dir).expanduser() / workspace.id
        if ctx.tracker.enabled and workspace.sync_enabled and (repo_path / ".git").exists():
            try:
                adapter = await ctx.tracker.get_adapter(workspace)
                status.update(adapter.get_status())
                status["initialized"] = True
            except SyncSetupError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1

        status["remote_reachable"] = await probe_remote(
            workspace.sync_repo, timeout=ctx.config.sync.remote_probe_timeout
        )
        status["background_errors"] = [
            {
                "workspace": error.workspace_name,
                "message": error.message,
                "timestamp": error.timestamp.isoformat(),
            }
            for error in ctx.tracker.drain_errors()
        ]

        if args.json:
            print(json.dumps(status, indent=2))
            return 0

        print(f"Workspace: {workspace.name}")
        print(f"  Sync: {'enabled' if workspace.sync_enabled else 'disabled'}")
        print(f"  Auto-sync: {'on' if workspace.auto_sync else 'off'}")
        print(f"  Remote: {workspace.sync_repo or 'none'}")
        reachable = status["remote_reachable"]
        if reachable is not None:
            print(f"  Remote reachable: {'yes' if reachable else 'no'}")
        print(f"  Branch: {workspace.sync_branch}")
        print(f"  Device: {ctx.device_id}")
        if not status["initialized"]:
            print(f"  Not initialized, run 'lorehub sync init {workspace.name}'")
        else:
            print(f"  Pending changes: {status['pending_changes']}")
            print(f"  Last sync: {status['last_sync_at'] or 'never'}")
            if status["last_sync_commit"]:
                print(f"  Last commit: {status['last_sync_commit'][:12]}")
            print(f"  Vector clock: {json.dumps(status['vector_clock'], sort_keys=True)}")
            print(f"  Open conflicts: {status['open_conflicts']}")
        if status["background_errors"]:
            print("Background errors:")
            for error in status["background_errors"]:
                print(f"  - [{error['timestamp']}] {error['message']}")
        return 0
    finally:
        await ctx.close()


async def cmd_sync_watch(args: argparse.Namespace) -> int:
    """Sync a workspace periodically until interrupted."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace, require_remote=True)
        if adapter is None:
            return 1

        interval = args.interval or adapter.workspace.sync_interval
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass

        print(f"Watching workspace '{adapter.workspace.name}' every {interval}s (Ctrl+C to stop)")
        await adapter.sync_loop(interval, stop_event)
        return 0
    finally:
        await ctx.close()


async def cmd_sync_conflicts(args: argparse.Namespace) -> int:
    """List sync conflicts of a workspace."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace)
        if adapter is None:
            return 1

        conflicts = adapter.list_conflicts(include_resolved=args.all)
        if args.json:
            print(json.dumps([c.to_dict() for c in conflicts], indent=2))
            return 0

        if not conflicts:
            print("No conflicts")
            return 0

        for conflict in conflicts:
            state = f"resolved ({conflict.resolution})" if conflict.is_resolved else "open"
            print(f"{conflict.id}  {conflict.entity} {conflict.entity_id}  [{state}]")
            print(f"  local  {json.dumps(conflict.local_clock.to_dict(), sort_keys=True)}")
            print(
                f"  remote {json.dumps(conflict.remote_clock.to_dict(), sort_keys=True)} "
                f"{conflict.remote_operation} from {conflict.remote_device_id}"
            )
            if conflict.entity == "lore":
                local = (conflict.local_data or {}).get("content")
                remote = (conflict.remote_data or {}).get("content")
                print(f"  local content:  {local}")
                print(f"  remote content: {remote}")
        return 0
    finally:
        await ctx.close()


async def cmd_sync_resolve(args: argparse.Namespace) -> int:
    """Resolve a sync conflict by keeping one side."""
    ctx = _open(args)
    try:
        adapter = await _sync_adapter(ctx, args.workspace)
        if adapter is None:
            return 1

        try:
            event = await adapter.resolve_conflict(args.conflict_id, keep=args.keep)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Resolved conflict {args.conflict_id} keeping {args.keep} version")
        print(f"Recorded {event.operation} {event.entity} {event.entity_id}; push to share it")
        return 0
    finally:
        await ctx.close()


# ==================== workspace ====================


def _filters_from_args(args: argparse.Namespace, current: WorkspaceFilters | None) -> WorkspaceFilters | None:
    given = (
        args.filter_type,
        args.filter_status,
        args.filter_sigil,
        args.filter_province,
        args.min_confidence,
    )
    if args.clear_filters:
        current = None
    if all(value is None for value in given):
        return current

    filters = WorkspaceFilters.from_dict(current.to_dict()) if current else WorkspaceFilters()
    if args.filter_type is not None:
        filters.lore_types = args.filter_type
    if args.filter_status is not None:
        filters.statuses = args.filter_status
    if args.filter_sigil is not None:
        filters.sigils = args.filter_sigil
    if args.filter_province is not None:
        filters.provinces = args.filter_province
    if args.min_confidence is not None:
        filters.min_confidence = args.min_confidence
    return None if filters.is_empty() else filters


async def cmd_workspace_create(args: argparse.Namespace) -> int:
    """Create a workspace."""
    ctx = _open(args)
    try:
        try:
            workspace = ctx.store.create_workspace(
                args.name,
                sync_enabled=bool(args.sync),
                sync_repo=args.repo,
                sync_branch=args.branch or "main",
                auto_sync=args.auto_sync if args.auto_sync is not None else True,
                sync_interval=args.interval or 300,
                filters=_filters_from_args(args, None),
                is_default=bool(args.default),
            )
        except WorkspaceError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Created workspace '{workspace.name}' ({workspace.id})")
        if workspace.is_default:
            print("  (default)")
        return 0
    finally:
        await ctx.close()


async def cmd_workspace_list(args: argparse.Namespace) -> int:
    """List workspaces."""
    ctx = _open(args)
    try:
        workspaces = ctx.store.list_workspaces()
        if args.json:
            print(json.dumps([w.to_dict() for w in workspaces], indent=2))
            return 0
        if not workspaces:
            print("No workspaces")
            return 0

        for workspace in workspaces:
            flags = []
            if workspace.is_default:
                flags.append("default")
            if workspace.sync_enabled:
                flags.append("sync")
            if workspace.auto_sync:
                flags.append("auto")
            realms = ctx.store.get_workspace_realms(workspace.id)
            print(f"{workspace.name}  [{', '.join(flags)}]  {len(realms)} realms")
            if workspace.sync_repo:
                print(f"  {workspace.sync_repo} ({workspace.sync_branch})")
        return 0
    finally:
        await ctx.close()


async def cmd_workspace_edit(args: argparse.Namespace) -> int:
    """Edit workspace settings."""
    ctx = _open(args)
    try:
        workspace = _resolve_workspace(ctx, args.workspace)
        if workspace is None:
            print(f"Error: workspace '{args.workspace}' not found", file=sys.stderr)
            return 1

        updates: dict = {}
        if args.rename:
            updates["name"] = args.rename
        if args.sync is not None:
            updates["sync_enabled"] = args.sync
        if args.repo is not None:
            updates["sync_repo"] = args.repo or None
        if args.branch:
            updates["sync_branch"] = args.branch
        if args.auto_sync is not None:
            updates["auto_sync"] = args.auto_sync
        if args.interval:
            updates["sync_interval"] = args.interval
        if args.default:
            updates["is_default"] = True
        filters = _filters_from_args(args, workspace.filters)
        if filters != workspace.filters:
            updates["filters"] = filters

        if not updates:
            print("Nothing to change")
            return 0

        try:
            workspace = ctx.store.update_workspace(workspace.id, updates)
        except WorkspaceError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Updated workspace '{workspace.name}'")
        return 0
    finally:
        await ctx.close()


async def cmd_workspace_link(args: argparse.Namespace) -> int:
    """Attach a realm to a workspace."""
    ctx = _open(args)
    try:
        workspace = _resolve_workspace(ctx, args.workspace)
        realm = _resolve_realm(ctx, args.realm)
        if workspace is None or realm is None:
            missing = f"workspace '{args.workspace}'" if workspace is None else f"realm '{args.realm}'"
            print(f"Error: {missing} not found", file=sys.stderr)
            return 1

        await ctx.store.link_realm_to_workspace(realm.id, workspace.id)
        print(f"Linked realm '{realm.name}' to workspace '{workspace.name}'")
        return 0
    finally:
        await ctx.close()


# ==================== realm / lore ====================


async def cmd_realm_add(args: argparse.Namespace) -> int:
    """Register a project directory as a realm."""
    ctx = _open(args)
    try:
        path = str(Path(args.path).expanduser().resolve())
        if ctx.store.find_realm_by_path(path):
            print(f"Error: realm already registered for {path}", file=sys.stderr)
            return 1

        if args.workspace:
            workspace = _resolve_workspace(ctx, args.workspace)
            if workspace is None:
                print(f"Error: workspace '{args.workspace}' not found", file=sys.stderr)
                return 1
        else:
            workspace = ctx.store.ensure_default_workspace()

        realm = await ctx.store.create_realm(args.name or Path(path).name, path)
        await ctx.store.link_realm_to_workspace(realm.id, workspace.id)
        print(f"Added realm '{realm.name}' ({realm.id}) to workspace '{workspace.name}'")
        return 0
    finally:
        await ctx.close()


async def cmd_realm_list(args: argparse.Namespace) -> int:
    """List realms."""
    ctx = _open(args)
    try:
        for realm in ctx.store.list_realms():
            names = ", ".join(w.name for w in ctx.store.get_realm_workspaces(realm.id))
            print(f"{realm.id}  {realm.name}  {realm.path}  [{names}]")
        return 0
    finally:
        await ctx.close()


async def cmd_lore_add(args: argparse.Namespace) -> int:
    """Record a lore in a realm."""
    ctx = _open(args)
    try:
        realm = _resolve_realm(ctx, args.realm)
        if realm is None:
            print(f"Error: realm '{args.realm}' not found", file=sys.stderr)
            return 1

        lore = await ctx.store.create_lore(
            realm.id,
            args.content,
            type=args.type,
            why=args.why,
            sigils=args.sigil or [],
            confidence=args.confidence,
        )
        print(f"Recorded lore {lore.id} in '{realm.name}'")
        return 0
    finally:
        await ctx.close()


async def cmd_lore_list(args: argparse.Namespace) -> int:
    """List lores, optionally of one realm."""
    ctx = _open(args)
    try:
        if args.realm:
            realm = _resolve_realm(ctx, args.realm)
            if realm is None:
                print(f"Error: realm '{args.realm}' not found", file=sys.stderr)
                return 1
            lores = ctx.store.list_lores_by_realm(realm.id)
        else:
            lores = ctx.store.list_lores()

        if args.json:
            print(json.dumps([lore.to_dict() for lore in lores], indent=2))
            return 0
        for lore in lores:
            print(f"{lore.id}  [{lore.type}/{lore.status}]  {lore.content}")
        return 0
    finally:
        await ctx.close()


def _add_workspace_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--sync",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable or disable sync",
    )
    parser.add_argument("--repo", default=None, help="Remote git repository URL")
    parser.add_argument("--branch", default=None, help="Remote branch (default: main)")
    parser.add_argument(
        "--auto-sync",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Push in the background after every change",
    )
    parser.add_argument("--interval", type=int, default=None, help="Sync interval in seconds")
    parser.add_argument("--default", action="store_true", help="Make this the default workspace")
    parser.add_argument(
        "--filter-type", action="append", default=None, choices=LORE_TYPES,
        help="Only export lores of this type (repeatable)",
    )
    parser.add_argument(
        "--filter-status", action="append", default=None,
        help="Only export lores with this status (repeatable)",
    )
    parser.add_argument(
        "--filter-sigil", action="append", default=None,
        help="Only export lores carrying this sigil (repeatable)",
    )
    parser.add_argument(
        "--filter-province", action="append", default=None,
        help="Only export lores of this province (repeatable)",
    )
    parser.add_argument(
        "--min-confidence", type=int, default=None,
        help="Only export lores with at least this confidence",
    )
    parser.add_argument("--clear-filters", action="store_true", help="Remove all filters")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="lorehub",
        description="Project lore with multi-device sync over git",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Sync commands
    sync_parser = subparsers.add_parser("sync", help="Synchronize workspaces")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    sync_init = sync_subparsers.add_parser("init", help="Set up the sync repository")
    sync_init.add_argument("workspace", nargs="?", help="Workspace name (default workspace if omitted)")
    sync_init.set_defaults(func=cmd_sync_init)

    sync_push = sync_subparsers.add_parser("push", help="Export and push local changes")
    sync_push.add_argument("workspace", nargs="?", help="Workspace name")
    sync_push.set_defaults(func=cmd_sync_push)

    sync_pull = sync_subparsers.add_parser("pull", help="Pull and apply remote changes")
    sync_pull.add_argument("workspace", nargs="?", help="Workspace name")
    sync_pull.set_defaults(func=cmd_sync_pull)

    sync_status = sync_subparsers.add_parser("status", help="Show sync status")
    sync_status.add_argument("workspace", nargs="?", help="Workspace name")
    sync_status.add_argument("--json", action="store_true", help="Output status as JSON")
    sync_status.set_defaults(func=cmd_sync_status)

    sync_watch = sync_subparsers.add_parser("watch", help="Sync periodically")
    sync_watch.add_argument("workspace", nargs="?", help="Workspace name")
    sync_watch.add_argument("--interval", type=int, default=None, help="Seconds between syncs")
    sync_watch.set_defaults(func=cmd_sync_watch)

    sync_conflicts = sync_subparsers.add_parser("conflicts", help="List sync conflicts")
    sync_conflicts.add_argument("workspace", nargs="?", help="Workspace name")
    sync_conflicts.add_argument("--all", action="store_true", help="Include resolved conflicts")
    sync_conflicts.add_argument("--json", action="store_true", help="Output as JSON")
    sync_conflicts.set_defaults(func=cmd_sync_conflicts)

    sync_resolve = sync_subparsers.add_parser("resolve", help="Resolve a sync conflict")
    sync_resolve.add_argument("conflict_id", help="Conflict id")
    sync_resolve.add_argument("--keep", choices=["local", "remote"], required=True)
    sync_resolve.add_argument("--workspace", default=None, help="Workspace name")
    sync_resolve.set_defaults(func=cmd_sync_resolve)

    # Workspace commands
    ws_parser = subparsers.add_parser("workspace", help="Manage workspaces")
    ws_subparsers = ws_parser.add_subparsers(dest="workspace_command", help="Workspace commands")

    ws_create = ws_subparsers.add_parser("create", help="Create a workspace")
    ws_create.add_argument("name", help="Workspace name")
    _add_workspace_options(ws_create)
    ws_create.set_defaults(func=cmd_workspace_create)

    ws_list = ws_subparsers.add_parser("list", help="List workspaces")
    ws_list.add_argument("--json", action="store_true", help="Output as JSON")
    ws_list.set_defaults(func=cmd_workspace_list)

    ws_edit = ws_subparsers.add_parser("edit", help="Edit a workspace")
    ws_edit.add_argument("workspace", help="Workspace name")
    ws_edit.add_argument("--rename", default=None, help="New workspace name")
    _add_workspace_options(ws_edit)
    ws_edit.set_defaults(func=cmd_workspace_edit)

    ws_link = ws_subparsers.add_parser("link", help="Attach a realm to a workspace")
    ws_link.add_argument("workspace", help="Workspace name")
    ws_link.add_argument("realm", help="Realm id, name or path")
    ws_link.set_defaults(func=cmd_workspace_link)

    # Realm commands
    realm_parser = subparsers.add_parser("realm", help="Manage realms")
    realm_subparsers = realm_parser.add_subparsers(dest="realm_command", help="Realm commands")

    realm_add = realm_subparsers.add_parser("add", help="Register a project directory")
    realm_add.add_argument("path", help="Project directory")
    realm_add.add_argument("--name", default=None, help="Realm name (default: directory name)")
    realm_add.add_argument("--workspace", default=None, help="Workspace (default workspace if omitted)")
    realm_add.set_defaults(func=cmd_realm_add)

    realm_list = realm_subparsers.add_parser("list", help="List realms")
    realm_list.set_defaults(func=cmd_realm_list)

    # Lore commands
    lore_parser = subparsers.add_parser("lore", help="Manage lores")
    lore_subparsers = lore_parser.add_subparsers(dest="lore_command", help="Lore commands")

    lore_add = lore_subparsers.add_parser("add", help="Record a lore")
    lore_add.add_argument("realm", help="Realm id, name or path")
    lore_add.add_argument("content", help="What to remember")
    lore_add.add_argument("--type", choices=LORE_TYPES, default="other")
    lore_add.add_argument("--why", default=None, help="Reasoning behind it")
    lore_add.add_argument("--sigil", action="append", default=None, help="Tag (repeatable)")
    lore_add.add_argument("--confidence", type=int, default=80)
    lore_add.set_defaults(func=cmd_lore_add)

    lore_list = lore_subparsers.add_parser("list", help="List lores")
    lore_list.add_argument("realm", nargs="?", help="Realm id, name or path")
    lore_list.add_argument("--json", action="store_true", help="Output as JSON")
    lore_list.set_defaults(func=cmd_lore_list)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    # Each group requires its own subcommand
    group_parsers = {
        "sync": (sync_parser, "sync_command"),
        "workspace": (ws_parser, "workspace_command"),
        "realm": (realm_parser, "realm_command"),
        "lore": (lore_parser, "lore_command"),
    }
    group_parser, dest = group_parsers[args.command]
    if not getattr(args, dest):
        group_parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
