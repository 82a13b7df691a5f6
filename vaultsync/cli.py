"""CLI interface for vaultsync."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from .api import VaultSyncClient
from .cli_progress import SyncProgressDisplay
from .config import config
from .exceptions import VaultConfigError, VaultSyncError
from .local import LocalVault
from .logging_utils import configure_logging
from .output import OutputFormatter
from .sync import (
    InitialSyncStrategy,
    LocalChangePoller,
    Resolution,
    SelectiveScope,
    SyncMode,
    SyncOrchestrator,
    SyncResult,
    SyncSettings,
    load_settings,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STRATEGY_CHOICES = [s.value for s in InitialSyncStrategy]
MODE_CHOICES = [m.value for m in SyncMode]
RESOLUTION_CHOICES = [r.value for r in Resolution]


def _load_sync_settings(ctx: Any) -> SyncSettings:
    """Build the sync settings from ``--config`` and the global options.

    Raises:
        VaultConfigError: If no vault id is known
    """
    settings_path: Optional[str] = ctx.obj["settings_path"]
    settings = load_settings(Path(settings_path)) if settings_path else SyncSettings()
    if ctx.obj["vault_id"]:
        settings.vault_id = ctx.obj["vault_id"]
    if ctx.obj["vault_path"]:
        settings.vault_path = ctx.obj["vault_path"]
    if not settings.vault_id:
        raise VaultConfigError(
            "No vault id configured. Use --vault-id or a settings file."
        )
    return settings


async def _with_orchestrator(
    ctx: Any, action: Callable[[SyncOrchestrator], Awaitable[T]]
) -> T:
    """Run ``action`` with an initialized orchestrator and close everything."""
    settings = _load_sync_settings(ctx)
    state_dir = Path(ctx.obj["state_dir"]) if ctx.obj["state_dir"] else config.state_dir
    async with VaultSyncClient(api_key=ctx.obj["api_key"]) as client:
        orchestrator = SyncOrchestrator(
            client,
            LocalVault(Path(settings.vault_path)),
            settings,
            state_dir=state_dir,
        )
        orchestrator.initialize()
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.stop()


def _run(ctx: Any, action: Callable[[SyncOrchestrator], Awaitable[T]]) -> T:
    """Run an orchestrator action, exiting with status 1 on sync errors."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        return asyncio.run(_with_orchestrator(ctx, action))
    except VaultSyncError as e:
        out.error(str(e))
        ctx.exit(1)


def _show_progress(out: OutputFormatter) -> bool:
    return not out.quiet and not out.json_output and out.console.is_terminal


async def _run_pass(
    out: OutputFormatter,
    orchestrator: SyncOrchestrator,
    run: Callable[[], Awaitable[T]],
) -> T:
    if not _show_progress(out):
        return await run()
    with SyncProgressDisplay(orchestrator.event_bus, console=out.console):
        return await run()


def _print_result(ctx: Any, title: str, result: SyncResult) -> None:
    """Print a pass report and exit with status 1 if it failed."""
    out: OutputFormatter = ctx.obj["out"]
    if out.json_output:
        out.output_json(result.to_dict())
    else:
        out.print_summary(
            title,
            [
                ("Processed", str(result.files_processed)),
                ("Uploaded", str(result.files_uploaded)),
                ("Downloaded", str(result.files_downloaded)),
                ("Deleted", str(result.files_deleted)),
                ("Conflicts", str(result.conflicts)),
                ("Duration", f"{result.duration:.1f}s"),
            ],
        )
        for error in result.errors:
            out.warning(error)
    if result.success:
        out.success(f"{title} complete")
    else:
        ctx.exit(1)


@click.group()
@click.option(
    "--api-key", "-k", envvar="VAULTSYNC_API_KEY", help="Vault sync API key"
)
@click.option(
    "--vault-path",
    type=click.Path(file_okay=False),
    help="Local vault directory (default: current directory)",
)
@click.option("--vault-id", help="Remote vault identifier")
@click.option(
    "--config",
    "settings_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with sync settings",
)
@click.option(
    "--state-dir",
    envvar="VAULTSYNC_STATE_DIR",
    type=click.Path(file_okay=False),
    help="Directory for sync state files",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    help="Also write log records to this file",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    api_key: Optional[str],
    vault_path: Optional[str],
    vault_id: Optional[str],
    settings_path: Optional[str],
    state_dir: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
    log_file: Optional[str],
) -> None:
    """VaultSync - keep a local vault and its remote copy in sync."""
    ctx.ensure_object(dict)
    ctx.obj["api_key"] = api_key
    ctx.obj["vault_path"] = vault_path
    ctx.obj["vault_id"] = vault_id
    ctx.obj["settings_path"] = settings_path
    ctx.obj["state_dir"] = state_dir
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    configure_logging(verbose=verbose, log_file=Path(log_file) if log_file else None)


@main.command()
@click.option(
    "--api-key",
    "-k",
    prompt="Enter your vault sync API key",
    help="Vault sync API key",
)
@click.pass_context
def init(ctx: Any, api_key: str) -> None:
    """Store the API key in ~/.config/vaultsync/config."""
    out: OutputFormatter = ctx.obj["out"]

    async def check() -> bool:
        async with VaultSyncClient(api_key=api_key) as client:
            return await client.health_check()

    try:
        out.info("Checking connection...")
        if not asyncio.run(check()):
            out.warning("Server did not respond, storing the key anyway")
        config.save_api_key(api_key)
    except VaultSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    out.success(f"API key saved to {config.config_file}")


@main.command()
@click.pass_context
def sync(ctx: Any) -> None:
    """Three-way sync of the vault in both directions."""
    out: OutputFormatter = ctx.obj["out"]
    result = _run(
        ctx, lambda orch: _run_pass(out, orch, orch.bidirectional_sync)
    )
    _print_result(ctx, "Sync", result)


@main.command()
@click.pass_context
def pull(ctx: Any) -> None:
    """Replace local files with the remote vault.

    Local files with different content are kept as conflict copies.
    """
    out: OutputFormatter = ctx.obj["out"]
    result = _run(
        ctx, lambda orch: _run_pass(out, orch, orch.replace_local_with_remote)
    )
    _print_result(ctx, "Pull", result)


@main.command()
@click.pass_context
def push(ctx: Any) -> None:
    """Replace remote files with the local vault."""
    out: OutputFormatter = ctx.obj["out"]
    result = _run(
        ctx, lambda orch: _run_pass(out, orch, orch.replace_remote_with_local)
    )
    _print_result(ctx, "Push", result)


@main.command()
@click.option(
    "--mode",
    type=click.Choice(MODE_CHOICES),
    help="Sync mode to use instead of the configured one",
)
@click.pass_context
def force(ctx: Any, mode: Optional[str]) -> None:
    """Forget all sync state and sync everything again."""
    out: OutputFormatter = ctx.obj["out"]

    async def action(orch: SyncOrchestrator) -> SyncResult:
        if mode:
            await orch.set_mode(SyncMode(mode))
        return await _run_pass(out, orch, orch.force_sync)

    _print_result(ctx, "Force sync", _run(ctx, action))


@main.command()
@click.option(
    "--strategy",
    "-s",
    type=click.Choice(STRATEGY_CHOICES),
    help="How local and remote files are reconciled",
)
@click.option(
    "--analyze-only",
    is_flag=True,
    help="Only show which files exist on which side",
)
@click.pass_context
def initial(ctx: Any, strategy: Optional[str], analyze_only: bool) -> None:
    """Run the one-time reconciliation of local and remote files.

    Strategies:

    \b
      start_fresh   replace local files with the remote vault
      upload_local  replace remote files with the local vault
      smart_merge   keep both, differing files get a local conflict copy
    """
    out: OutputFormatter = ctx.obj["out"]

    if analyze_only:

        async def analyze(orch: SyncOrchestrator) -> dict[str, int]:
            assert orch.initial_sync is not None and orch.vault_id is not None
            analysis = await orch.initial_sync.analyze_files(orch.vault_id)
            return {
                **analysis.file_counts(),
                "total_local": analysis.total_local,
                "total_remote": analysis.total_remote,
            }

        counts = _run(ctx, analyze)
        if out.json_output:
            out.output_json(counts)
        else:
            out.print_summary(
                "Initial sync analysis",
                [
                    (label.replace("_", " ").capitalize(), str(value))
                    for label, value in counts.items()
                ],
            )
        return

    if not strategy:
        out.error("--strategy is required unless --analyze-only is given")
        ctx.exit(1)

    result = _run(
        ctx,
        lambda orch: _run_pass(
            out, orch, lambda: orch.run_initial_sync(InitialSyncStrategy(strategy))
        ),
    )
    if out.json_output:
        out.output_json(result.to_dict())
    else:
        out.print_summary(
            "Initial sync",
            [
                ("Strategy", result.strategy.value),
                ("Uploaded", str(result.uploaded)),
                ("Downloaded", str(result.downloaded)),
                ("Deleted", str(result.deleted)),
                ("Conflict copies", str(result.conflicts_created)),
                ("Skipped", str(result.skipped)),
                ("Duration", f"{result.duration:.1f}s"),
            ],
        )
        for error in result.errors:
            out.warning(error)
    if result.cancelled:
        out.warning("Initial sync was cancelled")
    if not result.success:
        ctx.exit(1)
    out.success("Initial sync complete")


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show queue, conflict and initial sync status."""
    out: OutputFormatter = ctx.obj["out"]

    async def action(orch: SyncOrchestrator) -> dict[str, Any]:
        assert orch.queue is not None
        orch.queue.load()
        return orch.get_status()

    info = _run(ctx, action)
    if out.json_output:
        out.output_json(info)
        return

    queue = info["queue"]
    record = info["initial_sync"]
    out.print_summary(
        f"Vault {info['vault_id']}",
        [
            ("Mode", info["mode"]),
            ("Auto sync", "on" if info["auto_sync"] else "off"),
            ("Last sync", info["last_sync"] or "never"),
            (
                "Initial sync",
                f"{record['chosen_option']} at {record['completed_at']}"
                if record
                else "not run",
            ),
            ("Tracked files", str(info["tracked_files"])),
            ("Deleted locally", str(info["locally_deleted"])),
            (
                "Queue",
                f"{queue['pending']} pending, {queue['failed']} failed",
            ),
            ("Conflicts", str(info["conflicts"])),
        ],
    )


@main.command()
@click.pass_context
def conflicts(ctx: Any) -> None:
    """List unresolved conflicts."""
    out: OutputFormatter = ctx.obj["out"]

    async def action(orch: SyncOrchestrator) -> list[dict[str, Any]]:
        assert orch.resolver is not None
        return [record.to_dict() for record in orch.resolver.get_conflicts()]

    records = _run(ctx, action)
    if not out.json_output:
        for record in records:
            record.pop("local_content", None)
            record.pop("remote_content", None)
    out.output_table(
        records,
        ["id", "path", "conflict_type", "timestamp"],
        headers={
            "id": "ID",
            "path": "Path",
            "conflict_type": "Type",
            "timestamp": "Detected",
        },
        title="Conflicts",
    )


@main.command()
@click.argument("conflict_id", required=False)
@click.option(
    "--keep",
    "resolution",
    type=click.Choice(RESOLUTION_CHOICES),
    required=True,
    help="Which version to keep",
)
@click.option(
    "--merged-file",
    type=click.Path(exists=True, dir_okay=False),
    help="File with the merged content (for --keep merge)",
)
@click.option("--all", "resolve_all", is_flag=True, help="Resolve every conflict")
@click.pass_context
def resolve(
    ctx: Any,
    conflict_id: Optional[str],
    resolution: str,
    merged_file: Optional[str],
    resolve_all: bool,
) -> None:
    """Resolve a conflict by ID, or all conflicts with --all."""
    out: OutputFormatter = ctx.obj["out"]
    if not conflict_id and not resolve_all:
        out.error("Give a conflict ID or --all")
        ctx.exit(1)
    merged = Path(merged_file).read_text(encoding="utf-8") if merged_file else None

    async def action(orch: SyncOrchestrator) -> list[str]:
        assert orch.resolver is not None
        if resolve_all:
            return await orch.resolver.resolve_all(Resolution(resolution))
        assert conflict_id is not None
        await orch.resolver.resolve_conflict(
            conflict_id, Resolution(resolution), merged_content=merged
        )
        return []

    errors = _run(ctx, action)
    for error in errors:
        out.warning(error)
    if errors:
        ctx.exit(1)
    out.success("Conflicts resolved" if resolve_all else f"Resolved {conflict_id}")


@main.command()
@click.option(
    "--list-excluded", is_flag=True, help="List the local files that are excluded"
)
@click.pass_context
def scope(ctx: Any, list_excluded: bool) -> None:
    """Preview which local files are synced."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        settings = _load_sync_settings(ctx)
        local = LocalVault(Path(settings.vault_path))
        paths = [f.relative_path for f in asyncio.run(local.list_files())]
    except VaultSyncError as e:
        out.error(str(e))
        ctx.exit(1)

    rules = SelectiveScope(settings.included_folders, settings.excluded_folders)
    preview = rules.get_sync_scope_preview(paths)
    excluded = rules.files_to_exclude(paths)
    if out.json_output:
        out.output_json(
            {
                "total_files": preview.total_files,
                "included_files": preview.included_files,
                "excluded_files": preview.excluded_files,
                "included_folders": preview.included_folders,
                "excluded_folders": preview.excluded_folders,
                "excluded": excluded if list_excluded else [],
            }
        )
        return

    out.print_summary(
        "Sync scope",
        [
            ("Included folders", ", ".join(preview.included_folders) or "(all)"),
            ("Excluded folders", ", ".join(preview.excluded_folders) or "(none)"),
            ("Files", str(preview.total_files)),
            ("Synced", str(preview.included_files)),
            ("Excluded", str(preview.excluded_files)),
        ],
    )
    if list_excluded:
        for path in excluded:
            out.print(f"  {path}")


@main.command()
@click.option(
    "--interval",
    type=float,
    default=2.0,
    show_default=True,
    help="Seconds between local change scans",
)
@click.pass_context
def watch(ctx: Any, interval: float) -> None:
    """Keep the vault in sync until interrupted with Ctrl-C."""
    out: OutputFormatter = ctx.obj["out"]

    async def action(orch: SyncOrchestrator) -> None:
        poller = LocalChangePoller(
            orch.local, orch.notify_change, orch.scheduler, interval=interval
        )
        await orch.start()
        await poller.start()
        out.info(f"Watching {orch.local.root} (Ctrl-C to stop)")
        try:
            await asyncio.Event().wait()
        finally:
            await poller.stop()

    try:
        _run(ctx, action)
    except KeyboardInterrupt:
        out.warning("Stopped by user")
        ctx.exit(130)  # Standard exit code for SIGINT


if __name__ == "__main__":
    main()
