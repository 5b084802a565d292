"""Main CLI entry point using Typer.

This module defines the root CLI application and its commands:
run, save, status, install, uninstall and the config group.
"""

import os
from pathlib import Path
from typing import Optional, Annotated

import typer
from rich.console import Console

from fwguard import __version__
from fwguard.core.audit import AuditEventType, AuditResult, configure_audit_logger
from fwguard.core.context import ExecutionContext, create_context
from fwguard.core.output import console as app_console
from fwguard.core.config import (
    DEFAULT_CONFIG_PATH,
    get_example_config,
    init_config,
)
from fwguard.core.exceptions import FwGuardError, ProbeError
from fwguard.core.executor import CommandExecutor
from fwguard.services.canary import CanaryProbe
from fwguard.services.packet_filter import Family, IptablesFilter
from fwguard.services.reconciler import build_reconciler
from fwguard.services.result import ReconciliationResult
from fwguard.services.saver import SnapshotSaver
from fwguard.services.state_store import StateStore
from fwguard.services.supervisor import SelfSupervisor
from fwguard.services.systemd import SystemdService


# Create the main Typer app
app = typer.Typer(
    name="fwguard",
    help="Firewall drift detection and self-healing.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        "-n",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite existing files.",
        is_flag=True,
    ),
]

YesOption = Annotated[
    bool,
    typer.Option(
        "--yes",
        "-y",
        help="Skip confirmation prompts.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"fwguard version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """fwguard - keeps an iptables ruleset in place on hosts that lose it.

    A canary rule saved with every snapshot reveals flushes. Each cycle
    restores the last-known-good snapshot when the canary is gone, restarts
    services that build on top of it, and mails an alert only when the
    heal itself failed.

    [bold]Examples:[/bold]
        fwguard save
        fwguard install
        fwguard run --dry-run
        fwguard status
    """
    pass


def handle_error(error: FwGuardError) -> None:
    """Handle an FwGuardError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def require_root(command: str, dry_run: bool = False) -> None:
    """Exit with status 6 unless running as root (dry runs are exempt)."""
    if os.geteuid() != 0 and not dry_run:
        app_console.error("This operation requires root privileges")
        app_console.hint(f"Run with: sudo fwguard {command} ...")
        raise typer.Exit(6)


def _supervisor(ctx: ExecutionContext, systemd: SystemdService) -> SelfSupervisor:
    return SelfSupervisor(
        ctx,
        systemd,
        ctx.config.supervision,
        dependency=ctx.config.gate.service,
    )


def _show_result(ctx: ExecutionContext, result: ReconciliationResult) -> None:
    if result.canary_before and not result.issues:
        return

    rows = []
    if result.restore is not None:
        if result.restore.sets is not None:
            sets = result.restore.sets
            rows.append(["sets", sets.status.value, sets.cause or ""])
        for outcome in result.restore.families:
            rows.append([outcome.family.value, outcome.status.value, outcome.cause or ""])
    if rows:
        ctx.console.table("Restore", ["Target", "Status", "Cause"], rows)

    for issue in result.errors:
        ctx.console.error(str(issue))
    for issue in result.warnings:
        ctx.console.warn(str(issue))


# ============================================================================
# Cycle commands
# ============================================================================

@app.command("run")
def run_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Run one reconciliation cycle.

    Checks the canary and, if it is gone, restores the saved rulesets,
    restarts the auxiliary service and re-checks. Also re-registers the
    boot trigger and timer if they were removed.

    Exit status is 0 for a clean (or skipped) cycle, 1 if the cycle
    completed with errors.
    """
    require_root("run", dry_run)
    ctx = create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )

    try:
        reconciler = build_reconciler(ctx)
        result = reconciler.run_cycle()
    except FwGuardError as e:
        handle_error(e)
        return

    if result is None:
        return

    _show_result(ctx, result)

    if result.has_errors:
        raise typer.Exit(1)
    if result.healed and not ctx.dry_run:
        ctx.console.success("Firewall drift healed")


@app.command("save")
def save_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Save the live ruleset as the last-known-good snapshot.

    Inserts the canary rule first if it is missing, so every snapshot
    carries it. The previous snapshot is kept as a backup.
    """
    require_root("save", dry_run)
    ctx = create_context(dry_run=dry_run, verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config
        executor = CommandExecutor(ctx)
        packet_filter = IptablesFilter(ctx, executor)
        audit = configure_audit_logger(
            log_path=app_config.audit.log_path,
            max_size_mb=app_config.audit.max_size_mb,
            backup_count=app_config.audit.backup_count,
        )
        saver = SnapshotSaver(
            packet_filter,
            StateStore(ctx, executor, app_config.snapshots),
            CanaryProbe(packet_filter, app_config.canary),
            audit,
            ctx.console,
        )
        report = saver.save_all(app_config.snapshots)
    except FwGuardError as e:
        handle_error(e)
        return

    ctx.console.summary("Snapshot saved", {
        "Canary inserted": report.canary_inserted,
        **{f"{family.value} snapshot": str(path) for family, path in report.written.items()},
        "Sets snapshot": str(report.sets_path) if report.sets_path else None,
    })


@app.command("status")
def status_cmd(
    verbose: VerboseOption = 0,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Show canary, snapshot and supervision status."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config
        executor = CommandExecutor(ctx)
        packet_filter = IptablesFilter(ctx, executor)
        store = StateStore(ctx, executor, app_config.snapshots)
        canary = CanaryProbe(packet_filter, app_config.canary)

        try:
            canary_state = "present" if canary.present() else "[red]ABSENT[/red]"
        except ProbeError as e:
            canary_state = f"[yellow]unknown[/yellow] ({e.message})"

        ctx.console.summary("Host", {
            "Hostname": app_config.hostname,
            "Canary": canary_state,
            "Dependency gate": app_config.gate.service,
            "Auxiliary service": app_config.auxiliary.service,
            "Audit log": str(app_config.audit.log_path),
        })

        rows = []
        for name in app_config.snapshots.families:
            family = Family(name)
            rows.append([
                family.value,
                str(store.snapshot_path(family)),
                "yes" if store.has_snapshot(family) else "[red]no[/red]",
                "yes" if store.has_backup(family) else "no",
            ])
        if app_config.snapshots.sets_enabled:
            rows.append([
                "sets",
                str(store.sets_path),
                "yes" if store.sets_path.is_file() else "[yellow]no[/yellow]",
                "yes" if store.sets_backup_path.is_file() else "no",
            ])
        ctx.console.table("Snapshots", ["Family", "Path", "Present", "Backup"], rows)

        supervision = _supervisor(ctx, SystemdService(ctx, executor)).status()
        ctx.console.table(
            "Supervision",
            ["Unit", "Registered", "Running"],
            [
                [
                    s.unit,
                    "yes" if s.registered else "[red]no[/red]",
                    "yes" if s.running else "[red]no[/red]",
                ]
                for s in supervision
            ],
        )
    except FwGuardError as e:
        handle_error(e)


# ============================================================================
# Trigger installation
# ============================================================================

@app.command("install")
def install_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Install the boot unit and the reconciliation timer.

    Writes the unit files, enables them and starts the timer. Run
    'fwguard save' first so there is a snapshot to restore.
    """
    require_root("install", dry_run)
    ctx = create_context(dry_run=dry_run, verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config
        executor = CommandExecutor(ctx)
        supervisor = _supervisor(ctx, SystemdService(ctx, executor))
        store = StateStore(ctx, executor, app_config.snapshots)

        missing = [
            name for name in app_config.snapshots.families
            if not store.has_snapshot(Family(name))
        ]
        if missing:
            ctx.console.warn(f"No snapshot yet for: {', '.join(missing)}")
            ctx.console.hint("Create one with: fwguard save")

        supervisor.install()

        audit = configure_audit_logger(
            log_path=app_config.audit.log_path,
            max_size_mb=app_config.audit.max_size_mb,
            backup_count=app_config.audit.backup_count,
        )
        audit.record(
            AuditEventType.SUPERVISION_REGISTER,
            AuditResult.DRY_RUN if dry_run else AuditResult.SUCCESS,
            "installed",
            target=",".join(supervisor.render_units()),
        )
    except FwGuardError as e:
        handle_error(e)
        return

    ctx.console.summary("Installed", {
        "Boot unit": app_config.supervision.boot_unit,
        "Timer": f"{app_config.supervision.timer_unit} (every {app_config.supervision.interval})",
        "Cycle unit": app_config.supervision.cycle_unit,
    })


@app.command("uninstall")
def uninstall_cmd(
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Stop, disable and remove the fwguard units.

    Snapshots are left in place.
    """
    require_root("uninstall", dry_run)
    ctx = create_context(dry_run=dry_run, yes=yes, verbose=verbose, no_color=no_color, config=config)

    if not ctx.console.confirm(
        "Remove fwguard units? The firewall will no longer be restored.",
        skip_confirm=ctx.yes or ctx.dry_run,
    ):
        ctx.console.info("Cancelled")
        raise typer.Exit(1)

    try:
        supervisor = _supervisor(ctx, SystemdService(ctx, CommandExecutor(ctx)))
        removed = supervisor.uninstall()
    except FwGuardError as e:
        handle_error(e)
        return

    if removed:
        ctx.console.success(f"Removed: {', '.join(removed)}")
    else:
        ctx.console.info("No fwguard units installed")


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the effective configuration, including environment overrides.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

        ctx.console.summary("Effective values", {
            "Hostname": app_config.hostname,
            "Alert recipient": app_config.alert_recipient,
        })

    except FwGuardError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file.

    Creates a configuration file with defaults and comments.
    """
    ctx = create_context(no_color=no_color, config=config)
    config_path = ctx.config_path

    try:
        init_config(config_path, force=force)
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to customize settings, then run 'fwguard save'.")

    except FwGuardError as e:
        handle_error(e)
    except OSError as e:
        ctx.console.error(f"Cannot write {config_path}: {e}")
        raise typer.Exit(1)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file."""
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False)


if __name__ == "__main__":
    app()
