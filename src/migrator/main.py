"""Main entry point for the migrator CLI."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import click
import structlog

from migrator.config import STRATEGIES, MigratorConfig, load_config
from migrator.exceptions import MigratorError
from migrator.metrics import MigratorMetrics
from migrator.orchestrator import OperationResult, Orchestrator
from recovery.conflict_resolver import ConflictStrategy
from utils.logging import configure_logging, get_logger
from utils.output import (
    print_error,
    print_header,
    print_info,
    print_key_value,
    print_recommendations,
    print_section,
    print_success,
    print_table,
    print_warning,
)


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command."""
    func = click.option(
        "--log-format",
        default="console",
        type=click.Choice(["console", "json"], case_sensitive=False),
        help="Log format: 'console' for human-readable output, 'json' for structured logs",
    )(func)
    func = click.option(
        "--log-level",
        default="WARNING",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
        help="Log level (default: WARNING)",
    )(func)
    func = click.option(
        "--config",
        "-c",
        required=True,
        type=click.Path(exists=True, path_type=Path),
        help="Path to configuration file (YAML)",
    )(func)
    return func


def _setup(config_path: Path, log_level: str, log_format: str) -> MigratorConfig:
    configure_logging(log_level=log_level.upper(), log_format=log_format)
    try:
        return load_config(config_path)
    except MigratorError as e:
        print_error(f"Configuration error: {e.message}")
        sys.exit(1)


def _build(config: MigratorConfig) -> Orchestrator:
    metrics = None
    if config.monitoring.metrics_enabled:
        metrics = MigratorMetrics()
        metrics.start_metrics_server(config.monitoring.metrics_port)
    return Orchestrator.from_config(config, metrics=metrics)


def _run(
    config: MigratorConfig,
    action: Callable[[Orchestrator], Any],
    logger: structlog.BoundLogger,
    connect: bool = True,
) -> Any:
    """Build the orchestrator, run one async action and clean up."""

    async def run() -> Any:
        orchestrator = _build(config)
        try:
            if connect and not await orchestrator.connect_remote() and config.remote:
                print_warning("Remote store unavailable; continuing with the local store only")
            return await action(orchestrator)
        finally:
            await orchestrator.cleanup()

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error("Command failed", error=str(e), exc_info=True)
        print_error(f"Unexpected error: {e}")
        sys.exit(1)


def _finish(result: OperationResult) -> None:
    if result.success:
        print_success(result.message)
        sys.exit(0)
    print_error(result.message)
    sys.exit(1)


def _print_steps(steps: list[dict[str, Any]]) -> None:
    rows = []
    for step in steps:
        details = {k: v for k, v in step.items() if k not in ("step", "success", "result")}
        rows.append([step["step"], "ok" if step["success"] else "failed", details or ""])
    print_section("Steps")
    print_table(["Step", "Status", "Details"], rows)


@click.group()
@click.version_option(package_name="pomodoro-migrator")
def cli() -> None:
    """Migrate local Pomodoro user data into PostgreSQL."""


@cli.command("health-check")
@common_options
def health_check(config: Path, log_level: str, log_format: str) -> None:
    """Check data quality, remote connectivity and the backup system."""
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")
    result: OperationResult = _run(
        migrator_config,
        lambda o: o.perform_health_check(),
        logger,
    )

    report = result.payload
    print_header("Health Check")
    if report:
        print_key_value("Overall", report["overall"])
        print_section("Components")
        for name, component in report["components"].items():
            extra = f" (score {component['score']})" if "score" in component else ""
            print_key_value(name, f"{component['status']}{extra}")
        print_recommendations(report["recommendations"])
        click.echo()
    _finish(result)


@cli.command()
@common_options
@click.option(
    "--strategy",
    type=click.Choice(list(STRATEGIES), case_sensitive=False),
    default=None,
    help="Migration strategy (default: from configuration)",
)
@click.option("--dry-run", is_flag=True, help="Export, validate and back up without remote writes")
@click.option("--skip-backup", is_flag=True, help="Do not create a full backup first")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Users per batch")
@click.option(
    "--ignore-validation-errors",
    is_flag=True,
    help="Continue even when export validation fails",
)
@click.option(
    "--enable-hybrid/--no-enable-hybrid",
    default=None,
    help="Activate hybrid mode after a successful safe migration",
)
@click.option("--resume", is_flag=True, help="Continue an unfinished migration run")
def migrate(
    config: Path,
    log_level: str,
    log_format: str,
    strategy: Optional[str],
    dry_run: bool,
    skip_backup: bool,
    batch_size: Optional[int],
    ignore_validation_errors: bool,
    enable_hybrid: Optional[bool],
    resume: bool,
) -> None:
    """Run a migration.

    Examples:

    \b
    # Validate and back up without touching the remote store
    pomodoro-migrate migrate --config config.yaml --dry-run

    \b
    # Fast migration with larger batches and no remote verification
    pomodoro-migrate migrate --config config.yaml --strategy fast
    """
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")

    def on_progress(event: Any) -> None:
        data = event.data
        detail = f" - {data['detail']}" if data.get("detail") else ""
        print_info(f"[{data['progress']:>3}%] {data['step']}{detail}")

    async def action(orchestrator: Orchestrator) -> OperationResult:
        orchestrator.events.subscribe("migrationProgress", on_progress)
        return await orchestrator.start_migration(
            strategy=strategy,
            dry_run=dry_run,
            skip_backup=skip_backup or None,
            batch_size=batch_size,
            ignore_validation_errors=ignore_validation_errors or None,
            enable_hybrid=enable_hybrid,
            resume=resume,
        )

    result: OperationResult = _run(migrator_config, action, logger, connect=not dry_run)

    print_header("Migration" + (" (dry run)" if dry_run else ""))
    payload = result.payload
    if payload.get("strategy"):
        print_key_value("Strategy", payload["strategy"])
    if payload.get("steps"):
        _print_steps(payload["steps"])
    transfer = payload.get("transfer") or {}
    if transfer:
        print_section("Transfer")
        for key in ("migrated_users", "existing_users", "migrated_sessions", "migrated_meetings"):
            print_key_value(key.replace("_", " ").capitalize(), transfer.get(key, 0))
        if transfer.get("failed_users"):
            print_warning(f"Failed users: {', '.join(transfer['failed_users'])}")
    click.echo()
    _finish(result)


@cli.command()
@common_options
@click.option("--backup-id", default=None, help="Backup or snapshot to restore (default: latest)")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in ConflictStrategy], case_sensitive=False),
    default=ConflictStrategy.PREFER_BACKUP.value,
    help="How to treat local values that differ from the backup",
)
def rollback(
    config: Path,
    log_level: str,
    log_format: str,
    backup_id: Optional[str],
    strategy: str,
) -> None:
    """Restore the local store from a backup."""
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")
    result: OperationResult = _run(
        migrator_config,
        lambda o: o.rollback_migration(backup_id, ConflictStrategy(strategy)),
        logger,
        connect=False,
    )

    print_header("Rollback")
    if result.success:
        print_key_value("Backup", result.payload["backup_id"])
        print_key_value("Restored keys", len(result.payload["restored_keys"]))
        print_key_value("Conflicts", result.payload["conflicts"]["total_conflicts"])
    click.echo()
    _finish(result)


@cli.command()
@common_options
def status(config: Path, log_level: str, log_format: str) -> None:
    """Show migration, backup and hybrid mode status."""
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")

    async def action(orchestrator: Orchestrator) -> dict[str, Any]:
        return orchestrator.get_status()

    current = _run(migrator_config, action, logger, connect=False)
    migration = current["migration"]

    print_header("Migration Status")
    print_key_value("State", migration["state"])
    print_key_value("Progress", f"{migration['progress']:.0f}%")
    print_key_value("Current step", migration["current_step"] or "-")
    print_key_value("Completed steps", ", ".join(migration["completed_steps"]) or "-")
    print_key_value("Backup", migration["backup_id"] or "-")
    if migration["errors"]:
        print_section("Errors")
        for error in migration["errors"][-5:]:
            print_warning(f"[{error['step']}] {error['message']}")

    recovery = current["recovery"]
    print_section("Recovery")
    latest = recovery["latest_backup"] or {}
    print_key_value("Latest backup", latest.get("id", "-"))
    print_key_value("Snapshots", f"{recovery['snapshots']}/{recovery['max_snapshots']}")

    hybrid = current["hybrid_mode"]["status"] or {}
    print_section("Hybrid mode")
    print_key_value("Enabled", current["hybrid_mode"]["enabled"])
    if hybrid:
        print_key_value("Migrated users", hybrid["users"]["migrated"])
        print_key_value("Sync queue", hybrid["sync_queue_size"])
        print_key_value("Permanently failed", hybrid["permanently_failed"])
    click.echo()


@cli.command()
@common_options
def backups(config: Path, log_level: str, log_format: str) -> None:
    """List backup history and snapshots."""
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")

    async def action(orchestrator: Orchestrator) -> tuple[list[dict[str, Any]], list[Any]]:
        return orchestrator.recovery.list_backups(), orchestrator.recovery.list_snapshots()

    history, snapshots = _run(migrator_config, action, logger, connect=False)

    print_header("Backups")
    if not history and not snapshots:
        print_info("No backups found")
        return
    print_table(
        ["ID", "Timestamp", "Source", "Size (bytes)", "Checksum"],
        [
            [
                b["id"],
                b["timestamp"],
                b["source"],
                b.get("size_bytes", "-"),
                (b.get("checksum") or "-")[:12],
            ]
            for b in history
        ],
    )
    if snapshots:
        print_section("Snapshots")
        print_table(
            ["ID", "Timestamp", "Event"],
            [[s.id, s.timestamp, s.event or "-"] for s in snapshots],
        )
    click.echo()


@cli.command()
@common_options
def sync(config: Path, log_level: str, log_format: str) -> None:
    """Replay the hybrid sync queue once."""
    migrator_config = _setup(config, log_level, log_format)
    logger = get_logger("cli")
    result: OperationResult = _run(migrator_config, lambda o: o.sync_now(), logger)

    print_header("Sync Queue")
    report = result.payload
    if report.get("skipped"):
        print_warning(f"Offline; {report['queue_size']} item(s) remain queued")
    elif result.success:
        for key in ("processed", "succeeded", "retried", "failed"):
            print_key_value(key.capitalize(), report[key])
    click.echo()
    _finish(result)


if __name__ == "__main__":
    cli()
