"""Console entrypoint for the devguard host hardening tool."""
from __future__ import annotations

import logging
from pathlib import Path

import click

from devguard.core.checkpoint_manager import BackupIntegrityError, CheckpointManager
from devguard.core.config import IntentLoadError, Settings, load_intent
from devguard.core.logging_manager import get_logging_manager
from devguard.core.orchestrator import HardeningRun
from devguard.core.plan_gate import GateMode, PlanGate
from devguard.core.reporter import ResultReporter
from devguard.models.changes import PlannedChange


EXIT_FAILED = 1
EXIT_PREREQUISITES = 2


def _confirm_change(change: PlannedChange) -> bool:
    click.echo(f"\n{change.describe()}\n  {change.rationale}")
    return click.confirm("Apply this change?", default=False)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output, including every command executed.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """devguard: harden a single development host."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault("settings", Settings.from_env())


@cli.command()
@click.option(
    "--intent-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file describing the hardening intent; options below override it.",
)
@click.option("--port", "management_port", type=int, help="Management (SSH) port to keep open.  [default: 22]")
@click.option("--allowed-user", help="Restrict SSH logins to this user.")
@click.option(
    "--keep-password-auth",
    is_flag=True,
    help="Leave password authentication enabled (skips the public key requirement).",
)
@click.option(
    "--tunnel-config",
    type=click.Path(dir_okay=False, path_type=Path),
    help="WireGuard config to build the VPN kill switch from.",
)
@click.option("--tunnel-interface", help="Tunnel interface name.  [default: config file name]")
@click.option("--max-retry", type=int, help="Failed logins before a ban.  [default: 5]")
@click.option("--find-time", type=int, help="Lookback window in seconds.  [default: 600]")
@click.option("--ban-time", type=int, help="Ban duration in seconds.  [default: 3600]")
@click.option("--dry-run", is_flag=True, help="Report the planned changes without applying them.")
@click.option("--confirm", "confirm_each", is_flag=True, help="Ask before applying each change.")
@click.option(
    "--report-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write the report as JSON to this path.",
)
@click.pass_context
def apply(
    ctx: click.Context,
    intent_file: Path | None,
    management_port: int | None,
    allowed_user: str | None,
    keep_password_auth: bool | None,
    tunnel_config: Path | None,
    tunnel_interface: str | None,
    max_retry: int | None,
    find_time: int | None,
    ban_time: int | None,
    dry_run: bool,
    confirm_each: bool,
    report_file: Path | None,
) -> None:
    """Apply firewall, fail2ban, sshd and kill-switch hardening to this host."""

    if dry_run and confirm_each:
        raise click.UsageError("--dry-run and --confirm are mutually exclusive.")

    try:
        intent = load_intent(
            intent_file,
            {
                "management_port": management_port,
                "allowed_user": allowed_user,
                "disable_password_auth": False if keep_password_auth else None,
                "tunnel_config": tunnel_config,
                "tunnel_interface": tunnel_interface,
                "ban": {"max_retry": max_retry, "find_time": find_time, "ban_time": ban_time},
            },
        )
    except IntentLoadError as exc:
        raise click.UsageError(exc.message) from exc

    settings: Settings = ctx.obj["settings"]
    logging_manager = get_logging_manager()
    if dry_run:
        gate = PlanGate(GateMode.DRY_RUN, logging_manager=logging_manager)
    elif confirm_each:
        gate = PlanGate(GateMode.CONFIRM, confirm=_confirm_change, logging_manager=logging_manager)
    else:
        gate = PlanGate(GateMode.APPLY, logging_manager=logging_manager)

    reporter = ResultReporter()
    run = HardeningRun(intent, settings, gate=gate, reporter=reporter, logging_manager=logging_manager)
    report = run.run()
    reporter.render(report)

    if report_file is not None:
        reporter.save(report, report_file)
        click.echo(f"Report written to {report_file}")

    prerequisites = report.step("prerequisites")
    if prerequisites is not None and not prerequisites.success:
        ctx.exit(EXIT_PREREQUISITES)
    if not report.success:
        ctx.exit(EXIT_FAILED)


@cli.command()
@click.pass_context
def checkpoints(ctx: click.Context) -> None:
    """List configuration backups taken by previous runs."""

    manager = CheckpointManager(ctx.obj["settings"].state_dir)
    ids = manager.list_checkpoints()
    if not ids:
        click.echo("No checkpoints available.")
        return

    for checkpoint_id in ids:
        backup = manager.load_checkpoint(checkpoint_id)
        if backup is None:
            continue
        click.echo(f"{backup.id} - {backup.source} @ {backup.timestamp.isoformat()}")


@cli.command()
@click.argument("checkpoint_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def rollback(ctx: click.Context, checkpoint_id: str, yes: bool) -> None:
    """Restore a configuration file from a checkpoint, verbatim."""

    manager = CheckpointManager(ctx.obj["settings"].state_dir)
    backup = manager.load_checkpoint(checkpoint_id)
    if backup is None:
        raise click.UsageError("Checkpoint not found or could not be decrypted.")

    if not yes:
        click.confirm(f"Overwrite {backup.source} with the copy taken {backup.timestamp.isoformat()}?", abort=True)

    try:
        manager.restore_backup(backup)
    except BackupIntegrityError as exc:
        raise click.ClickException(exc.message) from exc

    get_logging_manager().log_backup_restored(backup.id, backup.source, True)
    click.echo(f"Restored {backup.source} from {backup.id}.")
    click.echo("Validate the file and restart the affected service to load it.")


@cli.command("render-report")
@click.argument("report_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def render_report(report_file: Path) -> None:
    """Re-render a JSON report written by 'apply --report-file'."""

    ResultReporter().render(ResultReporter.load(report_file))


if __name__ == "__main__":
    cli()
