"""Main CLI entry point for hostkeep.

This module provides the command-line interface for hostkeep, a host-local
backup and restore tool. Backups run as resumable jobs: every completed step
is journaled in the job directory, so re-running the same command after a
failure or an interrupt continues where the job stopped.

The CLI is built using Click and provides a hierarchical command structure
with comprehensive help and error handling.
"""

import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from hostkeep import __version__
from hostkeep.utils.errors import ErrorHandler, HostKeepError, JobInterrupted
from hostkeep.utils.logging import setup_logging

EXIT_VERIFICATION_WARNING = 2
EXIT_INTERRUPTED = 130

MODE_CHOICES = ["selective", "disk-image", "snapshot-store"]


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def _load_settings(ctx: click.Context) -> Dict[str, Any]:
    from hostkeep.config import ConfigManager

    if "settings" not in ctx.obj:
        ctx.obj["settings"] = ConfigManager(config_file=ctx.obj["config_file"]).get_settings()
    return ctx.obj["settings"]


def _make_gate(yes: bool, confirm_targets: Tuple[str, ...]):
    from hostkeep.backup import AutoApproveGate, PromptGate

    if yes:
        return AutoApproveGate(confirm_targets)
    return PromptGate()


def _list_block_devices() -> None:
    from hostkeep.collaborators.base import run_tool, tool_available

    if tool_available("lsblk"):
        click.echo("Available disks:")
        click.echo(run_tool(["lsblk", "-d", "-o", "NAME,SIZE,MODEL,TYPE"], capture=True).stdout)


def _finish(report, job_path: Path) -> None:
    """Print where the report went and exit 2 on a verification warning."""
    report_name = "restore_report.txt" if report.restore else "report.txt"
    click.echo(f"\nReport: {job_path / report_name}")

    if report.verification is not None and not report.verification.ok:
        click.echo(f"⚠ Verification failed: {report.verification.reason}", err=True)
        click.echo("  Manual follow-up is required before relying on this backup.", err=True)
        sys.exit(EXIT_VERIFICATION_WARNING)


def _handle_failure(ctx: click.Context, error: Exception, context: str) -> None:
    if isinstance(error, JobInterrupted):
        ctx.obj["error_handler"].exit_with_error(error, context, exit_code=EXIT_INTERRUPTED)
    ctx.obj["error_handler"].exit_with_error(error, context)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
@click.option("--log-file", help="Log to file in addition to console")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Configuration file to use")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, dry_run: bool, log_file: Optional[str], config_file: Optional[str]) -> None:
    """hostkeep - Resumable host backup and restore.

    Backs up a host as a selective file-tree copy, a whole-disk image, or a
    deduplicated snapshot, and restores it again. Every step is confirmed
    before it runs and journaled when it completes.

    Args:
        ctx: Click context object containing shared state
        verbose: Enable verbose output for detailed logging
        dry_run: Show what would be done without executing commands
        log_file: Optional path to log file for additional logging
        config_file: Optional explicit configuration file
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["dry_run"] = dry_run
    ctx.obj["log_file"] = log_file
    ctx.obj["config_file"] = config_file
    ctx.obj["error_handler"] = ErrorHandler(verbose=verbose)

    # Setup logging
    setup_logging(verbose=verbose, log_file=log_file)


@cli.command()
@click.argument("job", required=False, type=click.Path(file_okay=False))
@click.option("--mode", type=click.Choice(MODE_CHOICES), help="Backup mode for a new job")
@click.option("--device", help="Block device to image (disk-image mode)")
@click.option("--resume", is_flag=True, help="Resume the latest job instead of starting a new one")
@click.option("--passphrase", envvar="HOSTKEEP_PASSPHRASE", help="Encryption passphrase (generated when omitted)")
@click.option("--yes", "-y", is_flag=True, help="Approve every step without prompting")
@click.pass_context
def backup(
    ctx: click.Context,
    job: Optional[str],
    mode: Optional[str],
    device: Optional[str],
    resume: bool,
    passphrase: Optional[str],
    yes: bool,
) -> None:
    """Back up this host, or resume an unfinished job.

    With JOB (a backup_* directory) or --resume the existing job continues:
    steps already journaled are skipped without prompting.

    Args:
        ctx: Click context object
        job: Job directory to resume
        mode: Backup mode for a new job
        device: Source block device for disk-image mode
        resume: Resume the latest job under the backup root
        passphrase: Passphrase for archive encryption
        yes: Approve every step without prompting
    """
    try:
        from hostkeep.backup import BackupManager, BackupMode, BackupStorage, Job
        from hostkeep.backup.job import job_name_for
        from hostkeep.collaborators import Collaborators

        settings = _load_settings(ctx)
        storage = BackupStorage(settings["backup_root"], verbose=ctx.obj["verbose"])
        collaborators = Collaborators.from_config(settings, snapshot_passphrase=passphrase)
        manager = BackupManager(
            collaborators, _make_gate(yes, ()), storage, settings, verbose=ctx.obj["verbose"]
        )
        resuming = bool(job) or resume

        if not resuming:
            if mode is None:
                mode = click.prompt("Backup mode", type=click.Choice(MODE_CHOICES), default="selective")
            if mode == BackupMode.DISK_IMAGE.value and not device:
                _list_block_devices()
                device = click.prompt("Device to image (e.g. /dev/sda)")

        if ctx.obj["dry_run"]:
            if resuming:
                target_job = manager.open(job)
            else:
                target_job = Job(storage.root / job_name_for(datetime.now()), BackupMode(mode), device=device)
            click.echo(f"DRY RUN: Job {target_job.path} ({target_job.mode.value})")
            for step, status in manager.plan(target_job):
                click.echo(f"DRY RUN:   {step.id}: {status}")
            return

        signal.signal(signal.SIGTERM, _raise_interrupt)
        if resuming:
            backup_job, report = manager.resume(job, passphrase=passphrase)
        else:
            backup_job, report = manager.start(BackupMode(mode), device=device, passphrase=passphrase)

        click.echo(f"\n✓ Backup job {backup_job.name} finished")
        _finish(report, backup_job.path)

    except HostKeepError as e:
        _handle_failure(ctx, e, "Backup")
    except KeyboardInterrupt:
        click.echo("\n✗ Interrupted", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Backup")


@cli.command()
@click.argument("job", required=False, type=click.Path())
@click.option("--target", help="Device or path to restore a disk image or snapshot onto")
@click.option("--passphrase", envvar="HOSTKEEP_PASSPHRASE", help="Passphrase of an encrypted archive")
@click.option("--yes", "-y", is_flag=True, help="Approve every step without prompting")
@click.option(
    "--confirm-target",
    multiple=True,
    help="Pre-confirm a target device/path that will be overwritten (with --yes)",
)
@click.pass_context
def restore(
    ctx: click.Context,
    job: Optional[str],
    target: Optional[str],
    passphrase: Optional[str],
    yes: bool,
    confirm_target: Tuple[str, ...],
) -> None:
    """Restore a backup job onto this host.

    Without JOB the latest backup_* job under the backup root is used.
    Encrypted archives are decrypted and extracted first; every restore
    step overwrites live data and is confirmed separately.

    Args:
        ctx: Click context object
        job: Job directory (or its archive name without suffix)
        target: Target device or path for disk-image and snapshot restores
        passphrase: Passphrase of an encrypted archive
        yes: Approve every step without prompting
        confirm_target: Targets confirmed up front for non-interactive runs
    """
    try:
        from hostkeep.backup import BackupMode, BackupStorage, RecoveryManager
        from hostkeep.backup.detector import ModeDetector
        from hostkeep.collaborators import Collaborators

        settings = _load_settings(ctx)
        storage = BackupStorage(settings["backup_root"], verbose=ctx.obj["verbose"])
        collaborators = Collaborators.from_config(settings, snapshot_passphrase=passphrase)

        def ask_passphrase() -> str:
            return click.prompt("Passphrase", hide_input=True)

        def ask_target(mode: BackupMode) -> str:
            if mode == BackupMode.DISK_IMAGE:
                _list_block_devices()
                return click.prompt("Disk to restore to (e.g. /dev/sda)")
            return click.prompt("Path to restore the snapshot into")

        recovery = RecoveryManager(
            collaborators,
            _make_gate(yes, confirm_target),
            storage,
            settings,
            passphrase_provider=None if yes else ask_passphrase,
            target_provider=None if yes else ask_target,
            verbose=ctx.obj["verbose"],
        )

        if ctx.obj["dry_run"]:
            path = recovery.locate(job)
            click.echo(f"DRY RUN: Would restore {path}")
            if path.is_dir():
                click.echo(f"DRY RUN: Mode: {ModeDetector(str(path)).get_mode_description()}")
            else:
                click.echo("DRY RUN: Archive would be decrypted and extracted first")
            return

        signal.signal(signal.SIGTERM, _raise_interrupt)
        report = recovery.restore(job, passphrase=passphrase, target=target)
        click.echo(f"\n✓ Restore of {report.job_name} finished")
        _finish(report, Path(job) if job else storage.root / report.job_name)

    except HostKeepError as e:
        _handle_failure(ctx, e, "Restore")
    except KeyboardInterrupt:
        click.echo("\n✗ Interrupted", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Restore")


@cli.command()
@click.argument("job", required=False, type=click.Path(file_okay=False))
@click.pass_context
def status(ctx: click.Context, job: Optional[str]) -> None:
    """Show a job's mode, phase, completed steps and artifacts."""
    try:
        from hostkeep.backup import BackupStorage, JobKind, StateJournal

        settings = _load_settings(ctx)
        storage = BackupStorage(settings["backup_root"])
        path = Path(job) if job else storage.find_latest_job()
        if path is None:
            click.echo(f"No backup jobs found in {storage.root}")
            return

        backup_job = storage.open_job(path)
        restore_job = storage.open_job(path, kind=JobKind.RESTORE)

        click.echo(f"Job: {backup_job.name}")
        click.echo(f"Mode: {backup_job.mode.value}")
        click.echo(f"Created: {backup_job.created_at.isoformat(timespec='seconds')}")
        click.echo(f"Backup phase: {backup_job.phase.value}")

        for title, state_job in (("Completed backup steps", backup_job), ("Completed restore steps", restore_job)):
            entries = StateJournal(state_job.state_log).entries()
            if not entries and state_job.is_restore:
                continue
            click.echo(f"\n{title}:")
            if not entries:
                click.echo("  (none)")
            for entry in entries:
                timing = f" ({entry.duration:.1f}s)" if entry.duration is not None else ""
                click.echo(f"  ✓ {entry.step_id}{timing}")

        artifacts = storage.artifacts(backup_job)
        if artifacts:
            click.echo("\nArtifacts:")
            for artifact in artifacts:
                click.echo(f"  • {artifact}")

        if backup_job.error_log.exists():
            click.echo(f"\nError log: {backup_job.error_log}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Job status")


@cli.command()
@click.argument("job", required=False, type=click.Path(file_okay=False))
@click.option("--passphrase", envvar="HOSTKEEP_PASSPHRASE", help="Passphrase of the encrypted archive")
@click.pass_context
def verify(ctx: click.Context, job: Optional[str], passphrase: Optional[str]) -> None:
    """Verify a job against its checksum manifests or snapshot store."""
    try:
        from hostkeep.backup import BackupStorage, Verifier
        from hostkeep.collaborators import Collaborators

        settings = _load_settings(ctx)
        storage = BackupStorage(settings["backup_root"])
        path = Path(job) if job else storage.find_latest_job()
        if path is None:
            click.echo(f"No backup jobs found in {storage.root}", err=True)
            sys.exit(1)

        backup_job = storage.open_job(path)
        if passphrase is None and backup_job.passphrase_file.exists():
            passphrase = backup_job.passphrase_file.read_text(encoding="utf-8").strip()

        result = Verifier(Collaborators.from_config(settings)).verify(backup_job, passphrase=passphrase)
        for line in result.details:
            click.echo(f"  {line}")

        if not result.ok:
            click.echo(f"⚠ Verification failed: {result.reason}", err=True)
            sys.exit(EXIT_VERIFICATION_WARNING)

        click.echo(f"✓ {backup_job.name}: {result.reason} ({result.checked_files} files)")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Verification")


@cli.command()
@click.argument("job", type=click.Path())
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cleanup(ctx: click.Context, job: str, yes: bool) -> None:
    """Delete a job directory and its archive, passphrase and report files."""
    try:
        from hostkeep.backup import BackupMode, BackupStorage, Job

        settings = _load_settings(ctx)
        storage = BackupStorage(settings["backup_root"])
        path = Path(job)
        backup_job = storage.open_job(path) if path.is_dir() else Job(path, BackupMode.SELECTIVE)

        targets: List[Path] = storage.artifacts(backup_job)
        if path.is_dir():
            targets.insert(0, path)
        if not targets:
            click.echo(f"Nothing to remove for {path}")
            return

        click.echo("This will permanently delete:")
        for target in targets:
            click.echo(f"  • {target}")

        if ctx.obj["dry_run"]:
            click.echo("DRY RUN: Nothing deleted")
            return

        if not yes and not click.confirm("Delete these files?", default=False):
            click.echo("Cleanup cancelled")
            return

        storage.cleanup(backup_job)
        click.echo(f"✓ Removed {backup_job.name}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Cleanup")


@cli.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.pass_context
def config(ctx: click.Context) -> None:
    """Manage hostkeep configuration."""
    pass


@config.command("init")
@click.option("--backup-root", help="Directory where job directories are created")
@click.option("--force", is_flag=True, help="Overwrite an existing hostkeep.yml")
@click.pass_context
def config_init(ctx: click.Context, backup_root: Optional[str], force: bool) -> None:
    """Write a default hostkeep.yml into the current directory."""
    try:
        from hostkeep.config import ConfigManager

        if ctx.obj["dry_run"]:
            click.echo("DRY RUN: Would write hostkeep.yml:")
            click.echo(ConfigManager().render_default_config({"backup_root": backup_root} if backup_root else None))
            return

        config_path = ConfigManager().initialize_config(backup_root=backup_root, force=force)
        click.echo(f"✓ Configuration written to {config_path}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration initialization")


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    try:
        import yaml

        from hostkeep.config import ConfigManager

        manager = ConfigManager(config_file=ctx.obj["config_file"])
        source = manager.get_config_path()
        click.echo(f"# Source: {source or 'built-in defaults'}")
        click.echo(yaml.dump({"hostkeep": manager.get_settings()}, default_flow_style=False, sort_keys=False))

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration")


if __name__ == "__main__":
    cli()
