"""Restore flow: unpack a job's artifacts, then restore it onto the host."""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import click

from hostkeep.collaborators import Collaborators
from hostkeep.utils.errors import CollaboratorError, ConfigurationError, create_error_suggestions

from .confirmation import ConfirmationGate
from .job import BackupMode, Job, JobKind
from .manager import JobOrchestrator
from .preflight import Preflight
from .report import RunReport
from .steps import Step, StepContext, StepRegistry, build_restore_registry
from .storage import BackupStorage

logger = logging.getLogger(__name__)

TARGET_MODES = (BackupMode.DISK_IMAGE, BackupMode.SNAPSHOT)


class RecoveryManager:
    """Restores a job onto this host."""

    def __init__(
        self,
        collaborators: Collaborators,
        gate: ConfirmationGate,
        storage: BackupStorage,
        config: Optional[Dict[str, Any]] = None,
        passphrase_provider: Optional[Callable[[], str]] = None,
        target_provider: Optional[Callable[[BackupMode], Optional[str]]] = None,
        echo: Callable[[str], None] = click.echo,
        verbose: bool = False,
    ):
        """
        Initialize recovery manager.

        Args:
            collaborators: Capabilities the steps call
            gate: Source of operator decisions
            storage: Job storage
            config: The ``hostkeep`` configuration section
            passphrase_provider: Asked for the passphrase when one is needed and not known
            target_provider: Asked for the target device/path of disk-image and snapshot restores
            echo: Sink for operator notices
            verbose: Enable verbose output
        """
        self.collaborators = collaborators
        self.gate = gate
        self.storage = storage
        self.config = config or {}
        self.passphrase_provider = passphrase_provider
        self.target_provider = target_provider
        self.echo = echo
        self.verbose = verbose
        self.orchestrator = JobOrchestrator(collaborators, gate, storage, self.config, echo=echo, verbose=verbose)
        self._passphrase: Optional[str] = None

    def locate(self, job_path: Optional[Union[str, Path]] = None) -> Path:
        """The job to restore: the one given, or the latest under the backup root."""
        if job_path is None:
            path = self.storage.find_latest_job()
            if path is None:
                raise ConfigurationError(
                    f"No backup_* job found in {self.storage.root}",
                    suggestions=["Pass the job directory explicitly", "Check backup_root in hostkeep.yml"],
                )
            self.echo(f"Using latest job {path.name}")
        else:
            path = Path(job_path)

        probe = Job(path=path, mode=BackupMode.SELECTIVE)
        if not (path.is_dir() or probe.archive_path.exists() or probe.encrypted_path.exists()):
            raise ConfigurationError(f"No job directory or archive found for {path}")
        return path

    def passphrase_for(self, job: Job) -> str:
        """Known passphrase, the saved passphrase file, or ask for one."""
        if self._passphrase:
            return self._passphrase

        if job.passphrase_file.exists():
            self._passphrase = job.passphrase_file.read_text(encoding="utf-8").strip()
            logger.info("Using passphrase from %s", job.passphrase_file)
        elif self.passphrase_provider is not None:
            self._passphrase = self.passphrase_provider()
        else:
            raise ConfigurationError(
                f"{job.encrypted_path.name} is encrypted and no passphrase was given",
                suggestions=create_error_suggestions("decrypt_failed"),
            )
        return self._passphrase

    def unpack_registry(self) -> StepRegistry:
        """The decrypt and extract pseudo-steps, journaled like any other restore step."""

        def decrypt(ctx: StepContext) -> None:
            job = ctx.job
            try:
                self.collaborators.cipher.decrypt(job.encrypted_path, job.archive_path, self.passphrase_for(job))
            except CollaboratorError as e:
                e.suggestions = e.suggestions or create_error_suggestions("decrypt_failed")
                raise

        def extract(ctx: StepContext) -> None:
            job = ctx.job
            self.collaborators.archiver.extract(job.archive_path, job.path)
            if job.encrypted_path.exists():
                # Plaintext produced by decrypt; the encrypted artifact stays
                job.archive_path.unlink()

        return StepRegistry(
            [
                Step(
                    "decrypt",
                    "decrypt the encrypted archive",
                    decrypt,
                    applicable=lambda ctx: ctx.job.encrypted_path.exists() and not ctx.job.archive_path.exists(),
                ),
                Step(
                    "extract",
                    "extract the backup archive",
                    extract,
                    applicable=lambda ctx: ctx.job.archive_path.exists(),
                ),
            ]
        )

    def restore(
        self,
        job_path: Optional[Union[str, Path]] = None,
        passphrase: Optional[str] = None,
        target: Optional[str] = None,
    ) -> RunReport:
        """
        Restore a job.

        Unpacks archived artifacts first, then detects the backup mode from
        the unpacked job directory and runs the matching restore steps. All
        progress goes to ``restore_state.log`` so an interrupted restore
        resumes where it stopped.

        Args:
            job_path: Job to restore; the latest job when omitted
            passphrase: Passphrase of an encrypted archive
            target: Device or path a disk-image or snapshot restore writes to

        Returns:
            RunReport: Report of the restore, also written to restore_report.txt
        """
        path = self.locate(job_path)
        self._passphrase = passphrase
        self.storage.check_disk_space(self.config.get("min_free_space_gb", 50), path.parent)

        path.mkdir(parents=True, exist_ok=True)
        job = self.storage.open_job(path, kind=JobKind.RESTORE)

        with self.storage.lock(job):
            report = self.orchestrator.run(job, self.unpack_registry(), finalize=False, verify=False)

            # job.json arrives with the extracted archive
            job = self.storage.open_job(path, kind=JobKind.RESTORE)
            if job.mode in TARGET_MODES:
                job.target = target or job.target
                if not job.target and self.target_provider:
                    job.target = self.target_provider(job.mode)

            preflight = Preflight(self.collaborators, self.gate, self.config, verbose=self.verbose)
            preflight.ensure_tools(job.mode)
            preflight.check_privileges(job.mode, job.kind)

            self.echo(f"Restoring {job.name} ({job.mode.value})")
            registry = build_restore_registry(job, self.config)
            return self.orchestrator.run(job, registry, finalize=False, verify=True, report=report)
