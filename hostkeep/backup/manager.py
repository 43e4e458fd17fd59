"""Job orchestration: drives steps through confirmation, execution and journaling."""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import click

from hostkeep.collaborators import Collaborators
from hostkeep.collaborators.imaging import is_block_device
from hostkeep.utils.errors import (
    CollaboratorError,
    ConfigurationError,
    JobInterrupted,
    OrchestrationError,
    StepExecutionError,
    VerificationError,
    create_error_suggestions,
)
from hostkeep.utils.files import ChecksumManifest

from .confirmation import ConfirmationGate, ConfirmationPolicy
from .job import BackupMode, Job, JobKind, JobPhase
from .journal import ResumeState, StateJournal
from .preflight import Preflight
from .report import Outcome, RunReport
from .steps import Step, StepContext, StepRegistry, build_backup_registry, build_finalize_registry
from .storage import BackupStorage
from .verifier import VerificationResult, Verifier

logger = logging.getLogger(__name__)

# Journaling this pseudo-step seals a backup job against further capture
SEAL_STEP = "compress"

PHASE_AFTER_STEP = {
    "compress": JobPhase.ARCHIVED,
    "encrypt": JobPhase.ENCRYPTED,
}


class JobOrchestrator:
    """Runs a step registry for one job, resumably."""

    def __init__(
        self,
        collaborators: Collaborators,
        gate: ConfirmationGate,
        storage: BackupStorage,
        config: Optional[Dict[str, Any]] = None,
        verifier: Optional[Verifier] = None,
        echo: Callable[[str], None] = click.echo,
        clock: Callable[[], float] = time.monotonic,
        verbose: bool = False,
    ):
        """
        Initialize orchestrator.

        Args:
            collaborators: Capabilities the steps call
            gate: Source of operator decisions
            storage: Job storage (locking, job.json, error log)
            config: The ``hostkeep`` configuration section
            verifier: Post-run verifier, built from collaborators when omitted
            echo: Sink for operator notices
            clock: Monotonic clock used for step durations
            verbose: Enable verbose output
        """
        self.collaborators = collaborators
        self.gate = gate
        self.storage = storage
        self.config = config or {}
        self.verifier = verifier or Verifier(collaborators)
        self.echo = echo
        self.clock = clock
        self.verbose = verbose
        self._in_flight: Optional[str] = None

    def run(
        self,
        job: Job,
        registry: StepRegistry,
        resume_state: Optional[ResumeState] = None,
        passphrase: Optional[str] = None,
        finalize: bool = True,
        verify: bool = True,
        report: Optional[RunReport] = None,
    ) -> RunReport:
        """
        Run every undone step of a registry.

        Steps already in the journal are skipped with a notice. Every other
        applicable step is confirmed through the gate, executed, and
        committed: manifest first, then the fsynced journal line. After the
        registry, backup jobs run the compress and encrypt pseudo-steps and
        the verifier checks the result.

        Args:
            job: The job to run
            registry: Steps in execution order
            resume_state: Journal contents, read from disk when omitted
            passphrase: Passphrase for encryption/decryption, generated when needed
            finalize: Offer compress and encrypt after the registry
            verify: Run the verifier at the end
            report: Report of an earlier run in the same invocation to continue

        Returns:
            RunReport: The report, also written to the job directory

        Raises:
            OrchestrationError: A step failed and the run could not continue
            JobInterrupted: The operator interrupted the run
        """
        journal = StateJournal(job.state_log)
        if report is None:
            report = RunReport(job_name=job.name, mode=job.mode.value, restore=job.is_restore)
        else:
            report.mode = job.mode.value
        ctx = StepContext(job, self.collaborators, self.config, echo=self.echo)
        if passphrase:
            ctx.state["passphrase"] = passphrase

        with self.storage.lock(job):
            resume = resume_state if resume_state is not None else journal.load()
            policy = ConfirmationPolicy(covers_destructive=self.config.get("yes_to_all_covers_destructive", False))
            failed: List[str] = []
            self._in_flight = None

            if job.is_restore or job.phase in (JobPhase.CREATED, JobPhase.FAILED, JobPhase.INTERRUPTED):
                job.phase = JobPhase.RUNNING
                self.storage.save_job(job)

            try:
                sealed = not job.is_restore and SEAL_STEP in resume.done
                if sealed:
                    report.notice(f"Job is sealed ({SEAL_STEP} already done); capture steps are not offered")

                self._run_steps(registry, ctx, journal, resume, policy, report, failed, sealed)
                if job.phase == JobPhase.RUNNING:
                    job.phase = JobPhase.RESTORED if job.is_restore else JobPhase.CAPTURED
                    self.storage.save_job(job)

                if finalize and not job.is_restore and failed:
                    report.notice("Compression skipped: failed steps must be redone before the job is sealed")
                elif finalize and not job.is_restore:
                    finalizers = build_finalize_registry(job, self.config)
                    self._run_steps(finalizers, ctx, journal, resume, policy, report, failed, False)

                if verify:
                    report.verification = self._verify(job, ctx.state.get("passphrase"))

                if failed:
                    job.phase = JobPhase.FAILED

            except StepExecutionError as e:
                job.phase = JobPhase.FAILED
                raise OrchestrationError(
                    e.message,
                    details=e.details,
                    job_path=str(job.path),
                    error_log=str(job.error_log),
                    failed_steps=failed + [e.step_id],
                    suggestions=create_error_suggestions("step_failed"),
                ) from e

            except KeyboardInterrupt:
                step_id = self._in_flight
                job.phase = JobPhase.INTERRUPTED
                if step_id:
                    self.storage.record_error(job, step_id, JobInterrupted("interrupted by operator"))
                    step = registry.get(step_id)
                    report.add(step_id, step.description if step else step_id, Outcome.INTERRUPTED)
                raise JobInterrupted(
                    "Interrupted; completed steps are journaled",
                    job_path=str(job.path),
                    step_id=step_id,
                    suggestions=["Re-run the same command to resume"],
                ) from None

            finally:
                report.finish()
                self.storage.save_job(job)
                report.write(job.report_file)

            if failed:
                raise OrchestrationError(
                    f"{len(failed)} step(s) failed: {', '.join(failed)}",
                    job_path=str(job.path),
                    error_log=str(job.error_log),
                    failed_steps=failed,
                    suggestions=create_error_suggestions("step_failed"),
                )

        return report

    def _run_steps(
        self,
        registry: StepRegistry,
        ctx: StepContext,
        journal: StateJournal,
        resume: ResumeState,
        policy: ConfirmationPolicy,
        report: RunReport,
        failed: List[str],
        sealed: bool,
    ) -> None:
        for step in registry:
            if resume.is_done(step.id):
                duration = resume.durations.get(step.id)
                self.echo(f"• {step.id}: already done, skipping")
                report.add(step.id, step.description, Outcome.ALREADY_DONE, duration)
                continue

            if sealed:
                report.add(step.id, step.description, Outcome.SEALED)
                continue

            if not step.applicable(ctx):
                logger.debug("Step %s not applicable", step.id)
                continue

            if not self._confirm(step, policy):
                self.echo(f"• {step.id}: skipped")
                report.add(step.id, step.description, Outcome.DECLINED)
                continue

            self._in_flight = step.id
            self._execute(step, ctx, journal, report, failed)
            self._in_flight = None

    def _confirm(self, step: Step, policy: ConfirmationPolicy) -> bool:
        if policy.should_prompt(step.destructive):
            question = step.question
            if step.destructive:
                question = f"{question} This overwrites live data."
            if not policy.apply(self.gate.ask(question)):
                return False

        if step.target:
            prompt = f"{step.description}: everything on {step.target} will be overwritten."
            if not self.gate.confirm_target(prompt, step.target):
                self.echo(f"Target {step.target} was not confirmed")
                return False

        return True

    def _execute(
        self, step: Step, ctx: StepContext, journal: StateJournal, report: RunReport, failed: List[str]
    ) -> None:
        job = ctx.job
        self.echo(f"→ {step.description}")
        started = self.clock()

        try:
            metadata = step.apply(ctx)
            if step.checksum and step.destination:
                ChecksumManifest(job.path).record(step.id, step.destination)
        except Exception as e:
            duration = self.clock() - started
            self.storage.record_error(job, step.id, e)
            report.add(step.id, step.description, Outcome.FAILED, duration, detail=str(e))
            error = StepExecutionError(step.id, e, details=getattr(e, "details", None))

            if step.destructive or not self.config.get("continue_on_error", False):
                raise error from e

            logger.warning("Continuing after failed step %s: %s", step.id, e)
            self.echo(click.style(f"⚠ {step.id} failed, continuing: {e}", fg="yellow"))
            failed.append(step.id)
            return

        duration = self.clock() - started
        if metadata:
            job.metadata.update(metadata)
        if step.id in PHASE_AFTER_STEP and not job.is_restore:
            job.phase = PHASE_AFTER_STEP[step.id]
        if metadata or step.id in PHASE_AFTER_STEP:
            self.storage.save_job(job)

        journal.append(step.id, duration)
        report.add(step.id, step.description, Outcome.DONE, duration)
        self.echo(f"✓ {step.id} done in {duration:.1f} seconds")

    def _verify(self, job: Job, passphrase: Optional[str]) -> VerificationResult:
        self.echo("Verifying...")
        try:
            result = self.verifier.verify(job, passphrase=passphrase)
        except CollaboratorError as e:
            result = VerificationResult(False, f"verification could not run: {e.message}")

        if result.ok:
            self.echo(f"✓ Verification passed: {result.reason}")
            if not job.is_restore:
                job.phase = JobPhase.VERIFIED
        else:
            warning = VerificationError(result.reason, details="\n".join(result.details) or None)
            self.storage.record_error(job, "verify", warning)
            self.echo(click.style(f"⚠ Verification failed: {result.reason}", fg="yellow"))
            for line in result.details:
                self.echo(f"    {line}")

        return result

    def plan(
        self, job: Job, registry: StepRegistry, resume_state: Optional[ResumeState] = None
    ) -> List[Tuple[Step, str]]:
        """What a run would do with each step, without prompting or executing."""
        resume = resume_state if resume_state is not None else StateJournal(job.state_log).load()
        ctx = StepContext(job, self.collaborators, self.config, echo=self.echo)
        sealed = not job.is_restore and SEAL_STEP in resume.done

        steps = list(registry)
        if not job.is_restore and job.mode != BackupMode.SNAPSHOT:
            steps += list(build_finalize_registry(job, self.config))

        planned = []
        for step in steps:
            if resume.is_done(step.id):
                status = "already done"
            elif sealed and step.id in registry:
                status = "sealed"
            elif not step.applicable(ctx):
                status = "not applicable"
            else:
                status = "would prompt (destructive)" if step.destructive else "would prompt"
            planned.append((step, status))
        return planned


class BackupManager:
    """Starts and resumes backup jobs."""

    def __init__(
        self,
        collaborators: Collaborators,
        gate: ConfirmationGate,
        storage: BackupStorage,
        config: Optional[Dict[str, Any]] = None,
        echo: Callable[[str], None] = click.echo,
        verbose: bool = False,
    ):
        self.storage = storage
        self.config = config or {}
        self.echo = echo
        self.verbose = verbose
        self.preflight = Preflight(collaborators, gate, self.config, verbose=verbose)
        self.orchestrator = JobOrchestrator(collaborators, gate, storage, self.config, echo=echo, verbose=verbose)

    def start(
        self, mode: BackupMode, device: Optional[str] = None, passphrase: Optional[str] = None
    ) -> Tuple[Job, RunReport]:
        """Run preflight, create a new job directory and run it."""
        if mode == BackupMode.DISK_IMAGE and not (device and is_block_device(device)):
            raise ConfigurationError(
                f"Not a block device: {device}" if device else "Disk-image backup needs a source device",
                suggestions=["Pass --device /dev/sdX", "Run 'lsblk' to list block devices"],
            )
        self.preflight.run(mode, JobKind.BACKUP, self.storage)
        job = self.storage.create_job(mode, device=device)
        self.echo(f"Started {job.name} ({mode.value})")
        return job, self._run(job, passphrase)

    def resume(
        self, job_path: Optional[Union[str, Path]] = None, passphrase: Optional[str] = None
    ) -> Tuple[Job, RunReport]:
        """Continue an existing job; the latest one when no path is given."""
        job = self.open(job_path)
        self.preflight.run(job.mode, JobKind.BACKUP, self.storage)
        self.echo(f"Resuming {job.name} ({job.mode.value})")
        return job, self._run(job, passphrase)

    def open(self, job_path: Optional[Union[str, Path]] = None) -> Job:
        path = Path(job_path) if job_path else self.storage.find_latest_job()
        if path is None or not path.is_dir():
            raise ConfigurationError(
                f"No job directory to resume in {self.storage.root}",
                suggestions=["Start a new backup without --resume"],
            )
        return self.storage.open_job(path)

    def plan(self, job: Job) -> List[Tuple[Step, str]]:
        return self.orchestrator.plan(job, build_backup_registry(job, self.config))

    def _run(self, job: Job, passphrase: Optional[str]) -> RunReport:
        registry = build_backup_registry(job, self.config)
        return self.orchestrator.run(job, registry, passphrase=passphrase)
