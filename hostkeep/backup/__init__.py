"""Backup and restore job orchestration for hostkeep."""

from .confirmation import AutoApproveGate, ConfirmationGate, ConfirmationPolicy, Decision, PromptGate, ScriptedGate
from .job import BackupMode, Job, JobKind, JobPhase
from .journal import ResumeState, StateJournal
from .manager import BackupManager, JobOrchestrator
from .recovery import RecoveryManager
from .report import Outcome, RunReport
from .steps import Step, StepRegistry, build_backup_registry, build_restore_registry
from .storage import BackupStorage
from .verifier import VerificationResult, Verifier

__all__ = [
    "AutoApproveGate",
    "BackupManager",
    "BackupMode",
    "BackupStorage",
    "ConfirmationGate",
    "ConfirmationPolicy",
    "Decision",
    "Job",
    "JobKind",
    "JobOrchestrator",
    "JobPhase",
    "Outcome",
    "PromptGate",
    "RecoveryManager",
    "ResumeState",
    "RunReport",
    "ScriptedGate",
    "StateJournal",
    "Step",
    "StepRegistry",
    "VerificationResult",
    "Verifier",
    "build_backup_registry",
    "build_restore_registry",
]
