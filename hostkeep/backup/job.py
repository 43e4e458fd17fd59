"""Job model: one backup or restore run over a job directory."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

JOB_PREFIX = "backup_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupMode(Enum):
    """Backup strategies."""

    SELECTIVE = "selective"
    DISK_IMAGE = "disk-image"
    SNAPSHOT = "snapshot-store"


class JobKind(Enum):
    """Direction of a run over a job directory."""

    BACKUP = "backup"
    RESTORE = "restore"


class JobPhase(Enum):
    """Lifecycle phases recorded in job.json."""

    CREATED = "created"
    RUNNING = "running"
    CAPTURED = "captured"
    ARCHIVED = "archived"
    ENCRYPTED = "encrypted"
    VERIFIED = "verified"
    RESTORED = "restored"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


def job_name_for(moment: datetime) -> str:
    return f"{JOB_PREFIX}{moment.strftime(TIMESTAMP_FORMAT)}"


def parse_job_name(name: str) -> Optional[datetime]:
    """Return the timestamp encoded in a job name, or None for other names."""
    if not name.startswith(JOB_PREFIX):
        return None
    try:
        return datetime.strptime(name[len(JOB_PREFIX):len(JOB_PREFIX) + 15], TIMESTAMP_FORMAT)
    except ValueError:
        return None


@dataclass
class Job:
    """A job directory and what is known about it."""

    path: Path
    mode: BackupMode
    kind: JobKind = JobKind.BACKUP
    created_at: datetime = field(default_factory=datetime.now)
    phase: JobPhase = JobPhase.CREATED
    device: Optional[str] = None
    target: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.path = Path(self.path)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_restore(self) -> bool:
        return self.kind == JobKind.RESTORE

    @property
    def state_log(self) -> Path:
        return self.path / ("restore_state.log" if self.is_restore else "state.log")

    @property
    def backup_state_log(self) -> Path:
        return self.path / "state.log"

    @property
    def report_file(self) -> Path:
        return self.path / ("restore_report.txt" if self.is_restore else "report.txt")

    @property
    def error_log(self) -> Path:
        return self.path / "error.log"

    @property
    def metadata_file(self) -> Path:
        return self.path / "job.json"

    @property
    def lock_file(self) -> Path:
        return self.path / ".lock"

    @property
    def archive_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tar.gz")

    @property
    def encrypted_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tar.gz.enc")

    @property
    def passphrase_file(self) -> Path:
        return self.path.with_name(self.path.name + ".passphrase")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for job.json; restore runs only own their phase and target keys."""
        if self.is_restore:
            return {"restore_phase": self.phase.value, "restore_target": self.target}

        return {
            "name": self.name,
            "mode": self.mode.value,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "device": self.device,
            "metadata": self.metadata,
            "phase": self.phase.value,
        }

    @classmethod
    def from_dict(cls, path: Path, data: Dict[str, Any], kind: JobKind = JobKind.BACKUP) -> "Job":
        phase_key = "restore_phase" if kind == JobKind.RESTORE else "phase"
        created = data.get("created_at")
        return cls(
            path=Path(path),
            mode=BackupMode(data.get("mode", BackupMode.SELECTIVE.value)),
            kind=kind,
            created_at=datetime.fromisoformat(created) if created else parse_job_name(Path(path).name) or datetime.now(),
            phase=JobPhase(data.get(phase_key, JobPhase.CREATED.value)),
            device=data.get("device"),
            target=data.get("restore_target") if kind == JobKind.RESTORE else None,
            metadata=dict(data.get("metadata") or {}),
        )
