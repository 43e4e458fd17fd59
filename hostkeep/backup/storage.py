"""Job directory storage: creation, lookup, locking and cleanup."""

import errno
import fcntl
import json
import logging
import os
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

import click

from hostkeep.utils.errors import ConfigurationError, create_error_suggestions
from hostkeep.utils.files import atomic_write_text

from .detector import ModeDetector
from .job import BackupMode, Job, JobKind, job_name_for, parse_job_name

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = (".tar.gz", ".tar.gz.enc", ".passphrase")


class BackupStorage:
    """Manages job directories under the backup root."""

    def __init__(self, root: Union[str, Path] = ".", verbose: bool = False):
        """
        Initialize backup storage.

        Args:
            root: Directory that holds ``backup_*`` job directories
            verbose: Enable verbose output
        """
        self.root = Path(root).expanduser()
        self.verbose = verbose
        self._held: Dict[Path, List] = {}

    def create_job(self, mode: BackupMode, device: Optional[str] = None, now: Optional[datetime] = None) -> Job:
        """Create a new job directory named after the current time."""
        moment = now or datetime.now()
        path = self.root / job_name_for(moment)
        if path.exists():
            raise ConfigurationError(
                f"Job directory already exists: {path}",
                suggestions=["Resume it with --resume, or wait a second and retry"],
            )

        path.mkdir(parents=True)
        job = Job(path=path, mode=mode, created_at=moment.replace(microsecond=0), device=device)
        self.save_job(job)

        if self.verbose:
            click.echo(f"Created job directory {path}")
        return job

    def open_job(self, path: Union[str, Path], kind: JobKind = JobKind.BACKUP) -> Job:
        """
        Open an existing job.

        Reads job.json when present, otherwise infers the mode from the
        directory layout and the creation time from the job name.
        """
        path = Path(path)
        if not path.is_dir():
            raise ConfigurationError(f"Job directory not found: {path}")

        metadata_file = path / "job.json"
        if metadata_file.exists():
            try:
                with open(metadata_file, encoding="utf-8") as f:
                    data = json.load(f)
                if "mode" not in data:
                    data["mode"] = ModeDetector(str(path)).detect_mode().value
                return Job.from_dict(path, data, kind=kind)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable %s: %s", metadata_file, e)

        return Job(
            path=path,
            mode=ModeDetector(str(path)).detect_mode(),
            kind=kind,
            created_at=parse_job_name(path.name) or datetime.now(),
        )

    def save_job(self, job: Job) -> None:
        """Write job.json, keeping keys owned by the other run direction."""
        data = {}
        if job.metadata_file.exists():
            try:
                with open(job.metadata_file, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError):
                data = {}

        data.update(job.to_dict())
        atomic_write_text(job.metadata_file, json.dumps(data, indent=2, sort_keys=True) + "\n")

    def list_jobs(self) -> List[Path]:
        """Job names found under the root, as directories or artifacts, oldest first."""
        if not self.root.is_dir():
            return []

        names = set()
        for entry in self.root.iterdir():
            name = entry.name
            for suffix in ARTIFACT_SUFFIXES:
                if name.endswith(suffix):
                    name = name[: -len(suffix)]
                    break
            else:
                if not entry.is_dir():
                    continue
            if parse_job_name(name) is not None:
                names.add(name)

        return [self.root / name for name in sorted(names, key=lambda n: parse_job_name(n))]

    def find_latest_job(self) -> Optional[Path]:
        jobs = self.list_jobs()
        return jobs[-1] if jobs else None

    def artifacts(self, job: Job) -> List[Path]:
        return [path for path in (job.archive_path, job.encrypted_path, job.passphrase_file) if path.exists()]

    @contextmanager
    def lock(self, job: Job) -> Iterator[None]:
        """
        Hold the exclusive lock on a job directory.

        Re-entrant within one storage instance; a second process gets a
        ConfigurationError instead of waiting.
        """
        key = job.path.resolve()
        if key in self._held:
            self._held[key][1] += 1
            try:
                yield
            finally:
                self._held[key][1] -= 1
            return

        job.path.mkdir(parents=True, exist_ok=True)
        handle = open(job.lock_file, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            handle.close()
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise ConfigurationError(
                    f"Job {job.name} is locked by another hostkeep process",
                    suggestions=create_error_suggestions("job_locked", path=str(job.path)),
                ) from e
            raise

        self._held[key] = [handle, 1]
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            yield
        finally:
            del self._held[key]
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    def check_disk_space(self, required_gb: float, path: Optional[Path] = None) -> float:
        """Raise ConfigurationError unless ``required_gb`` is free; returns free GB."""
        target = Path(path or self.root)
        while not target.exists() and target != target.parent:
            target = target.parent

        free_gb = shutil.disk_usage(str(target)).free / (1024**3)
        if free_gb < required_gb:
            raise ConfigurationError(
                f"Insufficient disk space: {free_gb:.1f} GB free, {required_gb:g} GB required",
                suggestions=create_error_suggestions("insufficient_space", path=str(target)),
            )
        return free_gb

    def record_error(self, job: Job, step_id: str, error: Exception) -> Path:
        """Append a failure to the job's error log."""
        job.path.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().isoformat(timespec="seconds")
        lines = [f"[{timestamp}] {job.kind.value} step '{step_id}' failed: {error}\n"]

        details = getattr(error, "details", None)
        if details:
            lines.extend(f"    {line}\n" for line in str(details).splitlines())

        with open(job.error_log, "a", encoding="utf-8") as f:
            f.writelines(lines)
            f.flush()
            os.fsync(f.fileno())
        return job.error_log

    def cleanup(self, job: Job) -> List[Path]:
        """Delete a job directory and its artifacts. Only called on explicit request."""
        removed = []
        for path in self.artifacts(job):
            path.unlink()
            removed.append(path)

        if job.path.exists():
            with self.lock(job):
                shutil.rmtree(job.path)
            removed.append(job.path)

        logger.info("Removed %s", ", ".join(str(path) for path in removed))
        return removed
