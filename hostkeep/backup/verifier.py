"""Post-run integrity checks."""

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from hostkeep.collaborators import Collaborators
from hostkeep.utils.files import UNREADABLE, ChecksumManifest

from .job import BackupMode, Job
from .journal import StateJournal
from .steps import SNAPSHOT_REPO

logger = logging.getLogger(__name__)

FILE_COUNT_MISMATCH = "file count mismatch"
CHECKSUM_MISMATCH = "checksum mismatch"
SNAPSHOT_CHECK_FAILED = "snapshot store consistency check failed"

# Mismatched paths listed in the result before truncating
MAX_DETAILS = 20


@dataclass
class VerificationResult:
    ok: bool
    reason: str
    checked_files: int = 0
    details: List[str] = field(default_factory=list)


def _within(path: str, folders: Iterable[str]) -> bool:
    return any(path == folder or path.startswith(folder.rstrip("/") + "/") for folder in folders)


def compare_digests(expected: Dict[str, str], actual: Dict[str, str]) -> VerificationResult:
    """
    Compare recorded checksums with what was found.

    File counts are compared first. Files recorded as unreadable count
    toward the total but their content is not compared.

    Args:
        expected: Path -> digest from the manifests
        actual: Path -> digest found in the archive or directory

    Returns:
        VerificationResult: ok, or the first kind of mismatch found
    """
    if len(expected) != len(actual):
        details = [f"expected {len(expected)} files, found {len(actual)}"]
        missing = sorted(set(expected) - set(actual))
        extra = sorted(set(actual) - set(expected))
        details += [f"missing: {path}" for path in missing[:MAX_DETAILS]]
        details += [f"unexpected: {path}" for path in extra[:MAX_DETAILS]]
        return VerificationResult(False, FILE_COUNT_MISMATCH, len(actual), details)

    mismatched = [
        path for path, digest in sorted(expected.items()) if digest != UNREADABLE and actual.get(path) != digest
    ]
    if mismatched:
        details = [f"changed: {path}" for path in mismatched[:MAX_DETAILS]]
        if len(mismatched) > MAX_DETAILS:
            details.append(f"... and {len(mismatched) - MAX_DETAILS} more")
        return VerificationResult(False, CHECKSUM_MISMATCH, len(actual), details)

    return VerificationResult(True, "file count and checksums match", len(actual))


class Verifier:
    """Checks a job's result against what its steps recorded."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    def verify(self, job: Job, passphrase: Optional[str] = None) -> VerificationResult:
        """
        Verify a job.

        Snapshot-store jobs delegate to the store's consistency check. Other
        jobs compare the manifests of journaled capture steps against the
        terminal archive when one exists (decrypting into a temporary file
        when a passphrase is available), or against the job directory.
        """
        if job.mode == BackupMode.SNAPSHOT:
            return self.verify_snapshot(job)

        manifest = ChecksumManifest(job.path)
        done = StateJournal(job.backup_state_log).load().done
        step_ids = [step_id for step_id in sorted(done) if manifest.manifest_path(step_id).exists()]
        expected = manifest.load_all(step_ids)
        folders = [manifest.folder(step_id) or step_id for step_id in step_ids]

        details: List[str] = []
        if not job.is_restore and job.archive_path.exists():
            logger.info("Verifying archive %s", job.archive_path)
            actual = self.collaborators.archiver.member_digests(job.archive_path)
        elif not job.is_restore and job.encrypted_path.exists() and passphrase:
            logger.info("Verifying encrypted archive %s", job.encrypted_path)
            actual = self._encrypted_digests(job, passphrase)
        else:
            if not job.is_restore and job.encrypted_path.exists():
                details.append("encrypted archive not checked: no passphrase given")
            logger.info("Verifying job directory %s", job.path)
            actual = {}
            for folder in folders:
                actual.update(manifest.build(folder))

        actual = {path: digest for path, digest in actual.items() if _within(path, folders)}
        result = compare_digests(expected, actual)
        result.details = details + result.details
        return result

    def verify_snapshot(self, job: Job) -> VerificationResult:
        repo = job.path / SNAPSHOT_REPO
        if self.collaborators.snapshot_store.check(repo):
            return VerificationResult(True, "snapshot store consistency check passed")
        return VerificationResult(False, SNAPSHOT_CHECK_FAILED, details=[f"Run 'borg check {repo}' and inspect the output"])

    def _encrypted_digests(self, job: Job, passphrase: str) -> Dict[str, str]:
        with tempfile.TemporaryDirectory(dir=str(job.path.parent), prefix=f".{job.name}-verify-") as tmp:
            plain = Path(tmp) / "archive.tar.gz"
            self.collaborators.cipher.decrypt(job.encrypted_path, plain, passphrase)
            return self.collaborators.archiver.member_digests(plain)
