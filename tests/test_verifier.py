"""Tests for post-run verification."""

import os
from pathlib import Path

from conftest import FakeSnapshotStore, make_collaborators
from hostkeep.backup import BackupMode, Job, JobKind, StateJournal, Verifier
from hostkeep.backup.verifier import (
    CHECKSUM_MISMATCH,
    FILE_COUNT_MISMATCH,
    SNAPSHOT_CHECK_FAILED,
    compare_digests,
)
from hostkeep.utils.files import UNREADABLE, ChecksumManifest


class TestCompareDigests:
    """Test digest comparison."""

    def test_count_is_compared_first(self):
        """Test that a count difference wins over content differences."""
        expected = {f"etc/{i}": "a" for i in range(10)}
        actual = {f"etc/{i}": "b" for i in range(9)}

        result = compare_digests(expected, actual)

        assert not result.ok
        assert result.reason == FILE_COUNT_MISMATCH
        assert result.details[0] == "expected 10 files, found 9"
        assert "missing: etc/9" in result.details

    def test_unreadable_files_only_count(self):
        """Test that unreadable files are counted but not compared."""
        result = compare_digests({"etc/shadow": UNREADABLE, "etc/hosts": "x"}, {"etc/shadow": "y", "etc/hosts": "x"})

        assert result.ok
        assert result.checked_files == 2


class TestVerifier:
    """Test verification of job directories and archives."""

    def setup_method(self):
        """Setup test environment."""
        self.collaborators = make_collaborators()
        self.verifier = Verifier(self.collaborators)

    def make_job(self, backup_root, files=10):
        job = Job(Path(backup_root) / "backup_20240101_000000", BackupMode.SELECTIVE)
        folder = job.path / "etc"
        folder.mkdir(parents=True)
        for i in range(files):
            (folder / f"file{i}.conf").write_text(f"setting={i}\n", encoding="utf-8")
        ChecksumManifest(job.path).record("etc", "etc")
        StateJournal(job.state_log).append("etc")
        return job

    def test_matching_directory(self, backup_root):
        """Test a job directory that matches its manifests."""
        job = self.make_job(backup_root)

        result = self.verifier.verify(job)

        assert result.ok
        assert result.checked_files == 10

    def test_file_count_mismatch(self, backup_root):
        """Test ten recorded files with nine present."""
        job = self.make_job(backup_root)
        (job.path / "etc" / "file3.conf").unlink()

        result = self.verifier.verify(job)

        assert not result.ok
        assert result.reason == "file count mismatch"
        assert "missing: etc/file3.conf" in result.details

    def test_checksum_mismatch(self, backup_root):
        """Test a file whose content changed after it was recorded."""
        job = self.make_job(backup_root)
        (job.path / "etc" / "file5.conf").write_text("tampered\n", encoding="utf-8")

        result = self.verifier.verify(job)

        assert not result.ok
        assert result.reason == CHECKSUM_MISMATCH
        assert result.details == ["changed: etc/file5.conf"]

    def test_unjournaled_manifests_are_ignored(self, backup_root):
        """Test that manifests of uncommitted steps are not checked."""
        job = self.make_job(backup_root)
        (job.path / "home").mkdir()
        (job.path / "home" / "partial").write_text("x", encoding="utf-8")
        ChecksumManifest(job.path).record("home", "home")
        (job.path / "home" / "partial").unlink()

        assert self.verifier.verify(job).ok

    def test_archive_is_preferred(self, backup_root):
        """Test that the archive is checked instead of the directory."""
        job = self.make_job(backup_root)
        (job.path / "etc" / "file0.conf").unlink()
        self.collaborators.archiver.archive(job.path, job.archive_path)
        # Directory damage after archiving does not matter
        (job.path / "etc" / "file1.conf").unlink()

        result = self.verifier.verify(job)

        assert result.reason == FILE_COUNT_MISMATCH
        assert result.details[0] == "expected 10 files, found 9"

    def test_archive_with_hardlinks(self, backup_root):
        """Test that hardlinked files count as archive members."""
        job = self.make_job(backup_root, files=0)
        (job.path / "etc" / "a").write_text("shared\n", encoding="utf-8")
        os.link(job.path / "etc" / "a", job.path / "etc" / "b")
        ChecksumManifest(job.path).record("etc", "etc")
        self.collaborators.archiver.archive(job.path, job.archive_path)

        result = self.verifier.verify(job)

        assert result.ok
        assert result.checked_files == 2

    def test_encrypted_archive(self, backup_root):
        """Test verification through a temporary decrypt."""
        job = self.make_job(backup_root)
        self.collaborators.archiver.archive(job.path, job.archive_path)
        self.collaborators.cipher.encrypt(job.archive_path, job.encrypted_path, "pass")
        job.archive_path.unlink()

        result = self.verifier.verify(job, passphrase="pass")

        assert result.ok
        assert result.checked_files == 10
        assert [path.name for path in Path(backup_root).iterdir() if "verify" in path.name] == []

    def test_encrypted_archive_without_passphrase(self, backup_root):
        """Test that the directory is checked when the archive cannot be opened."""
        job = self.make_job(backup_root)
        job.encrypted_path.write_bytes(b"Salted__12345678")

        result = self.verifier.verify(job)

        assert result.ok
        assert "encrypted archive not checked: no passphrase given" in result.details

    def test_restore_job_checks_extracted_directory(self, backup_root):
        """Test that a restore verifies the unpacked job directory."""
        job = self.make_job(backup_root)
        self.collaborators.archiver.archive(job.path, job.archive_path)
        restore_job = Job(job.path, BackupMode.SELECTIVE, kind=JobKind.RESTORE)
        (job.path / "etc" / "file2.conf").write_text("changed\n", encoding="utf-8")

        assert self.verifier.verify(restore_job).reason == CHECKSUM_MISMATCH

    def test_snapshot_check(self, backup_root):
        """Test that snapshot jobs delegate to the store."""
        job = Job(Path(backup_root) / "backup_20240101_000000", BackupMode.SNAPSHOT)

        assert self.verifier.verify(job).ok

        failing = Verifier(make_collaborators(snapshot_store=FakeSnapshotStore(healthy=False)))
        result = failing.verify(job)
        assert not result.ok
        assert result.reason == SNAPSHOT_CHECK_FAILED
