"""Tests for the restore flow."""

import json
import shutil
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeImager, make_collaborators
from hostkeep.backup import (
    BackupMode,
    Decision,
    JobOrchestrator,
    RecoveryManager,
    ScriptedGate,
    StateJournal,
    StepRegistry,
    build_backup_registry,
)
from hostkeep.backup.steps import IMAGE_FILE, IMAGE_FOLDER
from hostkeep.utils.errors import ConfigurationError, OrchestrationError


def quiet(message):
    pass


class TestRecoveryManager:
    """Test unpacking and restoring jobs."""

    @pytest.fixture(autouse=True)
    def tools_present(self):
        with patch("hostkeep.backup.preflight.tool_available", return_value=True):
            yield

    @pytest.fixture
    def live_dir(self, temp_directory):
        live = Path(temp_directory) / "projects"
        live.mkdir()
        (live / "notes.txt").write_text("original\n", encoding="utf-8")
        return live

    @pytest.fixture
    def config(self, sample_settings, live_dir):
        settings = dict(sample_settings)
        settings.update(
            {
                "use_sudo": True,
                "offer_compress": True,
                "offer_encrypt": True,
                "extra_steps": [{"id": "projects", "sources": [str(live_dir)]}],
            }
        )
        return settings

    def encrypted_backup(self, storage, collaborators, config):
        job = storage.create_job(BackupMode.SELECTIVE, now=datetime(2024, 1, 1))
        registry = StepRegistry([build_backup_registry(job, config).get("projects")])
        orchestrator = JobOrchestrator(collaborators, ScriptedGate([Decision.YES_TO_ALL]), storage, config, echo=quiet)
        orchestrator.run(job, registry, passphrase="hunter2")
        return job

    def test_restore_from_encrypted_archive(self, storage, config, live_dir):
        """Test decrypt, extract and restore of an archived job."""
        collaborators = make_collaborators()
        job = self.encrypted_backup(storage, collaborators, config)
        shutil.rmtree(job.path)
        (live_dir / "notes.txt").write_text("damaged\n", encoding="utf-8")
        gate = ScriptedGate([Decision.YES, Decision.YES, Decision.YES])

        recovery = RecoveryManager(collaborators, gate, storage, config, echo=quiet)
        report = recovery.restore(str(job.path))

        assert (live_dir / "notes.txt").read_text(encoding="utf-8") == "original\n"
        assert [entry.step_id for entry in StateJournal(job.path / "restore_state.log").entries()] == [
            "decrypt",
            "extract",
            "projects",
        ]
        assert gate.prompts[2].endswith("This overwrites live data.")
        assert report.verification.ok
        assert (job.path / "restore_report.txt").exists()
        assert not job.archive_path.exists()
        assert job.encrypted_path.exists()

        metadata = json.loads((job.path / "job.json").read_text(encoding="utf-8"))
        assert metadata["mode"] == "selective"
        assert metadata["restore_phase"] == "restored"

    def test_restore_resumes_after_extract(self, storage, config, live_dir):
        """Test that an interrupted restore does not unpack twice."""
        collaborators = make_collaborators()
        job = self.encrypted_backup(storage, collaborators, config)
        shutil.rmtree(job.path)
        first = RecoveryManager(collaborators, ScriptedGate([Decision.YES, Decision.YES, Decision.NO]), storage, config, echo=quiet)
        first.restore(str(job.path))

        gate = ScriptedGate([Decision.YES])
        RecoveryManager(collaborators, gate, storage, config, echo=quiet).restore(str(job.path))

        assert len(gate.prompts) == 1
        assert "restore" in gate.prompts[0]

    def test_missing_passphrase_fails_decrypt(self, storage, config):
        """Test that an encrypted job without any passphrase cannot be unpacked."""
        collaborators = make_collaborators()
        job = self.encrypted_backup(storage, collaborators, config)
        shutil.rmtree(job.path)
        job.passphrase_file.unlink()

        recovery = RecoveryManager(collaborators, ScriptedGate([Decision.YES]), storage, config, echo=quiet)
        with pytest.raises(OrchestrationError) as exc_info:
            recovery.restore(str(job.path))

        assert exc_info.value.failed_steps == ["decrypt"]
        assert "no passphrase was given" in (job.path / "error.log").read_text(encoding="utf-8")

    def test_passphrase_provider(self, storage, config):
        """Test that the passphrase is asked for when it was not saved."""
        collaborators = make_collaborators()
        job = self.encrypted_backup(storage, collaborators, config)
        shutil.rmtree(job.path)
        job.passphrase_file.unlink()
        asked = []

        def provider():
            asked.append(True)
            return "hunter2"

        gate = ScriptedGate([Decision.YES, Decision.YES, Decision.NO])
        RecoveryManager(collaborators, gate, storage, config, passphrase_provider=provider, echo=quiet).restore(
            str(job.path)
        )

        assert asked == [True]
        assert (job.path / "projects").is_dir()

    def test_disk_image_restore_confirms_target(self, storage, sample_settings):
        """Test that the target device must be confirmed before writing."""
        job = storage.create_job(BackupMode.DISK_IMAGE, device="/dev/sdy", now=datetime(2024, 1, 1))
        (job.path / IMAGE_FOLDER).mkdir()
        (job.path / IMAGE_FOLDER / IMAGE_FILE).write_bytes(b"disk")
        imager = FakeImager()
        gate = ScriptedGate([Decision.YES], target_answers=[True])

        recovery = RecoveryManager(make_collaborators(imager=imager), gate, storage, sample_settings, echo=quiet)
        recovery.restore(str(job.path), target="/dev/sdz")

        assert imager.written == [(b"disk", "/dev/sdz")]
        assert len(gate.target_prompts) == 1
        assert json.loads(job.metadata_file.read_text(encoding="utf-8"))["restore_target"] == "/dev/sdz"

    def test_declined_target_writes_nothing(self, storage, sample_settings):
        """Test that a refused target confirmation skips the disk write."""
        job = storage.create_job(BackupMode.DISK_IMAGE, device="/dev/sdy", now=datetime(2024, 1, 1))
        (job.path / IMAGE_FOLDER).mkdir()
        (job.path / IMAGE_FOLDER / IMAGE_FILE).write_bytes(b"disk")
        imager = FakeImager()
        gate = ScriptedGate([Decision.YES], target_answers=[False])

        RecoveryManager(make_collaborators(imager=imager), gate, storage, sample_settings, echo=quiet).restore(
            str(job.path), target="/dev/sdz"
        )

        assert imager.written == []
        assert not (job.path / "restore_state.log").exists()

    def test_locate_latest(self, storage, sample_settings):
        """Test that the newest job is restored when none is named."""
        storage.create_job(BackupMode.SELECTIVE, now=datetime(2024, 1, 1))
        latest = storage.create_job(BackupMode.SELECTIVE, now=datetime(2024, 2, 1))

        recovery = RecoveryManager(make_collaborators(), ScriptedGate(), storage, sample_settings, echo=quiet)

        assert recovery.locate() == latest.path

    def test_locate_nothing(self, storage, sample_settings):
        """Test that restoring without any job is a configuration error."""
        recovery = RecoveryManager(make_collaborators(), ScriptedGate(), storage, sample_settings, echo=quiet)

        with pytest.raises(ConfigurationError):
            recovery.locate()

        with pytest.raises(ConfigurationError):
            recovery.locate(str(storage.root / "backup_20990101_000000"))
