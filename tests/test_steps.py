"""Tests for step definitions and the step catalogs."""

import gzip
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import FakeImager, make_collaborators
from hostkeep.backup import Job, JobKind, BackupMode, Step, StepRegistry, build_backup_registry, build_restore_registry
from hostkeep.backup.steps import (
    IMAGE_FILE,
    IMAGE_FOLDER,
    StepContext,
    build_finalize_registry,
    materialize_image,
)
from hostkeep.collaborators import PackageSpec
from hostkeep.utils.errors import ConfigurationError

SELECTIVE_IDS = [
    "etc",
    "var",
    "opt",
    "config",
    "home",
    "mozilla",
    "chrome",
    "edge",
    "gnome_extensions",
    "packages",
    "pip",
    "databases",
    "logs",
    "docker",
]


def noop(ctx):
    return None


class TestStepRegistry:
    """Test the step catalog container."""

    def test_keeps_insertion_order(self):
        """Test that steps iterate in the order they were added."""
        registry = StepRegistry([Step("b", "b", noop), Step("a", "a", noop)])

        assert registry.ids() == ["b", "a"]
        assert len(registry) == 2
        assert "a" in registry
        assert registry.get("missing") is None

    def test_rejects_duplicates(self):
        """Test that identifiers must be unique."""
        registry = StepRegistry([Step("etc", "etc", noop)])

        with pytest.raises(ConfigurationError):
            registry.add(Step("etc", "again", noop))

    def test_rejects_whitespace(self):
        """Test that identifiers cannot contain whitespace."""
        with pytest.raises(ConfigurationError):
            StepRegistry([Step("my step", "x", noop)])

    def test_question(self):
        """Test the prompt text derived from the description."""
        assert Step("etc", "back up /etc", noop).question == "Do you want to back up /etc?"


class TestBackupRegistry:
    """Test the capture step catalogs."""

    def setup_method(self):
        """Setup test environment."""
        self.messages = []

    def context(self, job, config=None, **overrides):
        return StepContext(job, make_collaborators(**overrides), config or {}, echo=self.messages.append)

    def test_selective_catalog_order(self, backup_root):
        """Test the built-in selective steps."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)

        registry = build_backup_registry(job, {})

        assert registry.ids() == SELECTIVE_IDS
        assert all(not step.destructive for step in registry)

    def test_extra_steps_are_appended(self, backup_root):
        """Test configured directory steps."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        config = {"extra_steps": [{"id": "projects", "description": "projects", "sources": ["/srv/projects"]}]}

        registry = build_backup_registry(job, config)

        assert registry.ids()[-1] == "projects"
        assert registry.get("projects").sources == ("/srv/projects",)

    def test_tree_capture_copies_into_step_folder(self, backup_root, temp_directory):
        """Test that a tree step copies its source below the job."""
        source = Path(temp_directory) / "projects"
        (source / "app").mkdir(parents=True)
        (source / "app" / "main.py").write_text("print()\n", encoding="utf-8")
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        job.path.mkdir()
        step = build_backup_registry(job, {"extra_steps": [{"id": "projects", "sources": [str(source)]}]}).get(
            "projects"
        )
        ctx = self.context(job)

        assert step.applicable(ctx)
        step.apply(ctx)

        assert (job.path / "projects" / "projects" / "app" / "main.py").exists()
        assert step.checksum and step.destination == "projects"

    def test_tree_not_applicable_without_source(self, backup_root):
        """Test that missing sources make a step inapplicable."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        step = build_backup_registry(job, {"extra_steps": [{"id": "gone", "sources": ["/nonexistent/hostkeep"]}]}).get(
            "gone"
        )

        assert not step.applicable(self.context(job))

    def test_home_capture_excludes_job_directories(self, backup_root, temp_directory):
        """Test that a job inside the home directory is not copied into itself."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        job.path.mkdir()
        file_sync = MagicMock()
        ctx = self.context(job, file_sync=file_sync)

        build_backup_registry(job, {}).get("home").apply(ctx)

        source, dest = file_sync.sync_tree.call_args[0]
        home_name = Path(temp_directory).name
        assert Path(source) == Path(temp_directory)
        assert dest == job.path / "home"
        assert file_sync.sync_tree.call_args[1]["exclude"] == [f"/{home_name}/backups/backup_*"]

    def test_package_lists(self, backup_root):
        """Test that system and pip packages land in separate folders."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        job.path.mkdir()
        registry = build_backup_registry(job, {})
        ctx = self.context(job)

        registry.get("packages").apply(ctx)
        registry.get("pip").apply(ctx)

        packages = {path.name: path.read_text(encoding="utf-8") for path in (job.path / "packages").iterdir()}
        assert "vim-enhanced\n" in packages.values()
        assert "requests\n" not in packages.values()
        assert any("requests" in path.read_text(encoding="utf-8") for path in (job.path / "pip").iterdir())

    def test_database_step_needs_a_server(self, backup_root):
        """Test that databases are only offered when an engine is present."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        step = build_backup_registry(job, {}).get("databases")

        assert not step.applicable(self.context(job))

    def test_disk_image_requires_device(self, backup_root):
        """Test that disk-image mode needs a source device."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.DISK_IMAGE)

        with pytest.raises(ConfigurationError):
            build_backup_registry(job, {})

    def test_disk_image_step(self, backup_root):
        """Test the single disk-image capture step."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.DISK_IMAGE, device="/dev/sdz")
        job.path.mkdir()
        registry = build_backup_registry(job, {})

        assert registry.ids() == ["disk_image"]
        registry.get("disk_image").apply(self.context(job))
        assert (job.path / IMAGE_FOLDER / IMAGE_FILE).exists()

    def test_snapshot_step_records_archive(self, backup_root):
        """Test that the snapshot step returns its archive id as metadata."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SNAPSHOT)
        job.path.mkdir()
        registry = build_backup_registry(job, {"snapshot": {"sources": ["/etc"]}})

        metadata = registry.get("snapshot").apply(self.context(job))

        assert registry.ids() == ["snapshot"]
        assert metadata == {"snapshot_archive": "host-1"}


class TestRestoreRegistry:
    """Test the restore step catalogs."""

    def test_selective_restore_steps_are_destructive(self, backup_root):
        """Test that restoring files is always treated as destructive."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE, kind=JobKind.RESTORE)

        registry = build_restore_registry(job, {})

        assert "logs" not in registry
        assert "databases" not in registry
        assert all(registry.get(step_id).destructive for step_id in ("etc", "home", "packages", "pip"))

    def test_tree_restore_copies_back(self, backup_root, temp_directory):
        """Test that a tree step writes the backed-up copy over the live path."""
        live = Path(temp_directory) / "projects"
        live.mkdir()
        (live / "notes.txt").write_text("changed\n", encoding="utf-8")
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE, kind=JobKind.RESTORE)
        copy = job.path / "projects" / "projects"
        copy.mkdir(parents=True)
        (copy / "notes.txt").write_text("original\n", encoding="utf-8")
        config = {"extra_steps": [{"id": "projects", "sources": [str(live)]}]}
        step = build_restore_registry(job, config).get("projects")
        ctx = StepContext(job, make_collaborators(), config, echo=lambda message: None)

        assert step.applicable(ctx)
        step.apply(ctx)

        assert (live / "notes.txt").read_text(encoding="utf-8") == "original\n"

    def test_package_restore_installs_recorded_packages(self, backup_root):
        """Test that recorded packages are reinstalled."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE, kind=JobKind.RESTORE)
        (job.path / "packages").mkdir(parents=True)
        collaborators = make_collaborators()
        ctx = StepContext(job, collaborators, {}, echo=lambda message: None)
        build_backup_registry(job, {}).get("packages").apply(ctx)

        build_restore_registry(job, {}).get("packages").apply(ctx)

        assert collaborators.packages.install_calls == [[PackageSpec("dnf", "vim-enhanced")]]

    def test_disk_image_restore_needs_target(self, backup_root):
        """Test that a disk-image restore needs a target device."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.DISK_IMAGE, kind=JobKind.RESTORE)

        with pytest.raises(ConfigurationError):
            build_restore_registry(job, {})

    def test_disk_image_restore_writes_target(self, backup_root):
        """Test the destructive disk-image step and its target."""
        job = Job(
            backup_root / "backup_20240101_000000", BackupMode.DISK_IMAGE, kind=JobKind.RESTORE, target="/dev/sdz"
        )
        (job.path / IMAGE_FOLDER).mkdir(parents=True)
        (job.path / IMAGE_FOLDER / IMAGE_FILE).write_bytes(b"raw image")
        imager = FakeImager()
        ctx = StepContext(job, make_collaborators(imager=imager), {}, echo=lambda message: None)

        step = build_restore_registry(job, {}).get("disk_image")
        assert step.destructive and step.target == "/dev/sdz"
        step.apply(ctx)

        assert imager.written == [(b"raw image", "/dev/sdz")]

    def test_snapshot_restore_uses_recorded_archive(self, backup_root, temp_directory):
        """Test that the archive id from job.json is restored."""
        target = Path(temp_directory) / "restored"
        job = Job(
            backup_root / "backup_20240101_000000",
            BackupMode.SNAPSHOT,
            kind=JobKind.RESTORE,
            target=str(target),
            metadata={"snapshot_archive": "host-7"},
        )
        (job.path / "borg_repo").mkdir(parents=True)
        collaborators = make_collaborators()
        ctx = StepContext(job, collaborators, {}, echo=lambda message: None)

        build_restore_registry(job, {}).get("snapshot").apply(ctx)

        assert collaborators.snapshot_store.restored == [(str(job.path / "borg_repo"), "host-7", str(target))]
        assert target.is_dir()


class TestMaterializeImage:
    """Test assembling a stored disk image."""

    def test_plain_image_is_used_in_place(self, temp_directory):
        """Test that an uncompressed image needs no copy."""
        folder = Path(temp_directory)
        (folder / IMAGE_FILE).write_bytes(b"abc")

        assert materialize_image(folder, folder / "out.img") == folder / IMAGE_FILE

    def test_split_compressed_image(self, temp_directory):
        """Test joining and decompressing gzip parts."""
        folder = Path(temp_directory)
        payload = b"block" * 1000
        compressed = gzip.compress(payload)
        middle = len(compressed) // 2
        (folder / "disk-image.gz.part-aa").write_bytes(compressed[:middle])
        (folder / "disk-image.gz.part-ab").write_bytes(compressed[middle:])

        result = materialize_image(folder, folder / "out.img")

        assert result.read_bytes() == payload
        assert not (folder / "out.img.joined").exists()


class TestFinalizeRegistry:
    """Test the compress and encrypt pseudo-steps."""

    def test_snapshot_jobs_are_not_archived(self, backup_root):
        """Test that snapshot-store jobs have no finalizing steps."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SNAPSHOT)

        assert len(build_finalize_registry(job, {})) == 0

    def test_offers_follow_configuration(self, backup_root):
        """Test that offers can be switched off."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)

        assert build_finalize_registry(job, {}).ids() == ["compress", "encrypt"]
        assert build_finalize_registry(job, {"offer_encrypt": False}).ids() == ["compress"]

    def test_encrypt_generates_passphrase(self, backup_root):
        """Test that a passphrase is generated and shown when none was given."""
        job = Job(backup_root / "backup_20240101_000000", BackupMode.SELECTIVE)
        job.path.mkdir()
        (job.path / "data.txt").write_text("x", encoding="utf-8")
        messages = []
        ctx = StepContext(job, make_collaborators(), {"save_passphrase": False}, echo=messages.append)
        registry = build_finalize_registry(job, {})

        registry.get("compress").apply(ctx)
        registry.get("encrypt").apply(ctx)

        passphrase = ctx.state["passphrase"]
        assert any(passphrase in message for message in messages)
        assert job.encrypted_path.exists()
        assert not job.archive_path.exists()
        assert not job.passphrase_file.exists()
