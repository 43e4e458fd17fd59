"""Pytest configuration and shared fixtures."""

import shutil
import tempfile
from pathlib import Path

import pytest

from hostkeep.backup import BackupStorage, Step, StepRegistry
from hostkeep.collaborators import (
    BlockImager,
    Collaborators,
    ContainerImages,
    DatabaseDumper,
    FileSync,
    OpenSSLCipher,
    PackageManager,
    PackageSpec,
    SnapshotStore,
    TarArchiver,
)


class FakeFileSync(FileSync):
    """Copies trees in-process with rsync's directory semantics."""

    def __init__(self):
        self.calls = []

    def sync_tree(self, source, dest, destructive=False, exclude=()):
        self.calls.append((str(source), str(dest), destructive, tuple(exclude)))
        source = Path(source)
        dest = Path(dest)
        target = dest if destructive else dest / source.name
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)


class FakeSnapshotStore(SnapshotStore):
    def __init__(self, healthy=True):
        self.healthy = healthy
        self.created = []
        self.restored = []

    def create(self, repo, sources):
        Path(repo).mkdir(parents=True, exist_ok=True)
        archive_id = f"host-{len(self.created) + 1}"
        self.created.append((str(repo), [str(source) for source in sources]))
        return archive_id

    def restore(self, repo, archive_id, dest):
        self.restored.append((str(repo), archive_id, str(dest)))

    def check(self, repo):
        return self.healthy

    def latest(self, repo):
        return f"host-{len(self.created)}" if self.created else None


class FakeImager(BlockImager):
    def __init__(self, payload=b"\x00" * 4096):
        self.payload = payload
        self.written = []

    def image_device(self, device, dest_file, resumable=True):
        Path(dest_file).parent.mkdir(parents=True, exist_ok=True)
        Path(dest_file).write_bytes(self.payload)

    def write_device(self, src_file, device):
        self.written.append((Path(src_file).read_bytes(), device))


class FakePackages(PackageManager):
    def __init__(self, installed=None):
        self.installed = list(installed or [PackageSpec("dnf", "vim-enhanced"), PackageSpec("pip", "requests")])
        self.install_calls = []

    def query_installed(self, managers=None):
        return [spec for spec in self.installed if managers is None or spec.manager in managers]

    def install(self, specs):
        self.install_calls.append(list(specs))


class FakeDatabases(DatabaseDumper):
    def __init__(self, engines=()):
        self.engines = list(engines)

    def available(self):
        return self.engines

    def dump(self, engine, dest_file):
        Path(dest_file).write_text(f"-- {engine} dump\n", encoding="utf-8")


class FakeContainers(ContainerImages):
    def __init__(self, present=False):
        self.present = present

    def available(self):
        return self.present

    def export(self, dest_dir):
        Path(dest_dir).mkdir(parents=True, exist_ok=True)

    def restore(self, src_dir):
        pass


def make_collaborators(**overrides):
    """Collaborators backed by fakes, with a real archiver and a fast cipher."""
    parts = {
        "file_sync": FakeFileSync(),
        "archiver": TarArchiver(compresslevel=1),
        "cipher": OpenSSLCipher(iterations=1000),
        "snapshot_store": FakeSnapshotStore(),
        "imager": FakeImager(),
        "packages": FakePackages(),
        "databases": FakeDatabases(),
        "containers": FakeContainers(),
    }
    parts.update(overrides)
    return Collaborators(**parts)


def writing_step(step_id, files=None, calls=None, **kwargs):
    """A capture step that writes files into its own folder of the job."""
    files = files if files is not None else {"data.txt": f"{step_id}\n"}

    def apply(ctx):
        if calls is not None:
            calls.append(step_id)
        folder = ctx.job.path / step_id
        for name, content in files.items():
            path = folder / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    kwargs.setdefault("destination", step_id)
    kwargs.setdefault("checksum", True)
    return Step(step_id, f"back up {step_id}", apply, **kwargs)


def failing_step(step_id, error, calls=None, **kwargs):
    def apply(ctx):
        if calls is not None:
            calls.append(step_id)
        raise error

    return Step(step_id, f"back up {step_id}", apply, **kwargs)


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Cleanup
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def backup_root(temp_directory):
    """Directory that holds job directories."""
    root = Path(temp_directory) / "backups"
    root.mkdir()
    return root


@pytest.fixture
def storage(backup_root):
    return BackupStorage(backup_root)


@pytest.fixture
def collaborators():
    return make_collaborators()


@pytest.fixture
def sample_settings(backup_root):
    """Settings as returned by ConfigManager.get_settings."""
    return {
        "backup_root": str(backup_root),
        "min_free_space_gb": 0,
        "use_sudo": True,
        "yes_to_all_covers_destructive": False,
        "continue_on_error": False,
        "offer_compress": False,
        "offer_encrypt": False,
        "save_passphrase": True,
        "resumable_imaging": True,
        "snapshot": {"sources": ["/etc"], "encryption": "none"},
        "extra_steps": [],
    }


@pytest.fixture
def three_step_registry():
    calls = []
    registry = StepRegistry([writing_step(step_id, calls=calls) for step_id in ("alpha", "beta", "gamma")])
    return registry, calls


@pytest.fixture(autouse=True)
def isolate_filesystem(temp_directory, monkeypatch):
    """Isolate filesystem operations to temporary directory."""
    monkeypatch.chdir(temp_directory)
    monkeypatch.setenv("HOME", temp_directory)
    return temp_directory
