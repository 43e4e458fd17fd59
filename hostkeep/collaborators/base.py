"""Capability interfaces invoked by the job orchestrator."""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, List, Optional, Sequence, Union

from hostkeep.utils.errors import CollaboratorError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def run_tool(
    command: Sequence[str],
    stdout: Optional[IO] = None,
    cwd: Optional[PathLike] = None,
    env: Optional[dict] = None,
    capture: bool = False,
) -> subprocess.CompletedProcess:
    """
    Run an external tool and raise CollaboratorError on a non-zero exit.

    Args:
        command: Command and arguments
        stdout: Optional file object receiving standard output
        cwd: Working directory
        env: Environment for the child process
        capture: Capture standard output as text

    Returns:
        subprocess.CompletedProcess: Finished process
    """
    command = [str(part) for part in command]
    logger.debug("Running: %s", " ".join(command))

    try:
        if capture:
            result = subprocess.run(command, capture_output=True, text=True, cwd=cwd, env=env)
        else:
            result = subprocess.run(command, stdout=stdout, stderr=subprocess.PIPE, text=True, cwd=cwd, env=env)
    except FileNotFoundError as e:
        raise CollaboratorError(f"Command not found: {command[0]}", command=command) from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise CollaboratorError(
            f"{command[0]} exited with status {result.returncode}",
            command=command,
            details=stderr[-2000:] or None,
        )

    return result


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def with_sudo(command: List[str], use_sudo: bool) -> List[str]:
    """Prefix a command with sudo when requested and available."""
    if use_sudo and tool_available("sudo"):
        return ["sudo"] + command
    return command


@dataclass(frozen=True)
class PackageSpec:
    """One installed package and the manager that owns it."""

    manager: str  # dnf, flatpak, pip
    name: str


class FileSync(ABC):
    """Copies a file tree (rsync semantics)."""

    @abstractmethod
    def sync_tree(
        self, source: PathLike, dest: PathLike, destructive: bool = False, exclude: Sequence[str] = ()
    ) -> None:
        """Copy source into dest; destructive mirrors deletions. Excluded patterns are never touched."""


class Archiver(ABC):
    """Packs a directory into a compressed archive and back."""

    @abstractmethod
    def archive(self, src_dir: PathLike, dest_file: PathLike) -> None:
        pass

    @abstractmethod
    def extract(self, archive_file: PathLike, dest_dir: PathLike) -> None:
        pass

    @abstractmethod
    def member_digests(self, archive_file: PathLike) -> Dict[str, str]:
        """Map every regular file member (relative posix path) to its sha256."""


class Cipher(ABC):
    """Symmetric, passphrase-based file encryption."""

    @abstractmethod
    def encrypt(self, plain_file: PathLike, cipher_file: PathLike, passphrase: str) -> None:
        pass

    @abstractmethod
    def decrypt(self, cipher_file: PathLike, plain_file: PathLike, passphrase: str) -> None:
        pass


class SnapshotStore(ABC):
    """Deduplicating snapshot repository."""

    @abstractmethod
    def create(self, repo: PathLike, sources: Sequence[PathLike]) -> str:
        """Create a snapshot and return its archive id."""

    @abstractmethod
    def restore(self, repo: PathLike, archive_id: str, dest: PathLike) -> None:
        pass

    @abstractmethod
    def check(self, repo: PathLike) -> bool:
        """Run the repository consistency check."""

    @abstractmethod
    def latest(self, repo: PathLike) -> Optional[str]:
        """Return the most recent archive id, if any."""


class BlockImager(ABC):
    """Raw block-device copies."""

    @abstractmethod
    def image_device(self, device: str, dest_file: PathLike, resumable: bool = True) -> None:
        pass

    @abstractmethod
    def write_device(self, src_file: PathLike, device: str) -> None:
        pass


class PackageManager(ABC):
    """Installed-package queries and installs."""

    @abstractmethod
    def query_installed(self, managers: Optional[Sequence[str]] = None) -> List[PackageSpec]:
        """List installed packages, optionally limited to some managers."""

    @abstractmethod
    def install(self, specs: Sequence[PackageSpec]) -> None:
        pass


class DatabaseDumper(ABC):
    """Logical dumps of local database servers."""

    @abstractmethod
    def available(self) -> List[str]:
        """Names of the database engines that can be dumped on this host."""

    @abstractmethod
    def dump(self, engine: str, dest_file: PathLike) -> None:
        pass


class ContainerImages(ABC):
    """Container image export/import."""

    @abstractmethod
    def available(self) -> bool:
        pass

    @abstractmethod
    def export(self, dest_dir: PathLike) -> None:
        pass

    @abstractmethod
    def restore(self, src_dir: PathLike) -> None:
        pass
