"""Borg-backed snapshot repository."""

import logging
import os
import socket
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence

from hostkeep.utils.errors import CollaboratorError

from .base import PathLike, SnapshotStore, run_tool

logger = logging.getLogger(__name__)


class BorgSnapshotStore(SnapshotStore):
    """Runs the borg CLI; borg handles compression, encryption and dedup."""

    def __init__(self, encryption: str = "none", passphrase: Optional[str] = None, compression: str = "zstd"):
        """
        Initialize the borg wrapper.

        Args:
            encryption: Encryption mode for new repositories (borg init -e)
            passphrase: Repository passphrase, exported as BORG_PASSPHRASE
            compression: Compression spec for borg create
        """
        self.encryption = encryption
        self.passphrase = passphrase
        self.compression = compression

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.passphrase:
            env["BORG_PASSPHRASE"] = self.passphrase
        # Repositories live inside job directories that may be moved
        env.setdefault("BORG_RELOCATED_REPO_ACCESS_IS_OK", "yes")
        return env

    def _ensure_repo(self, repo: Path) -> None:
        if (repo / "config").exists():
            return
        repo.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing borg repository %s", repo)
        run_tool(["borg", "init", "--encryption", self.encryption, str(repo)], env=self._env())

    def create(self, repo: PathLike, sources: Sequence[PathLike]) -> str:
        """Create a snapshot of sources and return its archive name."""
        repo = Path(repo)
        existing = [str(Path(source).expanduser()) for source in sources if Path(source).expanduser().exists()]
        if not existing:
            raise CollaboratorError("None of the snapshot sources exist", details=", ".join(map(str, sources)))

        self._ensure_repo(repo)
        archive_id = f"{socket.gethostname()}-{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        run_tool(
            ["borg", "create", "--compression", self.compression, f"{repo}::{archive_id}"] + existing,
            env=self._env(),
        )
        return archive_id

    def restore(self, repo: PathLike, archive_id: str, dest: PathLike) -> None:
        """Extract an archive into dest (borg extracts relative to its cwd)."""
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        run_tool(["borg", "extract", f"{Path(repo).resolve()}::{archive_id}"], cwd=dest, env=self._env())

    def check(self, repo: PathLike) -> bool:
        try:
            run_tool(["borg", "check", str(repo)], env=self._env())
        except CollaboratorError as e:
            logger.warning("borg check failed for %s: %s", repo, e.details or e.message)
            return False
        return True

    def latest(self, repo: PathLike) -> Optional[str]:
        result = run_tool(["borg", "list", "--short", str(repo)], env=self._env(), capture=True)
        archives = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return archives[-1] if archives else None
