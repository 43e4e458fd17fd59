"""External capabilities used by backup and restore steps."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .archive import TarArchiver
from .base import (
    Archiver,
    BlockImager,
    Cipher,
    ContainerImages,
    DatabaseDumper,
    FileSync,
    PackageManager,
    PackageSpec,
    SnapshotStore,
)
from .cipher import OpenSSLCipher, generate_passphrase
from .containers import DockerImages
from .databases import LocalDatabaseDumper
from .imaging import DdImager
from .packages import SystemPackageManager
from .snapshot import BorgSnapshotStore
from .sync import RsyncFileSync


@dataclass
class Collaborators:
    """The set of capabilities one job run may call."""

    file_sync: FileSync
    archiver: Archiver
    cipher: Cipher
    snapshot_store: SnapshotStore
    imager: BlockImager
    packages: PackageManager
    databases: DatabaseDumper
    containers: ContainerImages

    @classmethod
    def from_config(cls, config: Dict[str, Any], snapshot_passphrase: Optional[str] = None) -> "Collaborators":
        """Build the real, tool-backed collaborators."""
        use_sudo = config.get("use_sudo", True)
        snapshot = config.get("snapshot", {})

        return cls(
            file_sync=RsyncFileSync(use_sudo=use_sudo),
            archiver=TarArchiver(use_sudo=use_sudo),
            cipher=OpenSSLCipher(),
            snapshot_store=BorgSnapshotStore(
                encryption=snapshot.get("encryption", "none"),
                passphrase=snapshot_passphrase,
            ),
            imager=DdImager(use_sudo=use_sudo),
            packages=SystemPackageManager(use_sudo=use_sudo),
            databases=LocalDatabaseDumper(use_sudo=use_sudo),
            containers=DockerImages(),
        )


__all__ = [
    "Archiver",
    "BlockImager",
    "BorgSnapshotStore",
    "Cipher",
    "Collaborators",
    "ContainerImages",
    "DatabaseDumper",
    "DdImager",
    "DockerImages",
    "FileSync",
    "LocalDatabaseDumper",
    "OpenSSLCipher",
    "PackageManager",
    "PackageSpec",
    "RsyncFileSync",
    "SnapshotStore",
    "SystemPackageManager",
    "TarArchiver",
    "generate_passphrase",
]
