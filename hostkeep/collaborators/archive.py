"""tar+gzip archives of job directories."""

import logging
import os
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from hostkeep.utils.errors import CollaboratorError
from hostkeep.utils.files import sha256_stream

from .base import Archiver, PathLike, run_tool, tool_available, with_sudo

logger = logging.getLogger(__name__)

# Never packed: lock file, rsync partial transfers and restore-side bookkeeping
EXCLUDED_NAMES = {".lock", "partial", "restore_state.log", "restore_report.txt"}


def _normalize(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


class TarArchiver(Archiver):
    """Packs job directories with the tarfile module, or sudo tar for root-only trees."""

    def __init__(
        self, compresslevel: int = 6, excluded: Optional[Iterable[str]] = None, use_sudo: bool = False
    ):
        self.compresslevel = compresslevel
        self.use_sudo = use_sudo
        self.excluded = set(excluded) if excluded is not None else set(EXCLUDED_NAMES)

    def _keep(self, info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        top = _normalize(info.name).split("/", 1)[0]
        if top in self.excluded:
            return None
        return info

    def archive(self, src_dir: PathLike, dest_file: PathLike) -> None:
        """
        Pack the contents of src_dir into dest_file.

        The archive is written next to its destination and renamed into
        place, so an interrupted run never leaves a truncated archive under
        the final name.
        """
        src_dir = Path(src_dir)
        dest_file = Path(dest_file)
        partial = dest_file.with_name(dest_file.name + ".partial")

        logger.info("Archiving %s -> %s", src_dir, dest_file)
        try:
            entries = [entry for entry in sorted(os.listdir(src_dir)) if entry not in self.excluded]
            if self._needs_sudo():
                self._archive_with_tar(src_dir, partial, entries)
            else:
                with tarfile.open(partial, "w:gz", compresslevel=self.compresslevel) as tar:
                    for entry in entries:
                        tar.add(str(src_dir / entry), arcname=entry, filter=self._keep)
            os.replace(partial, dest_file)
        except (OSError, tarfile.TarError, CollaboratorError) as e:
            if partial.exists():
                partial.unlink()
            raise CollaboratorError(f"Failed to archive {src_dir}: {e}") from e

    def _needs_sudo(self) -> bool:
        return self.use_sudo and os.geteuid() != 0 and tool_available("sudo")

    def _archive_with_tar(self, src_dir: Path, partial: Path, entries: List[str]) -> None:
        # Captured trees may hold root-only files copied by sudo rsync
        command = ["tar", "-czf", str(partial), "-C", str(src_dir), "--"] + entries
        run_tool(with_sudo(command, True))

    def extract(self, archive_file: PathLike, dest_dir: PathLike) -> None:
        """Unpack archive_file into dest_dir."""
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Extracting %s -> %s", archive_file, dest_dir)
        try:
            with tarfile.open(archive_file, "r:*") as tar:
                if hasattr(tarfile, "tar_filter"):
                    tar.extractall(dest_dir, filter="tar")
                else:
                    tar.extractall(dest_dir)
        except (OSError, tarfile.TarError) as e:
            raise CollaboratorError(f"Failed to extract {archive_file}: {e}") from e

    def member_digests(self, archive_file: PathLike) -> Dict[str, str]:
        """Hash every regular file member of the archive."""
        digests: Dict[str, str] = {}
        try:
            with tarfile.open(archive_file, "r:*") as tar:
                for info in tar:
                    if not (info.isfile() or info.islnk()):
                        continue
                    stream = tar.extractfile(info)
                    if stream is None:
                        continue
                    with stream:
                        digests[_normalize(info.name)] = sha256_stream(stream)
        except (OSError, tarfile.TarError) as e:
            raise CollaboratorError(f"Cannot read archive {archive_file}: {e}") from e

        return digests
