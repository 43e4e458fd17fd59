"""File operations utilities for hostkeep."""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Digest recorded for files the current user cannot read
UNREADABLE = "-"

CHUNK_SIZE = 1024 * 1024

FOLDER_HEADER = "# folder:"


def sha256_stream(stream: BinaryIO) -> str:
    """Hash a binary stream in chunks."""
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def sha256_file(path: PathLike) -> str:
    """Hash a file in chunks."""
    with open(path, "rb") as f:
        return sha256_stream(f)


def atomic_write_text(path: PathLike, content: str, mode: Optional[int] = None) -> None:
    """
    Write a text file so readers see either the old or the new content.

    Args:
        path: Destination file
        content: Text to write
        mode: Optional permission bits for the final file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def iter_regular_files(root: PathLike) -> Iterable[Path]:
    """Yield regular files below root, skipping symlinks."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            file_path = Path(dirpath) / name
            if file_path.is_symlink() or not file_path.is_file():
                continue
            yield file_path


class ChecksumManifest:
    """Per-step checksum manifests stored under ``<job>/manifests``."""

    def __init__(self, job_root: PathLike):
        """
        Initialize manifest store.

        Args:
            job_root: Job directory that manifest paths are relative to
        """
        self.job_root = Path(job_root)
        self.manifest_dir = self.job_root / "manifests"

    def manifest_path(self, step_id: str) -> Path:
        return self.manifest_dir / f"{step_id}.sha256"

    def build(self, folder: PathLike) -> Dict[str, str]:
        """
        Hash every regular file below a folder of the job.

        Args:
            folder: Folder to hash, absolute or relative to the job root

        Returns:
            Dict[str, str]: Relative posix path -> sha256 (or UNREADABLE)
        """
        folder = Path(folder)
        if not folder.is_absolute():
            folder = self.job_root / folder

        entries: Dict[str, str] = {}
        if not folder.exists():
            return entries

        for file_path in iter_regular_files(folder):
            relative = file_path.relative_to(self.job_root).as_posix()
            try:
                entries[relative] = sha256_file(file_path)
            except PermissionError:
                logger.warning("Cannot read %s for checksum, recording count only", file_path)
                entries[relative] = UNREADABLE

        return entries

    def write(self, step_id: str, entries: Dict[str, str], folder: Optional[PathLike] = None) -> Path:
        """Replace a step's manifest atomically."""
        lines = [f"{FOLDER_HEADER} {Path(folder).as_posix()}\n"] if folder is not None else []
        lines += [f"{digest}  {relative}\n" for relative, digest in sorted(entries.items())]
        path = self.manifest_path(step_id)
        atomic_write_text(path, "".join(lines))
        return path

    def record(self, step_id: str, folder: PathLike) -> int:
        """Build and write the manifest for a step, returning its file count."""
        entries = self.build(folder)
        self.write(step_id, entries, folder)
        logger.debug("Recorded %d checksums for step %s", len(entries), step_id)
        return len(entries)

    def load(self, step_id: str) -> Dict[str, str]:
        """Read a step's manifest; a missing manifest is empty."""
        path = self.manifest_path(step_id)
        entries: Dict[str, str] = {}
        if not path.exists():
            return entries

        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line or line.startswith("#"):
                    continue
                digest, _, relative = line.partition("  ")
                if relative:
                    entries[relative] = digest

        return entries

    def load_all(self, step_ids: Iterable[str]) -> Dict[str, str]:
        """Merge the manifests of several steps."""
        merged: Dict[str, str] = {}
        for step_id in step_ids:
            merged.update(self.load(step_id))
        return merged

    def folder(self, step_id: str) -> Optional[str]:
        """Folder a step's manifest covers, from its header line."""
        path = self.manifest_path(step_id)
        if not path.exists():
            return None

        with open(path, encoding="utf-8") as f:
            header = f.readline().rstrip("\n")
        if header.startswith(FOLDER_HEADER):
            return header[len(FOLDER_HEADER):].strip()
        return None
