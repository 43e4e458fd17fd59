"""rsync-backed file tree copies."""

import logging
from pathlib import Path
from typing import Optional, Sequence

from .base import FileSync, PathLike, run_tool, with_sudo

logger = logging.getLogger(__name__)


class RsyncFileSync(FileSync):
    """Copies trees with rsync, keeping partial transfers for resumption."""

    def __init__(self, use_sudo: bool = True, partial_dir: Optional[PathLike] = None):
        """
        Initialize rsync wrapper.

        Args:
            use_sudo: Run rsync through sudo so system paths are readable
            partial_dir: Directory for partially transferred files
        """
        self.use_sudo = use_sudo
        self.partial_dir = partial_dir

    def sync_tree(
        self, source: PathLike, dest: PathLike, destructive: bool = False, exclude: Sequence[str] = ()
    ) -> None:
        """
        Copy a tree.

        Capture copies ``source`` into ``dest`` (creating ``dest/<name>``).
        Destructive mode mirrors the contents of ``source`` onto ``dest``,
        deleting files that are absent from the source.
        Patterns in ``exclude`` are rsync filter patterns anchored at the
        transfer root; excluded files are neither copied nor deleted.
        """
        command = ["rsync", "-aH"]

        if destructive:
            command.append("--delete")
            src_arg = str(source).rstrip("/") + "/"
        else:
            Path(dest).mkdir(parents=True, exist_ok=True)
            command.append("--partial")
            if self.partial_dir:
                command.append(f"--partial-dir={self.partial_dir}")
            src_arg = str(source).rstrip("/")

        command.extend(f"--exclude={pattern}" for pattern in exclude)
        command.extend([src_arg, str(dest).rstrip("/") + "/"])
        logger.info("Syncing %s -> %s", src_arg, dest)
        run_tool(with_sudo(command, self.use_sudo))
