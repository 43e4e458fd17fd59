"""Block device imaging with dd or ddrescue."""

import logging
import os
import stat
from pathlib import Path

from hostkeep.utils.errors import CollaboratorError

from .base import BlockImager, PathLike, run_tool, tool_available, with_sudo

logger = logging.getLogger(__name__)


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


class DdImager(BlockImager):
    """Images devices with ddrescue when resumable, dd otherwise."""

    def __init__(self, use_sudo: bool = True, block_size: str = "4M"):
        self.use_sudo = use_sudo
        self.block_size = block_size

    def image_device(self, device: str, dest_file: PathLike, resumable: bool = True) -> None:
        """
        Copy a whole device into dest_file.

        With ``resumable`` and ddrescue installed, progress is tracked in a
        ``.map`` file beside the image so an interrupted copy continues where
        it stopped.
        """
        if not is_block_device(device):
            raise CollaboratorError(f"{device} is not a block device")

        dest_file = Path(dest_file)
        dest_file.parent.mkdir(parents=True, exist_ok=True)

        if resumable and tool_available("ddrescue"):
            map_file = dest_file.with_suffix(dest_file.suffix + ".map")
            command = ["ddrescue", "--no-scrape", device, str(dest_file), str(map_file)]
        else:
            command = [
                "dd",
                f"if={device}",
                f"of={dest_file}",
                f"bs={self.block_size}",
                "conv=fsync",
                "status=progress",
            ]

        logger.info("Imaging %s -> %s", device, dest_file)
        run_tool(with_sudo(command, self.use_sudo))

    def write_device(self, src_file: PathLike, device: str) -> None:
        """Overwrite a device with an image file."""
        if not is_block_device(device):
            raise CollaboratorError(f"{device} is not a block device")
        if not Path(src_file).exists():
            raise CollaboratorError(f"Image file not found: {src_file}")

        if tool_available("ddrescue"):
            command = ["ddrescue", "--force", str(src_file), device]
        else:
            command = ["dd", f"if={src_file}", f"of={device}", f"bs={self.block_size}", "conv=fsync", "status=progress"]

        logger.info("Writing %s -> %s", src_file, device)
        run_tool(with_sudo(command, self.use_sudo))
