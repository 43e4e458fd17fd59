"""Backup mode detection from a job directory's layout."""

import json
import os
from typing import Optional

from .job import BackupMode

SNAPSHOT_MARKER = "borg_repo"
DISK_IMAGE_MARKER = "image"


class ModeDetector:
    """Detects the backup mode of an existing job directory."""

    def __init__(self, path: str):
        """Initialize detector for a job directory."""
        self.path = str(path)

    def recorded_mode(self) -> Optional[BackupMode]:
        """Mode stored in job.json, if the file exists and is readable."""
        metadata_file = os.path.join(self.path, "job.json")
        if not os.path.exists(metadata_file):
            return None

        try:
            with open(metadata_file, encoding="utf-8") as f:
                return BackupMode(json.load(f)["mode"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def detect_mode(self) -> BackupMode:
        """
        Detect the backup mode.

        job.json wins when present; otherwise a snapshot repository marks a
        snapshot-store job, an image folder marks a disk-image job, and
        anything else is selective.

        Returns:
            BackupMode: The detected mode
        """
        recorded = self.recorded_mode()
        if recorded is not None:
            return recorded

        if os.path.isdir(os.path.join(self.path, SNAPSHOT_MARKER)):
            return BackupMode.SNAPSHOT

        if os.path.isdir(os.path.join(self.path, DISK_IMAGE_MARKER)):
            return BackupMode.DISK_IMAGE

        return BackupMode.SELECTIVE

    def get_mode_description(self) -> str:
        """Get a human-readable description of the detected mode."""
        descriptions = {
            BackupMode.SELECTIVE: "Selective file-tree backup",
            BackupMode.DISK_IMAGE: "Whole-disk image backup",
            BackupMode.SNAPSHOT: "Deduplicated snapshot-store backup",
        }

        return descriptions[self.detect_mode()]
