"""Checks that must pass before any step runs."""

import logging
import os
from typing import Any, Dict, List, Optional

import click

from hostkeep.collaborators import Collaborators, PackageSpec
from hostkeep.collaborators.base import tool_available
from hostkeep.utils.errors import CollaboratorError, ConfigurationError, create_error_suggestions

from .confirmation import ConfirmationGate, Decision
from .job import BackupMode, JobKind
from .storage import BackupStorage

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = {
    BackupMode.SELECTIVE: ["rsync"],
    BackupMode.DISK_IMAGE: ["dd"],
    BackupMode.SNAPSHOT: ["borg"],
}

OPTIONAL_TOOLS = {
    BackupMode.DISK_IMAGE: ["ddrescue"],
}

# dnf package that provides each tool
TOOL_PACKAGES = {
    "rsync": "rsync",
    "dd": "coreutils",
    "borg": "borgbackup",
    "ddrescue": "ddrescue",
    "sudo": "sudo",
}


class Preflight:
    """Verifies tools, privileges and disk space for a job."""

    def __init__(
        self,
        collaborators: Collaborators,
        gate: ConfirmationGate,
        config: Optional[Dict[str, Any]] = None,
        verbose: bool = False,
    ):
        self.collaborators = collaborators
        self.gate = gate
        self.config = config or {}
        self.verbose = verbose

    def missing_tools(self, mode: BackupMode) -> List[str]:
        return [tool for tool in REQUIRED_TOOLS[mode] if not tool_available(tool)]

    def ensure_tools(self, mode: BackupMode) -> None:
        """
        Make sure the tools a mode needs are installed.

        Missing tools are offered for installation through the package
        manager; declining or a failed install is a ConfigurationError.
        """
        missing = self.missing_tools(mode)
        for tool in OPTIONAL_TOOLS.get(mode, []):
            if not tool_available(tool):
                logger.info("Optional tool %s not found", tool)

        if not missing:
            return

        click.echo(f"Missing required tools: {', '.join(missing)}")
        if self.gate.ask(f"Install {', '.join(missing)} now") != Decision.NO:
            specs = [PackageSpec("dnf", TOOL_PACKAGES.get(tool, tool)) for tool in missing]
            try:
                self.collaborators.packages.install(specs)
            except CollaboratorError as e:
                raise ConfigurationError(
                    f"Failed to install required tools: {e.message}",
                    details=e.details,
                    suggestions=create_error_suggestions("tool_missing", tools=missing),
                ) from e
            missing = self.missing_tools(mode)

        if missing:
            raise ConfigurationError(
                f"Required tools are missing: {', '.join(missing)}",
                suggestions=create_error_suggestions("tool_missing", tools=missing),
            )

    def check_privileges(self, mode: BackupMode, kind: JobKind) -> None:
        """Device access and restores need root or working sudo."""
        needs_root = mode == BackupMode.DISK_IMAGE or kind == JobKind.RESTORE
        if not needs_root or os.geteuid() == 0:
            return

        if self.config.get("use_sudo", True) and tool_available("sudo"):
            return

        raise ConfigurationError(
            "Insufficient privilege: this job must run as root or with sudo available",
            suggestions=["Re-run with sudo", "Set use_sudo: true in hostkeep.yml and install sudo"],
        )

    def run(self, mode: BackupMode, kind: JobKind, storage: BackupStorage) -> None:
        """Run every check; raises ConfigurationError on the first failure."""
        self.ensure_tools(mode)
        self.check_privileges(mode, kind)
        free_gb = storage.check_disk_space(self.config.get("min_free_space_gb", 50))

        if self.verbose:
            click.echo(f"Preflight passed ({free_gb:.1f} GB free)")
