"""Package manager queries and installs (dnf, flatpak, pip)."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .base import PackageManager, PackageSpec, PathLike, run_tool, tool_available, with_sudo

logger = logging.getLogger(__name__)

# File names inside the packages/ and pip/ step folders
LIST_FILES = {
    "dnf": "rpm-packages.txt",
    "flatpak": "flatpak-apps.txt",
    "pip": "requirements.txt",
}


class SystemPackageManager(PackageManager):
    """Talks to dnf, flatpak and pip, skipping managers that are not installed."""

    def __init__(self, use_sudo: bool = True, managers: Sequence[str] = ("dnf", "flatpak", "pip")):
        self.use_sudo = use_sudo
        self.managers = list(managers)

    def available_managers(self) -> List[str]:
        return [manager for manager in self.managers if tool_available(manager)]

    def query_installed(self, managers: Optional[Sequence[str]] = None) -> List[PackageSpec]:
        specs: List[PackageSpec] = []
        for manager in self.available_managers():
            if managers is not None and manager not in managers:
                continue
            specs.extend(self._query(manager))
        return specs

    def _query(self, manager: str) -> List[PackageSpec]:
        if manager == "dnf":
            command = ["dnf", "repoquery", "--installed", "--queryformat", "%{name}\n"]
        elif manager == "flatpak":
            command = ["flatpak", "list", "--app", "--columns=application"]
        else:
            command = ["pip", "freeze"]

        result = run_tool(command, capture=True)
        names = sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})
        return [PackageSpec(manager, name) for name in names]

    def install(self, specs: Sequence[PackageSpec]) -> None:
        grouped: Dict[str, List[str]] = {}
        for spec in specs:
            grouped.setdefault(spec.manager, []).append(spec.name)

        for manager, names in grouped.items():
            if not names:
                continue
            logger.info("Installing %d %s packages", len(names), manager)
            if manager == "dnf":
                run_tool(with_sudo(["dnf", "install", "-y", "--skip-broken"] + names, self.use_sudo))
            elif manager == "flatpak":
                run_tool(["flatpak", "install", "-y", "--noninteractive"] + names)
            elif manager == "pip":
                run_tool(["pip", "install"] + names)
            else:
                logger.warning("Unknown package manager %s, skipping", manager)


def write_package_lists(specs: Sequence[PackageSpec], dest_dir: PathLike, managers: Sequence[str]) -> List[Path]:
    """Write one list file per manager into dest_dir."""
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for manager in managers:
        names = [spec.name for spec in specs if spec.manager == manager]
        path = dest_dir / LIST_FILES[manager]
        with open(path, "w", encoding="utf-8") as f:
            f.write("".join(f"{name}\n" for name in names))
        written.append(path)
    return written


def read_package_lists(src_dir: PathLike) -> List[PackageSpec]:
    """Read every list file present in src_dir."""
    src_dir = Path(src_dir)
    specs: List[PackageSpec] = []
    for manager, file_name in LIST_FILES.items():
        path = src_dir / file_name
        if not path.exists():
            continue
        with open(path, encoding="utf-8") as f:
            for line in f:
                name = line.strip()
                if name and not name.startswith("#"):
                    specs.append(PackageSpec(manager, name))
    return specs
