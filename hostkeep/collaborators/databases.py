"""Logical database dumps (MySQL/MariaDB, PostgreSQL)."""

import logging
from pathlib import Path
from typing import List

from hostkeep.utils.errors import CollaboratorError

from .base import DatabaseDumper, PathLike, run_tool, tool_available, with_sudo

logger = logging.getLogger(__name__)

ENGINES = {
    "mysql": ("mysqldump", ["mysqldump", "--all-databases"]),
    "postgresql": ("pg_dumpall", ["pg_dumpall"]),
}

DUMP_FILES = {
    "mysql": "mysql_dump.sql",
    "postgresql": "postgresql_dump.sql",
}


class LocalDatabaseDumper(DatabaseDumper):
    """Dumps every database of the locally installed servers."""

    def __init__(self, use_sudo: bool = True):
        self.use_sudo = use_sudo

    def _command(self, engine: str) -> List[str]:
        command = list(ENGINES[engine][1])
        if not self.use_sudo:
            return command
        if engine == "postgresql":
            # pg_dumpall authenticates as the postgres superuser
            return ["sudo", "-u", "postgres"] + command
        return with_sudo(command, True)

    def available(self) -> List[str]:
        return [engine for engine, (tool, _) in ENGINES.items() if tool_available(tool)]

    def dump(self, engine: str, dest_file: PathLike) -> None:
        if engine not in ENGINES:
            raise CollaboratorError(f"Unsupported database engine: {engine}")

        dest_file = Path(dest_file)
        dest_file.parent.mkdir(parents=True, exist_ok=True)
        partial = dest_file.with_name(dest_file.name + ".partial")

        logger.info("Dumping %s databases -> %s", engine, dest_file)
        try:
            with open(partial, "w", encoding="utf-8") as f:
                run_tool(self._command(engine), stdout=f)
            partial.replace(dest_file)
        finally:
            if partial.exists():
                partial.unlink()
