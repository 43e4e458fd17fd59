"""Append-only journal of completed steps.

One line per completed step::

    <step id>\t<duration seconds>\t<completion time>

Only the first field is authoritative. Readers ignore blank lines, malformed
metadata, repeated identifiers and identifiers no step knows about, so a
journal written by an older catalog still resumes cleanly.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Set, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JournalEntry:
    """One committed step."""

    step_id: str
    duration: Optional[float] = None
    completed_at: Optional[str] = None


@dataclass(frozen=True)
class ResumeState:
    """Steps already committed for a job, read once at the start of a run."""

    done: FrozenSet[str] = frozenset()
    durations: Dict[str, float] = field(default_factory=dict)

    def is_done(self, step_id: str) -> bool:
        return step_id in self.done


def _parse_line(line: str) -> Optional[JournalEntry]:
    fields = line.rstrip("\n").split("\t")
    step_id = fields[0].strip()
    if not step_id:
        return None

    duration = None
    if len(fields) > 1:
        try:
            duration = float(fields[1])
        except ValueError:
            duration = None

    completed_at = fields[2].strip() if len(fields) > 2 and fields[2].strip() else None
    return JournalEntry(step_id, duration, completed_at)


class StateJournal:
    """Durable, append-only record of completed step identifiers."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._known: Optional[Set[str]] = None

    def entries(self) -> List[JournalEntry]:
        """Entries in commit order, first occurrence of each identifier only."""
        if not self.path.exists():
            return []

        seen: Set[str] = set()
        entries: List[JournalEntry] = []
        with open(self.path, encoding="utf-8", errors="replace") as f:
            for line in f:
                entry = _parse_line(line)
                if entry is None or entry.step_id in seen:
                    continue
                seen.add(entry.step_id)
                entries.append(entry)

        return entries

    def load(self) -> ResumeState:
        """Read the journal into a resume state; missing or empty is a fresh job."""
        entries = self.entries()
        self._known = {entry.step_id for entry in entries}
        durations = {entry.step_id: entry.duration for entry in entries if entry.duration is not None}
        return ResumeState(done=frozenset(self._known), durations=durations)

    def append(self, step_id: str, duration: Optional[float] = None) -> bool:
        """
        Commit a step.

        The line is flushed and fsynced before returning, so a step is either
        committed or will be redone on resume. Appending an identifier that is
        already present is a no-op.

        Args:
            step_id: Identifier of the completed step
            duration: Optional step duration in seconds

        Returns:
            bool: True if a new line was written
        """
        if not step_id or any(ch.isspace() for ch in step_id):
            raise ValueError(f"Invalid step identifier: {step_id!r}")

        if self._known is None:
            self.load()
        if step_id in self._known:
            logger.debug("Step %s already journaled", step_id)
            return False

        created = not self.path.exists()
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fields = [step_id, f"{duration:.3f}" if duration is not None else "", datetime.now().isoformat(timespec="seconds")]
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("\t".join(fields) + "\n")
            f.flush()
            os.fsync(f.fileno())

        if created:
            self._sync_directory()

        self._known.add(step_id)
        return True

    def _sync_directory(self) -> None:
        # Make the new directory entry itself durable
        try:
            fd = os.open(str(self.path.parent), os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)
