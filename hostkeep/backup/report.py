"""Run report: per-step outcomes and durations for one run."""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from jinja2 import Environment, FileSystemLoader

from hostkeep.utils.files import atomic_write_text

if TYPE_CHECKING:
    from .verifier import VerificationResult


class Outcome(Enum):
    """What happened to a step in this run."""

    DONE = "done"
    ALREADY_DONE = "already done"
    DECLINED = "declined"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    SEALED = "skipped, job sealed"


@dataclass
class StepRecord:
    step_id: str
    description: str
    outcome: Outcome
    duration: Optional[float] = None
    detail: Optional[str] = None


@dataclass
class RunReport:
    """Ordered step records plus overall timing, rendered to text at the end."""

    job_name: str
    mode: str
    restore: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    records: List[StepRecord] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)
    verification: Optional["VerificationResult"] = None

    def add(
        self,
        step_id: str,
        description: str,
        outcome: Outcome,
        duration: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> StepRecord:
        record = StepRecord(step_id, description, outcome, duration, detail)
        self.records.append(record)
        return record

    def notice(self, message: str) -> None:
        self.notices.append(message)

    def finish(self) -> None:
        self.finished_at = datetime.now()

    def ids_with(self, *outcomes: Outcome) -> List[str]:
        return [record.step_id for record in self.records if record.outcome in outcomes]

    @property
    def executed(self) -> List[str]:
        return self.ids_with(Outcome.DONE)

    @property
    def failed(self) -> List[str]:
        return self.ids_with(Outcome.FAILED)

    @property
    def durations(self) -> List[float]:
        return [record.duration for record in self.records if record.duration is not None]

    @property
    def total_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return max((end - self.started_at).total_seconds(), 0.0)

    def render(self) -> str:
        templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
        env = Environment(loader=FileSystemLoader(templates_dir), trim_blocks=True, lstrip_blocks=True)
        template = env.get_template("report.txt.j2")

        return template.render(
            title="Restore Report" if self.restore else "Backup Report",
            job_name=self.job_name,
            mode=self.mode,
            started_at=self.started_at.isoformat(timespec="seconds"),
            finished_at=self.finished_at.isoformat(timespec="seconds") if self.finished_at else None,
            total_seconds=self.total_seconds,
            records=self.records,
            notices=self.notices,
            verification=self.verification,
        )

    def write(self, path: Path) -> None:
        atomic_write_text(path, self.render())
