"""Operator confirmation for steps."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import click

from hostkeep.utils.errors import HostKeepError

logger = logging.getLogger(__name__)


class Decision(Enum):
    """Answer to a step prompt."""

    YES = "yes"
    NO = "no"
    YES_TO_ALL = "all"

    @classmethod
    def parse(cls, answer: str) -> Optional["Decision"]:
        """Parse an operator answer; empty input means yes."""
        normalized = answer.strip().lower()
        if normalized in ("", "y", "yes"):
            return cls.YES
        if normalized in ("n", "no"):
            return cls.NO
        if normalized in ("a", "all"):
            return cls.YES_TO_ALL
        return None


@dataclass
class ConfirmationPolicy:
    """
    Tracks yes-to-all for one run.

    Yes-to-all approves every later non-destructive step without asking.
    Destructive steps keep prompting unless ``covers_destructive`` is set.
    """

    all_remaining: bool = False
    covers_destructive: bool = False

    def should_prompt(self, destructive: bool) -> bool:
        if not self.all_remaining:
            return True
        return destructive and not self.covers_destructive

    def apply(self, decision: Decision) -> bool:
        """Record a decision and return whether the step is approved."""
        if decision == Decision.YES_TO_ALL:
            self.all_remaining = True
        return decision != Decision.NO


class ConfirmationGate(ABC):
    """Source of operator decisions."""

    @abstractmethod
    def ask(self, prompt: str) -> Decision:
        """Ask whether to run a step."""

    @abstractmethod
    def confirm_target(self, prompt: str, target: str) -> bool:
        """Require explicit confirmation of a destructive target."""


class PromptGate(ConfirmationGate):
    """Interactive gate on the terminal."""

    @staticmethod
    def _prompt(text: str) -> str:
        try:
            return click.prompt(text, default="", show_default=False)
        except click.Abort:
            # Ctrl-C or closed stdin at a prompt stops the job like SIGINT
            raise KeyboardInterrupt from None

    def ask(self, prompt: str) -> Decision:
        while True:
            answer = self._prompt(f"{prompt} [Y/n/a]")
            decision = Decision.parse(answer)
            if decision is not None:
                return decision
            click.echo("Please answer y (yes), n (no) or a (yes to all).")

    def confirm_target(self, prompt: str, target: str) -> bool:
        click.echo(click.style(f"⚠ {prompt}", fg="red", bold=True))
        answer = self._prompt(f"Type {target} to confirm")
        return answer.strip() == target


class ConfirmationExhausted(HostKeepError):
    """A scripted gate was asked more questions than it has answers for."""


class ScriptedGate(ConfirmationGate):
    """Gate that replays prepared answers, recording every prompt."""

    def __init__(self, decisions: Iterable[Decision] = (), target_answers: Iterable[bool] = ()):
        self.decisions: List[Decision] = list(decisions)
        self.target_answers: List[bool] = list(target_answers)
        self.prompts: List[str] = []
        self.target_prompts: List[str] = []

    def ask(self, prompt: str) -> Decision:
        self.prompts.append(prompt)
        if not self.decisions:
            raise ConfirmationExhausted(f"No scripted answer for: {prompt}")
        return self.decisions.pop(0)

    def confirm_target(self, prompt: str, target: str) -> bool:
        self.target_prompts.append(prompt)
        if not self.target_answers:
            raise ConfirmationExhausted(f"No scripted target confirmation for: {target}")
        return self.target_answers.pop(0)


class AutoApproveGate(ConfirmationGate):
    """Non-interactive gate for --yes runs.

    Targets are approved only when they were named up front.
    """

    def __init__(self, confirmed_targets: Sequence[str] = ()):
        self.confirmed_targets = set(confirmed_targets)

    def ask(self, prompt: str) -> Decision:
        logger.info("Auto-approved: %s", prompt)
        return Decision.YES

    def confirm_target(self, prompt: str, target: str) -> bool:
        approved = target in self.confirmed_targets
        if not approved:
            logger.warning("Target %s was not confirmed with --confirm-target", target)
        return approved
