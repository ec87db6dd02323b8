"""
Workflow outcomes.

External command failures never abort a workflow. They are collected here as
warnings next to the application's final stage so callers can report them and
the operator can re-run the workflow to converge.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from .commands import CommandResult

logger = logging.getLogger(__name__)


@dataclass
class WorkflowOutcome:
    """Result of one orchestrator workflow."""

    workflow: str
    application: str | None = None
    stage: str | None = None
    warnings: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    cancelled: bool = False
    data: dict = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.warnings and not self.cancelled

    def info(self, message: str):
        logger.info(message)
        self.messages.append(message)

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def check(self, result: CommandResult, what: str) -> bool:
        """Record a failed command as a warning. Returns result.ok."""
        if not result.ok:
            self.warn(f"{what} failed: {result.describe()}")
        return result.ok

    def finish(self, stage=None) -> "WorkflowOutcome":
        if stage is not None:
            self.stage = getattr(stage, "value", stage)
        self.completed_at = datetime.now()
        return self

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow,
            "application": self.application,
            "stage": self.stage,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "warnings": self.warnings,
            "messages": self.messages,
            "data": self.data,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
