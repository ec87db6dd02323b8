"""
Database models for steward.

Uses Peewee ORM with SQLite. Stores the history of workflow runs (what ran,
against which application, the resulting stage and any warnings) so the
operator can see what happened after the terminal output is gone.
"""

import json
import logging
from datetime import datetime, timedelta

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import Config
from .outcome import WorkflowOutcome

logger = logging.getLogger(__name__)

database = DatabaseProxy()


def initialize_db(config: Config):
    """Initialize database connection and create tables."""
    config.ensure_dirs()
    db = SqliteDatabase(
        str(config.db_path),
        pragmas={
            "journal_mode": "wal",
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
        check_same_thread=False,
    )
    database.initialize(db)
    database.create_tables([WorkflowRun], safe=True)
    prune_history(config.history_retention_days)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class WorkflowRun(BaseModel):
    """Record of one orchestrator workflow."""

    id = AutoField()
    workflow = CharField(index=True)
    application = CharField(null=True, index=True)
    stage = CharField(null=True)
    success = BooleanField(default=True)
    cancelled = BooleanField(default=False)
    warnings = TextField(null=True)  # JSON list
    messages = TextField(null=True)  # JSON list
    started_at = DateTimeField(default=datetime.now)
    finished_at = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "workflow_runs"

    def get_warnings(self) -> list[str]:
        try:
            return json.loads(self.warnings) if self.warnings else []
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow": self.workflow,
            "application": self.application,
            "stage": self.stage,
            "success": self.success,
            "cancelled": self.cancelled,
            "warnings": self.get_warnings(),
            "messages": json.loads(self.messages) if self.messages else [],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def record_outcome(outcome: WorkflowOutcome) -> WorkflowRun | None:
    """Persist an outcome. History is best-effort and never breaks a workflow."""
    if database.obj is None:
        return None
    try:
        return WorkflowRun.create(
            workflow=outcome.workflow,
            application=outcome.application,
            stage=outcome.stage,
            success=outcome.ok,
            cancelled=outcome.cancelled,
            warnings=json.dumps(outcome.warnings),
            messages=json.dumps(outcome.messages),
            started_at=outcome.started_at,
            finished_at=outcome.completed_at or datetime.now(),
        )
    except Exception as e:
        logger.error(f"Error recording workflow history: {e}")
        return None


def recent_runs(application: str | None = None, limit: int = 50) -> list[WorkflowRun]:
    query = WorkflowRun.select()
    if application:
        query = query.where(WorkflowRun.application == application)
    return list(query.order_by(WorkflowRun.finished_at.desc(), WorkflowRun.id.desc()).limit(limit))


def prune_history(retention_days: int) -> int:
    """Remove workflow runs older than the retention window."""
    cutoff = datetime.now() - timedelta(days=retention_days)
    deleted = WorkflowRun.delete().where(WorkflowRun.finished_at < cutoff).execute()
    if deleted:
        logger.debug(f"Cleaned up {deleted} old workflow runs")
    return deleted
