"""RebalanceEvent model — audit trail for one per-position rebalance run."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column

from lp_hedger.utils.constants import (
    EVENT_PENDING,
    EVENT_EXECUTING,
    EVENT_COMPLETED,
    EVENT_FAILED,
)


class RebalanceEvent(SQLModel, table=True):
    __tablename__ = "rebalance_event"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    hedge_id: int | None = Field(default=None, foreign_key="hedge.id", index=True)
    trigger_type: str  # "manual", "scheduled", "threshold"
    status: str = EVENT_PENDING  # "pending", "executing", "completed", "failed"
    paper_trade: bool = True

    pre_state: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    post_state: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    intended_actions: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    executed_actions: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    warnings: list[str] | None = Field(default=None, sa_column=Column(JSON))

    error_code: str | None = None
    error_message: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def mark_executing(self):
        self.status = EVENT_EXECUTING
        self.started_at = datetime.now(timezone.utc)

    def mark_completed(self, executed_actions: list[dict], post_state: dict):
        self.status = EVENT_COMPLETED
        self.executed_actions = executed_actions
        self.post_state = post_state
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, message: str, code: str | None = None):
        self.status = EVENT_FAILED
        self.error_message = message
        self.error_code = code
        self.completed_at = datetime.now(timezone.utc)

    @property
    def finished(self) -> bool:
        return self.status in (EVENT_COMPLETED, EVENT_FAILED)
