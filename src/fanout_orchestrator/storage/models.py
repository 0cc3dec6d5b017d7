"""Storage models shared by the launcher, monitor, API and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from fanout_orchestrator.schemas import IteratorPayload

STATUS_RUNNING = "Running"
STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"

RunStatus = Literal["Running", "Completed"]
ExecutionState = Literal["launch", "poll", "wait", "done"]


class RunSummary(BaseModel):
    """One row per (workflow_name, run_id)."""

    workflow_name: str
    run_id: int
    spec_snapshot: str
    task_count: int
    status: RunStatus = STATUS_RUNNING
    completed_tasks: int = 0
    failed_tasks: int = 0
    running_tasks: int = 0
    start_time: str
    update_time: str | None = None


class TaskDetail(BaseModel):
    """One row per (run_id, task_id).

    ``status`` stays a free string on read; the monitor treats anything other
    than Completed or Failed as running.
    """

    run_id: int
    task_id: str
    task_name: str = ""
    status: str = STATUS_RUNNING
    start_time: str | None = None
    update_time: str | None = None
    exec_time_in_seconds: int | None = None


class StatusCounts(BaseModel):
    """Monitor classification of a run's task rows."""

    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    running: list[str] = Field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return len(self.completed)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def running_count(self) -> int:
        return len(self.running)

    def as_summary_fields(self) -> dict[str, Any]:
        return {
            "completed_tasks": self.completed_count,
            "failed_tasks": self.failed_count,
            "running_tasks": self.running_count,
        }


class ExecutionRecord(BaseModel):
    """Persisted orchestrator state for one launch-and-monitor execution."""

    execution_id: str
    workflow_name: str
    state: ExecutionState = "launch"
    request_snapshot: dict[str, Any] = Field(default_factory=dict)
    payload: IteratorPayload | None = None
    poll_count: int = 0
    wake_at: datetime | None = None
    last_error: str | None = None
    completed_tasks: int = 0
    failed_tasks: int = 0
    running_tasks: int = 0
    created_at: datetime
    updated_at: datetime
    durable: bool = True

    def is_claimable(self, now: datetime, *, force: bool = False) -> bool:
        """Whether a scheduler may take this execution for its next poll.

        Waiting executions are due once ``wake_at`` has passed. A ``poll``
        record keeps ``wake_at`` as the claim lease; once that lease runs out
        the driver that held it is gone and the execution is due again.
        In-process executions are never claimable.
        """
        if not self.durable:
            return False
        if self.state == "wait":
            return force or self.wake_at is None or self.wake_at <= now
        return self.state == "poll" and self.wake_at is not None and self.wake_at <= now
