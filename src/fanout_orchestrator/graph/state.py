"""Typed state contract for the launch/poll/wait LangGraph workflow."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypedDict

from fanout_orchestrator.errors import StoreWriteError
from fanout_orchestrator.launcher import TaskLauncher
from fanout_orchestrator.monitor import TaskMonitor
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import ExecutionRecord

logger = logging.getLogger(__name__)


class OrchestrationState(TypedDict, total=False):
    execution_id: str
    workflow_name: str
    request: dict[str, Any]
    payload: dict[str, Any] | None
    phase: str
    poll_count: int
    counts: dict[str, int]
    run_status: str | None
    last_error: str | None
    wake_at: str | None
    durable: bool
    created_at: str


@dataclass(frozen=True)
class GraphDependencies:
    store: StatusStore
    launcher: TaskLauncher
    monitor: TaskMonitor
    poll_interval_s: float
    lease_s: float
    durable: bool
    sleep: Callable[[float], None]
    clock: Callable[[], datetime]


def state_from_record(record: ExecutionRecord) -> OrchestrationState:
    return {
        "execution_id": record.execution_id,
        "workflow_name": record.workflow_name,
        "request": dict(record.request_snapshot),
        "payload": record.payload.to_dict() if record.payload else None,
        "phase": record.state,
        "poll_count": record.poll_count,
        "counts": {
            "completed": record.completed_tasks,
            "failed": record.failed_tasks,
            "running": record.running_tasks,
        },
        "run_status": None,
        "last_error": record.last_error,
        "wake_at": record.wake_at.isoformat() if record.wake_at else None,
        "durable": record.durable,
        "created_at": record.created_at.isoformat(),
    }


def record_from_state(state: OrchestrationState, *, updated_at: datetime) -> ExecutionRecord:
    counts = state.get("counts") or {}
    return ExecutionRecord.model_validate(
        {
            "execution_id": state["execution_id"],
            "workflow_name": state["workflow_name"],
            "state": state.get("phase", "launch"),
            "request_snapshot": state.get("request") or {},
            "payload": state.get("payload"),
            "poll_count": state.get("poll_count", 0),
            "wake_at": state.get("wake_at"),
            "last_error": state.get("last_error"),
            "completed_tasks": counts.get("completed", 0),
            "failed_tasks": counts.get("failed", 0),
            "running_tasks": counts.get("running", 0),
            "durable": state.get("durable", True),
            "created_at": state["created_at"],
            "updated_at": updated_at,
        }
    )


def persist(deps: GraphDependencies, state: OrchestrationState) -> ExecutionRecord:
    """Save the execution record; a failed write is logged and retried on the next node."""
    record = record_from_state(state, updated_at=deps.clock())
    try:
        deps.store.put_execution(record)
    except StoreWriteError as exc:
        logger.warning(
            "orchestrator event=persist_failed execution_id=%s phase=%s error=%s",
            record.execution_id,
            record.state,
            exc,
        )
    return record
