"""In-memory status store for tests and local runs."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from fanout_orchestrator.storage.models import ExecutionRecord, RunSummary, TaskDetail


class InMemoryStatusStore:
    """Simple in-memory implementation with the same semantics as the durable stores."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._summaries: dict[tuple[str, int], RunSummary] = {}
        self._details: dict[int, dict[str, TaskDetail]] = {}
        self._executions: dict[str, ExecutionRecord] = {}

    def migrate(self) -> None:
        return None

    def put_summary(self, summary: RunSummary) -> None:
        key = (summary.workflow_name, summary.run_id)
        with self._lock:
            self._summaries[key] = summary.model_copy(deep=True)

    def put_detail(self, detail: TaskDetail) -> None:
        with self._lock:
            self._details.setdefault(detail.run_id, {})[detail.task_id] = detail.model_copy(
                deep=True
            )

    def update_summary(self, workflow_name: str, run_id: int, fields: dict[str, Any]) -> None:
        with self._lock:
            current = self._summaries.get((workflow_name, run_id))
            # Missing summaries are left alone, matching the conditional update in durable stores.
            if current is None:
                return
            self._summaries[(workflow_name, run_id)] = current.model_copy(update=dict(fields))

    def update_detail(self, run_id: int, task_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            rows = self._details.setdefault(run_id, {})
            current = rows.get(task_id) or TaskDetail(run_id=run_id, task_id=task_id)
            rows[task_id] = current.model_copy(update=dict(fields))

    def get_summary(self, workflow_name: str, run_id: int) -> RunSummary | None:
        with self._lock:
            summary = self._summaries.get((workflow_name, run_id))
            return summary.model_copy(deep=True) if summary else None

    def query_details_by_run(self, run_id: int) -> list[TaskDetail]:
        with self._lock:
            rows = self._details.get(run_id, {})
            return [rows[task_id].model_copy(deep=True) for task_id in sorted(rows)]

    def put_execution(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._executions[record.execution_id] = record.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(execution_id)
            return record.model_copy(deep=True) if record else None

    def list_executions(self, *, state: str | None = None) -> list[ExecutionRecord]:
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for record in self._executions.values()
                if state is None or record.state == state
            ]
        return sorted(records, key=lambda item: item.created_at)

    def claim_execution(
        self,
        execution_id: str,
        *,
        now: datetime,
        lease_until: datetime,
        force: bool = False,
    ) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(execution_id)
            if record is None or not record.is_claimable(now, force=force):
                return None
            claimed = record.model_copy(
                update={"state": "poll", "wake_at": lease_until, "updated_at": now}
            )
            self._executions[execution_id] = claimed
            return claimed.model_copy(deep=True)
