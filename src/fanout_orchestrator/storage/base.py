"""Storage interfaces for run summaries, task details and orchestrator state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from fanout_orchestrator.storage.models import ExecutionRecord, RunSummary, TaskDetail


class StatusStore(Protocol):
    def migrate(self) -> None: ...

    def put_summary(self, summary: RunSummary) -> None: ...

    def put_detail(self, detail: TaskDetail) -> None: ...

    def update_summary(self, workflow_name: str, run_id: int, fields: dict[str, Any]) -> None: ...

    def update_detail(self, run_id: int, task_id: str, fields: dict[str, Any]) -> None: ...

    def get_summary(self, workflow_name: str, run_id: int) -> RunSummary | None: ...

    def query_details_by_run(self, run_id: int) -> list[TaskDetail]: ...

    def put_execution(self, record: ExecutionRecord) -> None: ...

    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def list_executions(self, *, state: str | None = None) -> list[ExecutionRecord]: ...

    def claim_execution(
        self,
        execution_id: str,
        *,
        now: datetime,
        lease_until: datetime,
        force: bool = False,
    ) -> ExecutionRecord | None:
        """Atomically move a claimable execution to ``poll`` with a lease.

        Returns the claimed record, or None when the execution is missing or
        another driver holds it.
        """
        ...
