"""In-memory execution backend for tests and local dry runs."""

from __future__ import annotations

import threading
from typing import Any

from fanout_orchestrator.backend.base import SubmissionContext, unit_environment
from fanout_orchestrator.errors import SubmissionError
from fanout_orchestrator.schemas import RunTarget, WorkUnitSpec


class InMemoryExecutionBackend:
    """Records submissions and hands out ARN-like task ids.

    Units whose ``task_name`` is listed in ``failing_task_names`` are rejected
    with ``SubmissionError``.
    """

    def __init__(
        self,
        *,
        failing_task_names: set[str] | None = None,
        arn_prefix: str = "arn:aws:ecs:local:000000000000:task/local",
    ) -> None:
        self.failing_task_names = set(failing_task_names or ())
        self.arn_prefix = arn_prefix
        self.submissions: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._counter = 0

    def check_target(self, run_target: RunTarget) -> None:
        return None

    def submit(self, unit: WorkUnitSpec, context: SubmissionContext) -> str:
        if unit.task_name in self.failing_task_names:
            raise SubmissionError(
                f"Backend rejected task {unit.task_name!r}",
                task_name=unit.task_name,
                workflow_name=context.workflow_name,
                run_id=context.run_id,
            )
        with self._lock:
            self._counter += 1
            task_id = f"{self.arn_prefix}/{context.run_id}-{self._counter:04d}"
            self.submissions.append(
                {
                    "task_id": task_id,
                    "task_name": unit.task_name,
                    "environment": unit_environment(unit, context),
                }
            )
        return task_id
