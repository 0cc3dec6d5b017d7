"""Execution backend interface for submitting work units."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from fanout_orchestrator.schemas import RunTarget, WorkUnitSpec


@dataclass(frozen=True)
class SubmissionContext:
    workflow_name: str
    run_id: int
    run_target: RunTarget
    environment: dict[str, str] = field(default_factory=dict)


class ExecutionBackend(Protocol):
    def check_target(self, run_target: RunTarget) -> None: ...

    def submit(self, unit: WorkUnitSpec, context: SubmissionContext) -> str: ...


def unit_environment(unit: WorkUnitSpec, context: SubmissionContext) -> dict[str, str]:
    """Environment handed to one work unit so it can report its own status."""
    environment = dict(context.environment)
    environment.update(
        {
            "workflow_name": context.workflow_name,
            "workflow_run_id": str(context.run_id),
            "task_name": unit.task_name,
            "source_location": unit.source_location,
        }
    )
    environment.update(unit.transform_params)
    environment.update(context.run_target.resource_overrides)
    return environment
