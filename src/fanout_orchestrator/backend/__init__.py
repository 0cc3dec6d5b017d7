"""Execution backends that run submitted work units."""

from fanout_orchestrator.backend.base import ExecutionBackend, SubmissionContext, unit_environment
from fanout_orchestrator.backend.ecs import EcsExecutionBackend
from fanout_orchestrator.backend.memory import InMemoryExecutionBackend

__all__ = [
    "EcsExecutionBackend",
    "ExecutionBackend",
    "InMemoryExecutionBackend",
    "SubmissionContext",
    "unit_environment",
]
