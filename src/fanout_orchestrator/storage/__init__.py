"""Status store backends and models."""

from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.dynamodb import DynamoDBStatusStore
from fanout_orchestrator.storage.memory import InMemoryStatusStore
from fanout_orchestrator.storage.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    ExecutionRecord,
    RunSummary,
    StatusCounts,
    TaskDetail,
)
from fanout_orchestrator.storage.postgres import PostgresStatusStore

__all__ = [
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_RUNNING",
    "DynamoDBStatusStore",
    "ExecutionRecord",
    "InMemoryStatusStore",
    "PostgresStatusStore",
    "RunSummary",
    "StatusCounts",
    "StatusStore",
    "TaskDetail",
]
