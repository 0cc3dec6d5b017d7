from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from fanout_orchestrator.backend.memory import InMemoryExecutionBackend
from fanout_orchestrator.storage.memory import InMemoryStatusStore


class FakeClock:
    """Deterministic clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def backend() -> InMemoryExecutionBackend:
    return InMemoryExecutionBackend()


@pytest.fixture
def launch_request() -> dict[str, Any]:
    return {
        "workflow_name": "nightly-ingest",
        "run_target": {
            "cluster_name": "batch-cluster",
            "task_definition": "ingest-task:3",
            "container_name": "ingest",
            "subnet_ids": ["subnet-a", "subnet-b"],
            "security_group_ids": ["sg-1"],
        },
        "task_list": [
            {"task_name": "partition-a", "source_location": "s3://bucket/a.csv"},
            {"task_name": "partition-b", "source_location": "s3://bucket/b.csv"},
            {"task_name": "partition-c", "source_location": "s3://bucket/c.csv"},
        ],
    }


@pytest.fixture
def mark_all():
    def _mark(store: InMemoryStatusStore, run_id: int, status: str) -> None:
        for detail in store.query_details_by_run(run_id):
            store.update_detail(run_id, detail.task_id, {"status": status})

    return _mark
