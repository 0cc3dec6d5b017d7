"""Status reporting from inside a running work unit.

A work unit learns its run identity from the container environment written by
the launcher, resolves its own task id from the ECS task metadata endpoint and
reports a terminal status once its business logic finishes.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib import error, request

from fanout_orchestrator.clock import utc_now
from fanout_orchestrator.errors import MalformedInputError, StoreReadError
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    TaskDetail,
)

logger = logging.getLogger(__name__)


def parse_task_arn(metadata: str | Mapping[str, Any]) -> str | None:
    """Return ``TaskARN`` from an ECS task metadata response, or None."""
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            return None
    if not isinstance(metadata, Mapping):
        return None
    task_arn = metadata.get("TaskARN")
    if isinstance(task_arn, str) and task_arn.strip():
        return task_arn.strip()
    return None


def fetch_task_arn(metadata_endpoint: str, *, timeout_s: float = 2.0) -> str | None:
    """Query the ECS task metadata endpoint for this container's task ARN."""
    url = metadata_endpoint.rstrip("/") + "/task"
    try:
        with request.urlopen(url, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except (error.URLError, TimeoutError) as exc:
        logger.warning("task_report event=metadata_unavailable url=%s error=%s", url, exc)
        return None
    return parse_task_arn(body)


@dataclass(frozen=True)
class WorkUnitContext:
    workflow_name: str
    run_id: int
    task_name: str
    source_location: str = ""
    metadata_endpoint: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkUnitContext:
        env = os.environ if environ is None else environ
        missing = [
            name for name in ("workflow_name", "workflow_run_id", "task_name") if not env.get(name)
        ]
        if missing:
            raise MalformedInputError(f"Work unit environment is missing: {missing}")
        try:
            run_id = int(env["workflow_run_id"])
        except ValueError as exc:
            raise MalformedInputError("workflow_run_id must be an integer") from exc
        return cls(
            workflow_name=env["workflow_name"],
            run_id=run_id,
            task_name=env["task_name"],
            source_location=env.get("source_location", ""),
            metadata_endpoint=env.get("ECS_CONTAINER_METADATA_URI_V4")
            or env.get("ECS_CONTAINER_METADATA_URI"),
        )


class TaskStatusReporter:
    """Write a work unit's own status into the task detail table."""

    def __init__(
        self,
        store: StatusStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self._clock = clock

    def mark_running(self, run_id: int, task_id: str, task_name: str) -> datetime:
        started_at = self._clock()
        self.store.put_detail(
            TaskDetail(
                run_id=run_id,
                task_id=task_id,
                task_name=task_name,
                status=STATUS_RUNNING,
                start_time=started_at.isoformat(),
                update_time=started_at.isoformat(),
            )
        )
        return started_at

    def mark_finished(
        self,
        run_id: int,
        task_id: str,
        *,
        succeeded: bool,
        started_at: datetime | None = None,
    ) -> str:
        finished_at = self._clock()
        status = STATUS_COMPLETED if succeeded else STATUS_FAILED
        fields: dict[str, Any] = {"status": status, "update_time": finished_at.isoformat()}
        if started_at is None:
            started_at = self._stored_start(run_id, task_id)
        if started_at is not None:
            elapsed = (finished_at - started_at).total_seconds()
            fields["exec_time_in_seconds"] = max(0, int(elapsed))
        self.store.update_detail(run_id, task_id, fields)
        logger.info(
            "task_report event=finished run_id=%s task_id=%s status=%s exec_time_in_seconds=%s",
            run_id,
            task_id,
            status,
            fields.get("exec_time_in_seconds"),
        )
        return status

    def _stored_start(self, run_id: int, task_id: str) -> datetime | None:
        """Start time of the unit's Running row, when one was written."""
        try:
            details = self.store.query_details_by_run(run_id)
        except StoreReadError as exc:
            logger.warning(
                "task_report event=start_time_unavailable run_id=%s task_id=%s error=%s",
                run_id,
                task_id,
                exc,
            )
            return None
        for detail in details:
            if detail.task_id == task_id and detail.start_time:
                try:
                    return datetime.fromisoformat(detail.start_time)
                except ValueError:
                    return None
        return None
