"""Task monitor: aggregate task rows into a continue/done decision."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fanout_orchestrator.clock import utc_now
from fanout_orchestrator.errors import StoreWriteError
from fanout_orchestrator.schemas import IteratorPayload
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    StatusCounts,
    TaskDetail,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    payload: IteratorPayload
    counts: StatusCounts
    run_status: str
    summary_updated: bool

    @property
    def should_continue(self) -> bool:
        return bool(self.payload.continue_)


def classify(
    details: Iterable[TaskDetail], task_ids: Iterable[str] | None = None
) -> StatusCounts:
    """Bucket rows by status; unknown or empty statuses count as running.

    When ``task_ids`` is given only rows for those ids are counted, so the three
    buckets always add up to the submitted batch. Ids with no row yet count as
    running.
    """
    expected = None if task_ids is None else list(task_ids)
    wanted = None if expected is None else set(expected)
    counts = StatusCounts()
    seen: set[str] = set()
    for detail in details:
        if wanted is not None and detail.task_id not in wanted:
            logger.warning(
                "task_monitor event=stray_row run_id=%s task_id=%s status=%s",
                detail.run_id,
                detail.task_id,
                detail.status,
            )
            continue
        if detail.task_id in seen:
            continue
        seen.add(detail.task_id)
        status = (detail.status or "").strip().lower()
        if status == STATUS_COMPLETED.lower():
            counts.completed.append(detail.task_id)
        elif status == STATUS_FAILED.lower():
            counts.failed.append(detail.task_id)
        else:
            counts.running.append(detail.task_id)
    for task_id in expected or ():
        if task_id not in seen:
            seen.add(task_id)
            counts.running.append(task_id)
    return counts


class TaskMonitor:
    """Re-evaluate a run's completion from its persisted task rows.

    Calling ``poll`` repeatedly with unchanged rows yields the same decision and
    counts; the only side effect is rewriting the same summary fields.
    """

    def __init__(
        self,
        store: StatusStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self._clock = clock

    def poll(self, payload: IteratorPayload | dict[str, Any]) -> IteratorPayload:
        return self.evaluate(payload).payload

    def evaluate(self, payload: IteratorPayload | dict[str, Any]) -> PollOutcome:
        if isinstance(payload, IteratorPayload):
            current = payload
        else:
            current = IteratorPayload.from_event(payload)

        # StoreReadError propagates; the orchestrator retries on its next poll.
        details = self.store.query_details_by_run(current.run_id)
        counts = classify(details, current.ecs_task_ids)
        should_continue = counts.completed_count + counts.failed_count < len(current.ecs_task_ids)
        run_status = STATUS_RUNNING if should_continue else STATUS_COMPLETED

        logger.info(
            "task_monitor event=evaluated workflow_name=%s run_id=%s completed=%s failed=%s "
            "running=%s continue=%s",
            current.workflow_name,
            current.run_id,
            counts.completed_count,
            counts.failed_count,
            counts.running_count,
            should_continue,
        )

        summary_updated = True
        try:
            self.store.update_summary(
                current.workflow_name,
                current.run_id,
                {
                    "status": run_status,
                    "update_time": self._clock().isoformat(),
                    **counts.as_summary_fields(),
                },
            )
        except StoreWriteError as exc:
            summary_updated = False
            logger.warning(
                "task_monitor event=summary_update_failed workflow_name=%s run_id=%s error=%s",
                current.workflow_name,
                current.run_id,
                exc,
            )

        return PollOutcome(
            payload=current.model_copy(update={"continue_": should_continue}),
            counts=counts,
            run_status=run_status,
            summary_updated=summary_updated,
        )
