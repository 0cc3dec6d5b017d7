"""Fan-out task launcher: submit a batch and record its run and task rows."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any

from fanout_orchestrator.backend.base import ExecutionBackend, SubmissionContext
from fanout_orchestrator.clock import utc_now
from fanout_orchestrator.errors import SubmissionError
from fanout_orchestrator.schemas import IteratorPayload, LaunchRequest, parse_launch_request
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import STATUS_RUNNING, RunSummary, TaskDetail

logger = logging.getLogger(__name__)

_run_id_lock = threading.Lock()
_last_run_id = 0


def next_run_id(now: datetime) -> int:
    """Epoch milliseconds, bumped so ids stay strictly increasing within a process."""
    global _last_run_id
    candidate = int(now.timestamp() * 1000)
    with _run_id_lock:
        run_id = max(candidate, _last_run_id + 1)
        _last_run_id = run_id
    return run_id


class TaskLauncher:
    """Submit every work unit of a batch and durably record the run.

    Submissions fan out over a bounded thread pool; results are consumed in
    submission order so ``ecs_task_ids`` keeps the order of ``task_list``.
    The first rejected unit aborts the rest of the batch.
    """

    def __init__(
        self,
        store: StatusStore,
        backend: ExecutionBackend,
        *,
        concurrency: int = 5,
        environment: dict[str, str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.backend = backend
        self.concurrency = concurrency
        self.environment = dict(environment or {})
        self._clock = clock

    def launch(self, request: LaunchRequest | dict[str, Any]) -> IteratorPayload:
        batch = parse_launch_request(request)
        self.backend.check_target(batch.run_target)

        started_at = self._clock()
        run_id = next_run_id(started_at)
        start_time = started_at.isoformat()
        context = SubmissionContext(
            workflow_name=batch.workflow_name,
            run_id=run_id,
            run_target=batch.run_target,
            environment=self.environment,
        )
        logger.info(
            "task_launch event=start workflow_name=%s run_id=%s task_count=%s concurrency=%s",
            batch.workflow_name,
            run_id,
            len(batch.task_list),
            self.concurrency,
        )

        task_ids = self._submit_all(batch, context, start_time)

        self.store.put_summary(
            RunSummary(
                workflow_name=batch.workflow_name,
                run_id=run_id,
                spec_snapshot=batch.model_dump_json(),
                task_count=len(batch.task_list),
                status=STATUS_RUNNING,
                running_tasks=len(task_ids),
                start_time=start_time,
                update_time=start_time,
            )
        )
        logger.info(
            "task_launch event=launched workflow_name=%s run_id=%s submitted=%s",
            batch.workflow_name,
            run_id,
            len(task_ids),
        )
        return IteratorPayload(
            workflow_name=batch.workflow_name,
            run_id=run_id,
            ecs_task_ids=task_ids,
        )

    def _submit_all(
        self,
        batch: LaunchRequest,
        context: SubmissionContext,
        start_time: str,
    ) -> list[str]:
        if not batch.task_list:
            return []

        task_ids: list[str] = []
        failure: SubmissionError | None = None
        workers = min(self.concurrency, len(batch.task_list))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.backend.submit, unit, context) for unit in batch.task_list]
            try:
                for unit, future in zip(batch.task_list, futures):
                    if future.cancelled():
                        continue
                    try:
                        task_id = future.result()
                    except SubmissionError as exc:
                        if failure is None:
                            failure = exc
                            _cancel_pending(futures)
                            logger.warning(
                                "task_launch event=submission_failed workflow_name=%s "
                                "run_id=%s task_name=%s error=%s",
                                context.workflow_name,
                                context.run_id,
                                unit.task_name,
                                exc,
                            )
                        continue
                    self.store.put_detail(
                        TaskDetail(
                            run_id=context.run_id,
                            task_id=task_id,
                            task_name=unit.task_name,
                            status=STATUS_RUNNING,
                            start_time=start_time,
                            update_time=start_time,
                        )
                    )
                    task_ids.append(task_id)
            except BaseException:
                _cancel_pending(futures)
                raise

        if failure is not None:
            raise SubmissionError(
                f"Batch aborted after {len(task_ids)} of {len(batch.task_list)} submissions: "
                f"{failure}",
                task_name=failure.task_name,
                workflow_name=context.workflow_name,
                run_id=context.run_id,
                submitted_task_ids=task_ids,
            ) from failure
        return task_ids


def _cancel_pending(futures: list[Future[str]]) -> None:
    for pending in futures:
        pending.cancel()
