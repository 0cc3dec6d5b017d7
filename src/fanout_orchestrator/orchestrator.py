"""Orchestrator facade: start, resume and drive launch-and-monitor executions."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from langgraph.errors import GraphRecursionError

from fanout_orchestrator.clock import utc_now
from fanout_orchestrator.graph.state import (
    GraphDependencies,
    record_from_state,
    state_from_record,
)
from fanout_orchestrator.graph.workflow import build_graph
from fanout_orchestrator.launcher import TaskLauncher
from fanout_orchestrator.monitor import TaskMonitor
from fanout_orchestrator.schemas import LaunchRequest, parse_launch_request
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import ExecutionRecord

logger = logging.getLogger(__name__)

# Each poll/wait round trip is two graph steps. An in-process run that hits the
# limit is restarted from its last saved record, so this only bounds one invoke.
GRAPH_RECURSION_LIMIT = 10_000


class Orchestrator:
    """Drive one batch through Launch, Poll and Wait until Done.

    Durable executions stop after every Wait with ``wake_at`` persisted and are
    picked up again by ``resume``/``resume_due``. Picking one up is a conditional
    write in the store that moves it to ``poll`` with a lease of ``lease_s``, so
    only one driver polls a run at a time and a driver that dies mid-poll only
    blocks the execution until the lease runs out. In-process executions sleep
    ``poll_interval_s`` inside the graph and are never resumed by a scheduler.
    """

    def __init__(
        self,
        store: StatusStore,
        launcher: TaskLauncher,
        monitor: TaskMonitor,
        *,
        poll_interval_s: float = 120.0,
        lease_s: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if poll_interval_s < 0:
            raise ValueError("poll_interval_s must be >= 0")
        if lease_s <= 0:
            raise ValueError("lease_s must be > 0")
        self.store = store
        self.launcher = launcher
        self.monitor = monitor
        self.poll_interval_s = poll_interval_s
        self.lease_s = lease_s
        self._clock = clock
        self._graphs = {
            durable: build_graph(
                GraphDependencies(
                    store=store,
                    launcher=launcher,
                    monitor=monitor,
                    poll_interval_s=poll_interval_s,
                    lease_s=lease_s,
                    durable=durable,
                    sleep=sleep,
                    clock=clock,
                )
            )
            for durable in (True, False)
        }

    def start(
        self,
        request: LaunchRequest | dict[str, Any],
        *,
        execution_id: str | None = None,
        durable: bool = True,
    ) -> ExecutionRecord:
        batch = parse_launch_request(request)
        now = self._clock()
        record = ExecutionRecord(
            execution_id=execution_id or uuid.uuid4().hex,
            workflow_name=batch.workflow_name,
            state="launch",
            request_snapshot=batch.model_dump(mode="json"),
            durable=durable,
            created_at=now,
            updated_at=now,
        )
        # The initial record must exist before anything is submitted.
        self.store.put_execution(record)
        logger.info(
            "orchestrator event=start execution_id=%s workflow_name=%s durable=%s",
            record.execution_id,
            record.workflow_name,
            durable,
        )
        return self._invoke(record, durable=durable)

    def run_to_completion(self, request: LaunchRequest | dict[str, Any]) -> ExecutionRecord:
        return self.start(request, durable=False)

    def resume(self, execution_id: str, *, force: bool = False) -> ExecutionRecord:
        """Run one more poll for a durable execution that is due.

        A waiting execution is due once ``wake_at`` has passed (or at once with
        ``force``); a polling one is due when its claim lease has expired. When
        another driver holds the execution the stored record is returned as is.
        """
        record = self.store.get_execution(execution_id)
        if record is None:
            raise KeyError(f"Execution {execution_id} does not exist")
        if not record.durable:
            raise ValueError(f"Execution {execution_id} runs in-process and cannot be resumed")
        if record.state not in ("wait", "poll"):
            raise ValueError(
                f"Execution {execution_id} is in state {record.state!r}, not 'wait' or 'poll'"
            )
        resumed = self._claim_and_invoke(execution_id, now=self._clock(), force=force)
        if resumed is not None:
            return resumed
        return self.store.get_execution(execution_id) or record

    def resume_due(self, now: datetime | None = None) -> list[ExecutionRecord]:
        current = now or self._clock()
        candidates = [
            *self.store.list_executions(state="wait"),
            *self.store.list_executions(state="poll"),
        ]
        resumed: list[ExecutionRecord] = []
        for record in sorted(candidates, key=lambda item: item.created_at):
            if not record.is_claimable(current):
                continue
            result = self._claim_and_invoke(record.execution_id, now=current, force=False)
            if result is not None:
                resumed.append(result)
        return resumed

    def _claim_and_invoke(
        self, execution_id: str, *, now: datetime, force: bool
    ) -> ExecutionRecord | None:
        claimed = self.store.claim_execution(
            execution_id,
            now=now,
            lease_until=now + timedelta(seconds=self.lease_s),
            force=force,
        )
        if claimed is None:
            logger.info("orchestrator event=resume_skipped execution_id=%s", execution_id)
            return None
        logger.info(
            "orchestrator event=resume execution_id=%s poll_count=%s lease_until=%s",
            execution_id,
            claimed.poll_count,
            claimed.wake_at.isoformat() if claimed.wake_at else None,
        )
        return self._invoke(claimed, durable=True)

    def _invoke(self, record: ExecutionRecord, *, durable: bool) -> ExecutionRecord:
        state = state_from_record(record)
        while True:
            try:
                final = self._graphs[durable].invoke(
                    state,
                    config={"recursion_limit": GRAPH_RECURSION_LIMIT},
                )
                break
            except GraphRecursionError:
                # Every node persists, so carry on from the last saved poll.
                saved = self.store.get_execution(record.execution_id)
                if saved is None or saved.state not in ("poll", "wait"):
                    raise
                if saved.poll_count <= state.get("poll_count", 0):
                    raise
                logger.info(
                    "orchestrator event=graph_restarted execution_id=%s poll_count=%s",
                    saved.execution_id,
                    saved.poll_count,
                )
                state = state_from_record(saved)
        result = record_from_state(final, updated_at=self._clock())
        logger.info(
            "orchestrator event=invoked execution_id=%s state=%s poll_count=%s",
            result.execution_id,
            result.state,
            result.poll_count,
        )
        return result
