import logging
from datetime import timedelta

import pytest

from fanout_orchestrator import orchestrator as orchestrator_module
from fanout_orchestrator.backend.memory import InMemoryExecutionBackend
from fanout_orchestrator.errors import StoreReadError, SubmissionError
from fanout_orchestrator.launcher import TaskLauncher
from fanout_orchestrator.monitor import TaskMonitor
from fanout_orchestrator.orchestrator import Orchestrator
from fanout_orchestrator.storage.memory import InMemoryStatusStore


class FlakyQueryStore(InMemoryStatusStore):
    """Fails the first detail query, then behaves normally."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    def query_details_by_run(self, run_id):
        if self.failures_left:
            self.failures_left -= 1
            raise StoreReadError("detail table unavailable")
        return super().query_details_by_run(run_id)


def _orchestrator(store, backend, clock, *, sleep=None, interval=120.0) -> Orchestrator:
    return Orchestrator(
        store,
        TaskLauncher(store, backend, clock=clock),
        TaskMonitor(store, clock=clock),
        poll_interval_s=interval,
        sleep=sleep or (lambda seconds: None),
        clock=clock,
    )


def test_run_to_completion_polls_until_every_task_is_terminal(
    store, backend, clock, launch_request
):
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        # Each wait lets one more work unit finish.
        sleeps.append(seconds)
        clock.advance(seconds)
        record = store.list_executions()[0]
        pending = [
            detail
            for detail in store.query_details_by_run(record.payload.run_id)
            if detail.status == "Running"
        ]
        status = "Failed" if len(sleeps) == 2 else "Completed"
        store.update_detail(record.payload.run_id, pending[0].task_id, {"status": status})

    orchestrator = _orchestrator(store, backend, clock, sleep=_sleep)

    record = orchestrator.run_to_completion(launch_request)

    assert record.state == "done"
    assert record.poll_count == 4
    assert sleeps == [120.0, 120.0, 120.0]
    assert record.completed_tasks == 2
    assert record.failed_tasks == 1
    assert record.running_tasks == 0
    assert record.wake_at is None
    assert record.payload.continue_ is False

    summary = store.get_summary("nightly-ingest", record.payload.run_id)
    assert summary.status == "Completed"
    assert summary.completed_tasks == 2
    assert summary.failed_tasks == 1
    assert store.get_execution(record.execution_id).state == "done"


def test_durable_execution_suspends_and_resumes(store, backend, clock, launch_request, mark_all):
    orchestrator = _orchestrator(store, backend, clock)

    record = orchestrator.start(launch_request, execution_id="exec-1")

    assert record.state == "wait"
    assert record.poll_count == 1
    assert (record.wake_at - clock.now).total_seconds() == 120.0
    stored = store.get_execution("exec-1")
    assert stored.state == "wait"
    assert stored.wake_at == record.wake_at

    not_due = orchestrator.resume("exec-1")
    assert not_due.state == "wait"
    assert not_due.poll_count == 1

    clock.advance(120)
    mark_all(store, record.payload.run_id, "Completed")

    finished = orchestrator.resume("exec-1")
    assert finished.state == "done"
    assert finished.poll_count == 2
    assert finished.completed_tasks == 3


def test_resume_due_only_picks_waiting_executions_past_wake_time(
    store, backend, clock, launch_request
):
    orchestrator = _orchestrator(store, backend, clock)
    orchestrator.start(launch_request, execution_id="early")
    clock.advance(60)
    orchestrator.start(launch_request, execution_id="late")
    clock.advance(60)

    resumed = orchestrator.resume_due()

    assert [record.execution_id for record in resumed] == ["early"]
    assert resumed[0].poll_count == 2
    assert resumed[0].state == "wait"
    assert store.get_execution("late").poll_count == 1


def test_resume_rejects_unknown_and_finished_executions(store, backend, clock):
    orchestrator = _orchestrator(store, backend, clock)

    with pytest.raises(KeyError):
        orchestrator.resume("missing")

    record = orchestrator.start({"workflow_name": "empty"}, execution_id="empty-run")
    assert record.state == "done"
    with pytest.raises(ValueError):
        orchestrator.resume("empty-run", force=True)


def test_store_read_error_during_poll_is_retried_after_wait(
    backend, clock, launch_request, mark_all
):
    store = FlakyQueryStore()
    orchestrator = _orchestrator(store, backend, clock)

    record = orchestrator.start(launch_request, execution_id="flaky")

    assert record.state == "wait"
    assert record.last_error.startswith("StoreReadError")
    assert record.payload.continue_ is True

    mark_all(store, record.payload.run_id, "Completed")
    clock.advance(120)
    finished = orchestrator.resume("flaky")

    assert finished.state == "done"
    assert finished.last_error is None
    assert finished.completed_tasks == 3


def test_launch_failure_is_recorded_and_raised(store, clock, launch_request):
    backend = InMemoryExecutionBackend(failing_task_names={"partition-a"})
    orchestrator = _orchestrator(store, backend, clock)

    with pytest.raises(SubmissionError):
        orchestrator.start(launch_request, execution_id="broken")

    record = store.get_execution("broken")
    assert record.state == "launch"
    assert record.last_error.startswith("SubmissionError")
    assert record.payload is None


def test_negative_interval_is_rejected(store, backend, clock):
    with pytest.raises(ValueError):
        _orchestrator(store, backend, clock, interval=-1)


class CrashingMonitor(TaskMonitor):
    """Raises an unexpected error on the next evaluation when armed."""

    crash_next = False

    def evaluate(self, payload):
        if self.crash_next:
            self.crash_next = False
            raise RuntimeError("worker lost")
        return super().evaluate(payload)


def test_in_process_execution_is_never_resumed_by_the_scheduler(
    store, backend, clock, launch_request
):
    resumed_by_scheduler: list[str] = []
    holder: dict[str, Orchestrator] = {}

    def _sleep(seconds: float) -> None:
        clock.advance(seconds)
        record = store.list_executions()[0]
        assert record.durable is False
        resumed = holder["orchestrator"].resume_due(clock.now)
        resumed_by_scheduler.extend(item.execution_id for item in resumed)
        with pytest.raises(ValueError, match="in-process"):
            holder["orchestrator"].resume(record.execution_id, force=True)
        for task_id in record.payload.ecs_task_ids:
            store.update_detail(record.payload.run_id, task_id, {"status": "Completed"})

    holder["orchestrator"] = _orchestrator(store, backend, clock, sleep=_sleep)

    record = holder["orchestrator"].run_to_completion(launch_request)

    assert resumed_by_scheduler == []
    assert record.state == "done"
    assert record.poll_count == 2


def test_execution_claimed_by_another_driver_is_left_alone(
    store, backend, clock, launch_request
):
    first = _orchestrator(store, backend, clock)
    second = _orchestrator(store, backend, clock)
    first.start(launch_request, execution_id="shared")
    clock.advance(120)

    claimed = store.claim_execution(
        "shared", now=clock.now, lease_until=clock.now + timedelta(seconds=300)
    )
    assert claimed.state == "poll"

    assert second.resume_due() == []
    untouched = second.resume("shared", force=True)
    assert untouched.state == "poll"
    assert untouched.poll_count == 1
    assert store.claim_execution("shared", now=clock.now, lease_until=clock.now) is None


def test_execution_left_mid_poll_is_resumed_after_its_lease_expires(
    store, backend, clock, launch_request, mark_all
):
    monitor = CrashingMonitor(store, clock=clock)
    orchestrator = Orchestrator(
        store,
        TaskLauncher(store, backend, clock=clock),
        monitor,
        poll_interval_s=120.0,
        lease_s=300.0,
        sleep=lambda seconds: None,
        clock=clock,
    )
    record = orchestrator.start(launch_request, execution_id="crashy")
    clock.advance(120)
    monitor.crash_next = True

    with pytest.raises(RuntimeError, match="worker lost"):
        orchestrator.resume("crashy")

    stranded = store.get_execution("crashy")
    assert stranded.state == "poll"
    assert stranded.wake_at == clock.now + timedelta(seconds=300)
    assert orchestrator.resume_due() == []

    clock.advance(300)
    mark_all(store, record.payload.run_id, "Completed")
    (finished,) = orchestrator.resume_due()

    assert finished.execution_id == "crashy"
    assert finished.state == "done"
    assert finished.poll_count == 2
    assert finished.completed_tasks == 3


def test_in_process_run_restarts_from_saved_record_at_recursion_limit(
    monkeypatch, caplog, store, backend, clock, launch_request
):
    monkeypatch.setattr(orchestrator_module, "GRAPH_RECURSION_LIMIT", 5)
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)
        record = store.list_executions()[0]
        pending = [
            detail
            for detail in store.query_details_by_run(record.payload.run_id)
            if detail.status == "Running"
        ]
        if pending:
            status = "Failed" if len(sleeps) == 2 else "Completed"
            store.update_detail(record.payload.run_id, pending[0].task_id, {"status": status})

    orchestrator = _orchestrator(store, backend, clock, sleep=_sleep)

    with caplog.at_level(logging.INFO, logger="fanout_orchestrator.orchestrator"):
        record = orchestrator.run_to_completion(launch_request)

    assert "event=graph_restarted" in caplog.text
    assert record.state == "done"
    assert record.completed_tasks == 2
    assert record.failed_tasks == 1
    assert store.get_execution(record.execution_id).state == "done"


def test_non_positive_lease_is_rejected(store, backend, clock):
    with pytest.raises(ValueError):
        Orchestrator(
            store,
            TaskLauncher(store, backend, clock=clock),
            TaskMonitor(store, clock=clock),
            lease_s=0,
        )
