"""Poll node: ask the task monitor whether the run has finished."""

from __future__ import annotations

import logging

from fanout_orchestrator.errors import StoreReadError
from fanout_orchestrator.graph.state import GraphDependencies, OrchestrationState, persist
from fanout_orchestrator.schemas import IteratorPayload

logger = logging.getLogger(__name__)


def run(state: OrchestrationState, *, deps: GraphDependencies) -> OrchestrationState:
    payload = IteratorPayload.from_event(state.get("payload"))
    poll_count = int(state.get("poll_count", 0)) + 1

    try:
        outcome = deps.monitor.evaluate(payload)
    except StoreReadError as exc:
        # Not a workflow failure: keep the payload and poll again after the wait.
        logger.warning(
            "orchestrator event=poll_failed execution_id=%s run_id=%s poll_count=%s error=%s",
            state["execution_id"],
            payload.run_id,
            poll_count,
            exc,
        )
        update: OrchestrationState = {
            "payload": payload.model_copy(update={"continue_": True}).to_dict(),
            "phase": "poll",
            "poll_count": poll_count,
            "last_error": f"{type(exc).__name__}: {exc}",
        }
        persist(deps, {**state, **update})
        return update

    update = {
        "payload": outcome.payload.to_dict(),
        "phase": "poll",
        "poll_count": poll_count,
        "counts": {
            "completed": outcome.counts.completed_count,
            "failed": outcome.counts.failed_count,
            "running": outcome.counts.running_count,
        },
        "run_status": outcome.run_status,
        "last_error": None,
    }
    persist(deps, {**state, **update})
    return update


def should_continue(state: OrchestrationState) -> str:
    payload = state.get("payload") or {}
    return "wait" if payload.get("continue", True) else "done"
