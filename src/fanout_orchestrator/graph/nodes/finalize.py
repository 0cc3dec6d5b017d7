"""Done node: record the terminal run summary counts."""

from __future__ import annotations

import logging

from fanout_orchestrator.graph.state import GraphDependencies, OrchestrationState, persist

logger = logging.getLogger(__name__)


def run(state: OrchestrationState, *, deps: GraphDependencies) -> OrchestrationState:
    counts = state.get("counts") or {}
    update: OrchestrationState = {"phase": "done", "wake_at": None}
    persist(deps, {**state, **update})
    # All-failed batches still end here; callers compare failed_tasks with task_count.
    logger.info(
        "orchestrator event=done execution_id=%s completed=%s failed=%s running=%s",
        state["execution_id"],
        counts.get("completed", 0),
        counts.get("failed", 0),
        counts.get("running", 0),
    )
    return update
