"""Launch node: submit the batch once and move on to polling."""

from __future__ import annotations

import logging
from datetime import timedelta

from fanout_orchestrator.errors import FanoutError
from fanout_orchestrator.graph.state import GraphDependencies, OrchestrationState, persist

logger = logging.getLogger(__name__)


def run(state: OrchestrationState, *, deps: GraphDependencies) -> OrchestrationState:
    try:
        payload = deps.launcher.launch(state.get("request") or {})
    except FanoutError as exc:
        logger.error(
            "orchestrator event=launch_failed execution_id=%s error_type=%s error=%s",
            state["execution_id"],
            type(exc).__name__,
            exc,
        )
        persist(deps, {**state, "phase": "launch", "last_error": f"{type(exc).__name__}: {exc}"})
        raise

    update: OrchestrationState = {
        "payload": payload.to_dict(),
        "phase": "poll",
        # Lease for the first poll; a resumed poll gets a fresh one from the claim.
        "wake_at": (deps.clock() + timedelta(seconds=deps.lease_s)).isoformat(),
        "last_error": None,
        "counts": {"completed": 0, "failed": 0, "running": len(payload.ecs_task_ids)},
    }
    persist(deps, {**state, **update})
    return update
