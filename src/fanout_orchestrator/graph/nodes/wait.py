"""Wait node: the only suspension point between two polls."""

from __future__ import annotations

import logging
from datetime import timedelta

from fanout_orchestrator.graph.state import GraphDependencies, OrchestrationState, persist

logger = logging.getLogger(__name__)


def run(state: OrchestrationState, *, deps: GraphDependencies) -> OrchestrationState:
    wake_at = deps.clock() + timedelta(seconds=deps.poll_interval_s)
    update: OrchestrationState = {"phase": "wait", "wake_at": wake_at.isoformat()}
    persist(deps, {**state, **update})
    logger.info(
        "orchestrator event=wait execution_id=%s wake_at=%s durable=%s",
        state["execution_id"],
        update["wake_at"],
        deps.durable,
    )
    if not deps.durable:
        deps.sleep(deps.poll_interval_s)
    return update
