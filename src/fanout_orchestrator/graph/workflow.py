"""LangGraph workflow assembly for the launch/poll/wait loop."""

from functools import partial

from langgraph.graph import END, START, StateGraph

from fanout_orchestrator.graph.nodes import finalize, launch, poll, wait
from fanout_orchestrator.graph.state import GraphDependencies, OrchestrationState


def build_graph(deps: GraphDependencies):
    def _entry(state: OrchestrationState) -> str:
        return "launch" if state.get("phase", "launch") == "launch" else "poll"

    def _after_wait(state: OrchestrationState) -> str:
        # Durable executions suspend here and are resumed by the scheduler.
        return "suspend" if deps.durable else "poll"

    graph = StateGraph(OrchestrationState)

    graph.add_node("launch", partial(launch.run, deps=deps))
    graph.add_node("poll", partial(poll.run, deps=deps))
    graph.add_node("wait", partial(wait.run, deps=deps))
    graph.add_node("done", partial(finalize.run, deps=deps))

    graph.add_conditional_edges(START, _entry, {"launch": "launch", "poll": "poll"})
    graph.add_edge("launch", "poll")
    graph.add_conditional_edges("poll", poll.should_continue, {"wait": "wait", "done": "done"})
    graph.add_conditional_edges("wait", _after_wait, {"suspend": END, "poll": "poll"})
    graph.add_edge("done", END)

    return graph.compile()
