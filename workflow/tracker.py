"""Last known complete workflow graph per conversation.

Rebuilds race when new streaming content arrives while an older rebuild
is still running.  Each rebuild takes a signature of its message snapshot
with ``begin()``; ``commit()`` keeps the graph only if no newer snapshot
began since, so the latest snapshot always wins.

LLM-derived insights arrive separately (fan-out, any order) and are merged
by node id.  ``graph()`` applies the insight precedence:
annotation > LLM > heuristic > none.
"""

import hashlib
import threading
from dataclasses import replace
from typing import Optional

from agent.messages import Message, canonical_json, message_to_dict

from .builder import build
from .models import WorkflowGraph


def message_signature(messages: list[Message]) -> str:
    """Content hash of a message snapshot."""
    blob = canonical_json([message_to_dict(m) for m in messages])
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def apply_insights(graph: WorkflowGraph, llm_insights: dict[str, str]) -> WorkflowGraph:
    """Overlay LLM insights on every node whose insight is not annotated."""
    if not llm_insights:
        return graph
    nodes = []
    for node in graph.nodes:
        llm = llm_insights.get(node.id)
        if llm and node.insight_source != "annotation":
            node = node.with_insight(llm, "llm")
        nodes.append(node)
    return replace(graph, nodes=tuple(nodes))


class WorkflowTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._latest_signature: Optional[str] = None
        self._graph: WorkflowGraph = WorkflowGraph()
        self._graph_signature: Optional[str] = None
        self._llm_insights: dict[str, str] = {}

    def begin(self, messages: list[Message]) -> str:
        """Register a new snapshot; older in-flight rebuilds become stale."""
        signature = message_signature(messages)
        with self._lock:
            self._latest_signature = signature
        return signature

    def commit(self, signature: str, graph: WorkflowGraph) -> bool:
        """Store ``graph`` unless a newer snapshot began. Returns whether kept."""
        with self._lock:
            if signature != self._latest_signature:
                return False
            self._graph = graph
            self._graph_signature = signature
            return True

    def update(self, messages: list[Message], streaming: bool = False) -> WorkflowGraph:
        """Rebuild from ``messages``; while streaming return the last complete graph."""
        if streaming:
            return self.graph()
        signature = self.begin(messages)
        self.commit(signature, build(messages))
        return self.graph()

    def merge_insights(self, insights: dict[str, Optional[str]]) -> None:
        with self._lock:
            self._llm_insights.update({k: v for k, v in insights.items() if v})

    def graph(self) -> WorkflowGraph:
        with self._lock:
            graph, insights = self._graph, dict(self._llm_insights)
        return apply_insights(graph, insights)

    @property
    def signature(self) -> Optional[str]:
        return self._graph_signature


_trackers: dict[str, WorkflowTracker] = {}
_trackers_lock = threading.Lock()


def get_workflow_tracker(conversation_id: str = "default") -> WorkflowTracker:
    with _trackers_lock:
        tracker = _trackers.get(conversation_id)
        if tracker is None:
            tracker = _trackers[conversation_id] = WorkflowTracker()
        return tracker


def reset_workflow_trackers() -> None:
    with _trackers_lock:
        _trackers.clear()
