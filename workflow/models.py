"""Workflow graph data model.

Nodes and edges are frozen; a rebuild always produces a fresh graph.
``to_dict()`` gives the camelCase shape the frontend canvas consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Optional

NODE_TYPES = ("analysis", "visualization", "user_query")
NODE_STATUSES = ("completed", "in_progress", "error")
EDGE_TYPES = ("sequential", "parallel")


@dataclass(frozen=True)
class WorkflowMetadata:
    """Parsed ``[WORKFLOW: ...]`` annotation."""
    is_parallel: bool
    phase: Optional[str] = None
    insight: Optional[str] = None
    description: str = ""

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"isParallel": self.is_parallel, "description": self.description}
        if self.phase is not None:
            d["phase"] = self.phase
        if self.insight is not None:
            d["insight"] = self.insight
        return d


@dataclass(frozen=True)
class WorkflowToolCall:
    tool_name: str
    args: dict
    result: Any = None
    is_error: bool = False

    def to_dict(self) -> dict:
        return {
            "toolName": self.tool_name,
            "args": self.args,
            "result": self.result,
            "isError": self.is_error,
        }


@dataclass(frozen=True)
class WorkflowNode:
    id: str
    type: str
    label: str
    phase: str
    message_id: str
    message_index: int
    status: str = "completed"
    user_query: Optional[str] = None
    tool_calls: tuple[WorkflowToolCall, ...] = ()
    artifacts: tuple[str, ...] = ()
    insight: Optional[str] = None
    insight_source: Optional[str] = None  # "annotation" | "llm" | "heuristic"
    response_text: Optional[str] = None
    metadata: Optional[WorkflowMetadata] = None
    timestamp: Optional[str] = None

    def with_insight(self, insight: Optional[str], source: Optional[str]) -> "WorkflowNode":
        return replace(self, insight=insight, insight_source=source if insight else None)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "phase": self.phase,
            "messageId": self.message_id,
            "messageIndex": self.message_index,
            "status": self.status,
            "toolCalls": [t.to_dict() for t in self.tool_calls],
            "artifacts": list(self.artifacts),
            "timestamp": self.timestamp,
        }
        if self.user_query is not None:
            d["userQuery"] = self.user_query
        if self.insight is not None:
            d["insight"] = self.insight
            d["insightSource"] = self.insight_source
        if self.response_text is not None:
            d["responseText"] = self.response_text
        if self.metadata is not None:
            d["metadata"] = self.metadata.to_dict()
        return d


@dataclass(frozen=True)
class WorkflowEdge:
    id: str
    source: str
    target: str
    type: str = "sequential"
    label: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "source": self.source, "target": self.target, "type": self.type}
        if self.label is not None:
            d["label"] = self.label
        return d


@dataclass(frozen=True)
class WorkflowGraph:
    nodes: tuple[WorkflowNode, ...] = ()
    edges: tuple[WorkflowEdge, ...] = ()

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def validate(self) -> None:
        """Raise ValueError unless every edge joins an earlier node to a later one."""
        order = {n.id: i for i, n in enumerate(self.nodes)}
        for e in self.edges:
            if e.source not in order or e.target not in order:
                raise ValueError(f"Edge {e.id} references a node outside the graph")
            if order[e.source] >= order[e.target]:
                raise ValueError(f"Edge {e.id} does not point forward")

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass(frozen=True)
class Artifact:
    """A fenced visualization code block emitted by the model."""
    id: str
    language: str
    code: str
    message_id: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "language": self.language, "code": self.code,
                "messageId": self.message_id}


@dataclass(frozen=True)
class Plan:
    id: str
    title: str
    content: str
    message_id: str
    message_index: int
    description: Optional[str] = None
    timestamp: Optional[str] = None
    is_streaming: bool = False

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "messageId": self.message_id,
            "messageIndex": self.message_index,
            "timestamp": self.timestamp,
            "isStreaming": self.is_streaming,
        }
        if self.description is not None:
            d["description"] = self.description
        return d


# Graph queries

def nodes_for_phase(graph: WorkflowGraph, phase: str) -> list[WorkflowNode]:
    return [n for n in graph.nodes if n.phase == phase]


def all_phases(graph: WorkflowGraph) -> list[str]:
    """Distinct phases in first-seen order."""
    return list(dict.fromkeys(n.phase for n in graph.nodes))


def nodes_by_type(graph: WorkflowGraph, node_type: str) -> list[WorkflowNode]:
    return [n for n in graph.nodes if n.type == node_type]


def count_artifacts(graph: WorkflowGraph) -> int:
    return sum(len(n.artifacts) for n in graph.nodes)
