"""Reconstruct the analysis workflow graph from conversation messages.

``build(messages)`` is a pure function of the message list: node ids are
``analysis-<message id>``, edge ids ``<source>-<target>``, timestamps come
from the messages, so rebuilding the same history gives the same graph.

User turns do not become nodes; their text is attached to the next
assistant node as ``user_query``.  Every assistant message with text or
tool calls becomes exactly one ``analysis`` node, linked from the previous
node by a ``parallel`` edge when its annotation says so, else
``sequential``.

Phase resolution per message:
    explicit annotation phase
    > phase inferred from tool names
    > phase inferred from keywords in the text
    > previous phase (starting at "Initial")
"""

from typing import Optional

from agent.messages import Message, is_summary_message, message_text, tool_invocations

from .annotations import extract_artifacts, extract_workflow_tag
from .insights import extract_insight
from .models import WorkflowEdge, WorkflowGraph, WorkflowNode, WorkflowToolCall
from .phases import DEFAULT_PHASE, phase_from_text, phase_from_tools


def _resolve_phase(
    annotated: Optional[str],
    tool_calls: tuple[WorkflowToolCall, ...],
    text: str,
    current: str,
) -> str:
    if annotated:
        return annotated
    return (
        phase_from_tools(t.tool_name for t in tool_calls)
        or phase_from_text(text)
        or current
    )


def build(
    messages: list[Message],
    streaming_message_id: Optional[str] = None,
) -> WorkflowGraph:
    """Build the graph for ``messages`` (see module docstring).

    The node of ``streaming_message_id``, if any, is marked ``in_progress``
    unless one of its tools already failed.
    """
    nodes: list[WorkflowNode] = []
    edges: list[WorkflowEdge] = []
    seen_ids: set[str] = set()

    current_phase = DEFAULT_PHASE
    last_node_id: Optional[str] = None
    last_user_query: Optional[str] = None

    for index, message in enumerate(messages):
        if message.role == "user":
            if not is_summary_message(message):
                last_user_query = message_text(message, sep=" ") or None
            continue
        if message.role != "assistant":
            continue

        text = message_text(message)
        tool_calls = tuple(
            WorkflowToolCall(
                tool_name=r.tool_name, args=r.args, result=r.result, is_error=r.is_error,
            )
            for r in tool_invocations(message, index)
        )
        if not text and not tool_calls:
            continue

        metadata = extract_workflow_tag(text)
        current_phase = _resolve_phase(
            metadata.phase if metadata else None, tool_calls, text, current_phase
        )

        if metadata and metadata.insight:
            insight, source = metadata.insight, "annotation"
        else:
            insight = extract_insight(text, current_phase)
            source = "heuristic" if insight else None

        if any(t.is_error for t in tool_calls):
            status = "error"
        elif message.id == streaming_message_id:
            status = "in_progress"
        else:
            status = "completed"

        node_id = f"analysis-{message.id}"
        if node_id in seen_ids:
            node_id = f"{node_id}-{index}"
        seen_ids.add(node_id)

        nodes.append(WorkflowNode(
            id=node_id,
            type="analysis",
            label=current_phase,
            phase=current_phase,
            message_id=message.id,
            message_index=index,
            status=status,
            user_query=last_user_query,
            tool_calls=tool_calls,
            artifacts=tuple(a.id for a in extract_artifacts(text, message.id)),
            insight=insight,
            insight_source=source,
            response_text=text or None,
            metadata=metadata,
            timestamp=message.created_at,
        ))
        last_user_query = None

        if last_node_id is not None:
            edges.append(WorkflowEdge(
                id=f"{last_node_id}-{node_id}",
                source=last_node_id,
                target=node_id,
                type="parallel" if metadata and metadata.is_parallel else "sequential",
            ))
        last_node_id = node_id

    return WorkflowGraph(nodes=tuple(nodes), edges=tuple(edges))


build_workflow_graph = build
