"""Conversation message model.

A ``Message`` is an immutable role + ordered tuple of parts.  Parts are a
closed set of frozen dataclasses, one per kind, each carrying only the
fields valid for that kind:

    TextPart        visible model / user text
    ReasoningPart   native reasoning tokens from the provider
    ToolCallPart    a tool invocation requested by the model
    ToolResultPart  the outcome of a tool invocation (possibly an error)

``message_from_dict`` accepts the JSON shapes a chat frontend sends
(``text``, ``reasoning``, ``tool-call``, ``tool-result``, combined
``tool-invocation`` / ``dynamic-tool`` / ``tool-<name>`` parts) and
normalises them into this model.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

logger = logging.getLogger("edachat")

SUMMARY_MARKER = "[Conversation Summary - Previous Context]"


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def compact_json(value: Any) -> str:
    """Serialize without whitespace (matches what the wire format carries)."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def canonical_json(value: Any) -> str:
    """Key-sorted compact serialization; equal values give equal strings."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


# ---------------------------------------------------------------------------
# Parts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ReasoningPart:
    text: str
    type: str = field(default="reasoning", init=False)


@dataclass(frozen=True)
class ToolCallPart:
    tool_call_id: str
    tool_name: Optional[str]
    args: dict = field(default_factory=dict)
    type: str = field(default="tool-call", init=False)


@dataclass(frozen=True)
class ToolResultPart:
    tool_call_id: str
    tool_name: Optional[str]
    result: Any = None
    is_error: bool = False
    type: str = field(default="tool-result", init=False)


Part = Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class Message:
    """One conversation turn. Never mutated once received."""
    id: str
    role: str  # "user" | "assistant"
    parts: tuple = ()
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ToolInvocationRecord:
    """Read-only view pairing a tool call with its result (if any)."""
    tool_name: str
    args: dict
    tool_call_id: str
    message_id: str
    message_index: int
    part_index: int
    result: Any = None
    has_result: bool = False
    is_error: bool = False

    def to_dict(self) -> dict:
        return {
            "toolName": self.tool_name,
            "args": self.args,
            "toolCallId": self.tool_call_id,
            "messageId": self.message_id,
            "messageIndex": self.message_index,
            "partIndex": self.part_index,
            "result": self.result,
            "isError": self.is_error,
        }


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

def message_text(message: Message, sep: str = "\n") -> str:
    """Concatenate every text-bearing part (text and reasoning)."""
    return sep.join(
        p.text for p in message.parts
        if isinstance(p, (TextPart, ReasoningPart)) and p.text
    )


def visible_text(message: Message, sep: str = "\n") -> str:
    """Concatenate only ``TextPart`` text (what the provider streamed as answer)."""
    return sep.join(p.text for p in message.parts if isinstance(p, TextPart) and p.text)


def tool_invocations(
    message: Message, message_index: int = 0
) -> list[ToolInvocationRecord]:
    """Pair tool-call parts with tool-result parts by invocation id.

    A call with no tool name is skipped with a warning; it cannot be
    attributed to a dataset or a phase.
    """
    results: dict[str, ToolResultPart] = {}
    for part in message.parts:
        if isinstance(part, ToolResultPart):
            results[part.tool_call_id] = part

    records: list[ToolInvocationRecord] = []
    for idx, part in enumerate(message.parts):
        if not isinstance(part, ToolCallPart):
            continue
        if not part.tool_name:
            logger.warning(
                f"[DataContext] Skipping tool call without a name "
                f"(message={message.id}, part={idx})"
            )
            continue
        res = results.get(part.tool_call_id)
        records.append(ToolInvocationRecord(
            tool_name=part.tool_name,
            args=dict(part.args or {}),
            tool_call_id=part.tool_call_id,
            message_id=message.id,
            message_index=message_index,
            part_index=idx,
            result=res.result if res is not None else None,
            has_result=res is not None,
            is_error=bool(res.is_error) if res is not None else False,
        ))
    return records


def iter_tool_invocations(messages: list[Message]) -> Iterator[ToolInvocationRecord]:
    """All tool invocations of all assistant messages, in conversation order."""
    for i, msg in enumerate(messages):
        if msg.role != "assistant":
            continue
        yield from tool_invocations(msg, i)


def create_summary_message(summary_text: str) -> Message:
    """Build the synthetic leading message that stands in for older history."""
    digest = hashlib.sha1(summary_text.encode("utf-8")).hexdigest()[:12]
    return Message(
        id=f"summary-{digest}",
        role="user",
        parts=(TextPart(f"{SUMMARY_MARKER}\n\n{summary_text}"),),
    )


def is_summary_message(message: Message) -> bool:
    """True for messages produced by ``create_summary_message``."""
    if message.role != "user" or not message.parts:
        return False
    first = message.parts[0]
    return isinstance(first, TextPart) and first.text.startswith(SUMMARY_MARKER)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

def _error_flag(d: dict) -> bool:
    if d.get("isError") or d.get("is_error"):
        return True
    if d.get("errorText"):
        return True
    return d.get("state") == "output-error"


def _parts_from_dict(raw: dict) -> list[Part]:
    """Normalise one wire part into zero or more model parts."""
    ptype = raw.get("type", "")

    if ptype == "text":
        return [TextPart(raw.get("text", "") or "")]
    if ptype == "reasoning":
        return [ReasoningPart(raw.get("text", raw.get("reasoning", "")) or "")]
    if ptype == "tool-call":
        return [ToolCallPart(
            tool_call_id=raw.get("toolCallId") or raw.get("tool_call_id") or "",
            tool_name=raw.get("toolName") or raw.get("tool_name"),
            args=raw.get("args", raw.get("input")) or {},
        )]
    if ptype == "tool-result":
        return [ToolResultPart(
            tool_call_id=raw.get("toolCallId") or raw.get("tool_call_id") or "",
            tool_name=raw.get("toolName") or raw.get("tool_name"),
            result=raw.get("result", raw.get("output")),
            is_error=_error_flag(raw),
        )]

    # Combined call + result parts
    if ptype == "tool-invocation":
        inv = raw.get("toolInvocation", raw)
    elif ptype == "dynamic-tool" or ptype.startswith("tool-"):
        inv = raw
    else:
        return []  # step markers, sources, files: not part of the model

    call_id = inv.get("toolCallId") or inv.get("tool_call_id") or ""
    name = inv.get("toolName") or inv.get("tool_name")
    if not name and ptype.startswith("tool-") and ptype != "tool-invocation":
        name = ptype[len("tool-"):]
    parts: list[Part] = [ToolCallPart(
        tool_call_id=call_id, tool_name=name,
        args=inv.get("args", inv.get("input")) or {},
    )]
    has_output = any(k in inv for k in ("result", "output", "errorText"))
    if has_output:
        is_error = _error_flag(inv)
        result = inv.get("result", inv.get("output"))
        if result is None and is_error:
            result = {"error": inv.get("errorText", "Tool execution failed")}
        parts.append(ToolResultPart(
            tool_call_id=call_id, tool_name=name, result=result, is_error=is_error,
        ))
    return parts


def message_from_dict(d: dict) -> Message:
    """Build a ``Message`` from its JSON transport shape.

    Plain ``content`` strings are accepted for messages without parts.
    """
    parts: list[Part] = []
    for raw in d.get("parts") or []:
        if isinstance(raw, dict):
            parts.extend(_parts_from_dict(raw))
    if not parts and isinstance(d.get("content"), str) and d["content"]:
        parts.append(TextPart(d["content"]))
    return Message(
        id=str(d.get("id", "")),
        role=d.get("role", "user"),
        parts=tuple(parts),
        created_at=d.get("createdAt") or d.get("created_at"),
    )


def part_to_dict(part: Part) -> dict:
    if isinstance(part, (TextPart, ReasoningPart)):
        return {"type": part.type, "text": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": part.type,
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "args": part.args,
        }
    if isinstance(part, ToolResultPart):
        return {
            "type": part.type,
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "result": part.result,
            "isError": part.is_error,
        }
    raise TypeError(f"Unsupported part type: {type(part)}")


def message_to_dict(message: Message) -> dict:
    d = {
        "id": message.id,
        "role": message.role,
        "parts": [part_to_dict(p) for p in message.parts],
    }
    if message.created_at:
        d["createdAt"] = message.created_at
    return d
