"""agent/token_counter.py — Character-based token estimation.

Token count = ceil(characters / CHARS_PER_TOKEN).  The estimate is
deliberately coarse and errs high, so history gets summarized before the
model's context overflows rather than after.

Public API:
    count_tokens(text) -> int
    count_message_tokens(message) -> int
    count_messages_tokens(messages) -> int
    count_tool_tokens(schemas) -> int
    context_size(system_prompt, messages, schemas) -> ContextSize
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass

import config

from .messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    compact_json,
)


@dataclass(frozen=True)
class ContextSize:
    system_tokens: int
    message_tokens: int
    tool_tokens: int
    total: int
    exceeds_threshold: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _chars_per_token() -> int:
    return max(1, int(config.CHARS_PER_TOKEN))


def count_tokens(text: str) -> int:
    """Estimate tokens in *text*: ``ceil(len(text) / CHARS_PER_TOKEN)``."""
    if not text:
        return 0
    return math.ceil(len(text) / _chars_per_token())


def _message_chars(message: Message) -> int:
    chars = len(message.role)
    for part in message.parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            chars += len(part.text)
        elif isinstance(part, ToolCallPart):
            chars += len(part.tool_name or "") + len(compact_json(part.args or {}))
        elif isinstance(part, ToolResultPart):
            if part.result is not None:
                chars += len(compact_json(part.result))
    return chars


def count_message_tokens(message: Message) -> int:
    """Estimate tokens for one message (role, text, tool names/args/results)."""
    chars = _message_chars(message)
    return math.ceil(chars / _chars_per_token()) if chars else 0


def count_messages_tokens(messages: list[Message]) -> int:
    """Estimate tokens for a whole message list."""
    return sum(count_message_tokens(m) for m in messages)


def _schema_dict(schema) -> dict:
    if isinstance(schema, dict):
        return {
            "name": schema.get("name", ""),
            "description": schema.get("description", ""),
            "parameters": schema.get("parameters", schema.get("inputSchema", {})),
        }
    return {
        "name": schema.name,
        "description": schema.description,
        "parameters": schema.parameters,
    }


def count_tool_tokens(schemas) -> int:
    """Estimate tokens for a set of tool declarations.

    Accepts a list of ``FunctionSchema`` objects / schema dicts, or a
    mapping of tool name to schema.
    """
    if not schemas:
        return 0
    if isinstance(schemas, dict):
        blob = compact_json({
            name: s if isinstance(s, dict) else _schema_dict(s)
            for name, s in schemas.items()
        })
    else:
        blob = compact_json([_schema_dict(s) for s in schemas])
    return count_tokens(blob)


def context_size(
    system_prompt: str,
    messages: list[Message],
    schemas=None,
    trigger: int | None = None,
) -> ContextSize:
    """Break down the estimated context of a model invocation.

    ``exceeds_threshold`` is ``total > trigger`` (default
    ``config.SUMMARIZATION_TRIGGER``).
    """
    if trigger is None:
        trigger = config.SUMMARIZATION_TRIGGER
    system_tokens = count_tokens(system_prompt)
    message_tokens = count_messages_tokens(messages)
    tool_tokens = count_tool_tokens(schemas)
    total = system_tokens + message_tokens + tool_tokens
    return ContextSize(
        system_tokens=system_tokens,
        message_tokens=message_tokens,
        tool_tokens=tool_tokens,
        total=total,
        exceeds_threshold=total > trigger,
    )
