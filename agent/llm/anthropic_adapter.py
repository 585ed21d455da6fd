"""Anthropic adapter — wraps the ``anthropic`` SDK for Claude models.

This is the **only** module that imports the ``anthropic`` package.

Key Anthropic API differences from OpenAI:
- System prompt is a separate ``system`` parameter, not a message.
- Strict user/assistant alternation required — consecutive same-role messages
  must be merged.
- Tool results are sent inside a ``user`` message with ``tool_result`` blocks,
  and every ``tool_use`` block must be answered by one.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from typing import Any

import anthropic

from ..messages import Message, TextPart, ToolCallPart, ToolResultPart, visible_text
from .base import (
    ChatSession,
    FunctionSchema,
    LLMAdapter,
    LLMResponse,
    ToolCall,
    UsageMetadata,
)

logger = logging.getLogger("edachat")

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool-calls",
    "max_tokens": "length",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_tools(
    schemas: list[FunctionSchema] | None, *, cache_tools: bool = False
) -> list[dict] | None:
    """Convert FunctionSchema list to Anthropic tool format."""
    if not schemas:
        return None
    tools = [
        {
            "name": s.name,
            "description": s.description,
            "input_schema": s.parameters or {"type": "object", "properties": {}},
        }
        for s in schemas
    ]
    if cache_tools and tools:
        tools[-1]["cache_control"] = {"type": "ephemeral"}
    return tools


def _build_system_with_cache(system_prompt: str) -> list[dict]:
    """Build system prompt as cached content blocks for Anthropic."""
    if not system_prompt:
        return []
    return [
        {
            "type": "text",
            "text": system_prompt,
            "cache_control": {"type": "ephemeral"},
        }
    ]


def _usage_from(raw_usage) -> UsageMetadata:
    if not raw_usage:
        return UsageMetadata()
    cache_read = getattr(raw_usage, "cache_read_input_tokens", 0) or 0
    cache_write = getattr(raw_usage, "cache_creation_input_tokens", 0) or 0
    usage = UsageMetadata(
        input_tokens=getattr(raw_usage, "input_tokens", 0) or 0,
        output_tokens=getattr(raw_usage, "output_tokens", 0) or 0,
        cached_tokens=cache_read,
    )
    if cache_read or cache_write:
        logger.debug(
            "Anthropic cache: read=%d write=%d input=%d",
            cache_read,
            cache_write,
            usage.input_tokens,
        )
    return usage


def _parse_response(raw) -> LLMResponse:
    """Parse an Anthropic Messages response into a provider-agnostic LLMResponse."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    thoughts: list[str] = []

    for block in raw.content:
        if block.type == "text":
            text_parts.append(block.text)
        elif block.type == "tool_use":
            tool_calls.append(
                ToolCall(
                    name=block.name,
                    args=block.input if isinstance(block.input, dict) else {},
                    id=block.id,
                )
            )
        elif block.type == "thinking":
            thinking_text = getattr(block, "thinking", None)
            if thinking_text:
                thoughts.append(thinking_text)

    return LLMResponse(
        text="\n".join(text_parts) if text_parts else "",
        tool_calls=tool_calls,
        usage=_usage_from(raw.usage),
        thoughts=thoughts,
        finish_reason=_STOP_REASONS.get(getattr(raw, "stop_reason", None), "other"),
        raw=raw,
    )


def _ensure_alternation(messages: list[dict]) -> list[dict]:
    """Merge consecutive same-role messages to satisfy Anthropic's alternation rule."""
    if not messages:
        return messages

    merged: list[dict] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            prev = merged[-1]
            prev_content = prev.get("content", "")
            new_content = msg.get("content", "")

            # Normalize to list form for merging
            if isinstance(prev_content, str):
                prev_list = (
                    [{"type": "text", "text": prev_content}] if prev_content else []
                )
            else:
                prev_list = list(prev_content)

            if isinstance(new_content, str):
                new_list = (
                    [{"type": "text", "text": new_content}] if new_content else []
                )
            else:
                new_list = list(new_content)

            prev["content"] = prev_list + new_list
        else:
            merged.append(dict(msg))

    return merged


def _response_to_messages(raw) -> list[dict]:
    """Convert an Anthropic response into message dicts for the history."""
    result: dict[str, Any] = {"role": "assistant", "content": []}

    for block in raw.content:
        if block.type == "text":
            result["content"].append({"type": "text", "text": block.text})
        elif block.type == "tool_use":
            result["content"].append(
                {
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input if isinstance(block.input, dict) else {},
                }
            )

    if not result["content"]:
        result["content"] = [{"type": "text", "text": ""}]

    return [result]


def _tool_result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def convert_messages(messages: list[Message]) -> list[dict]:
    """Convert conversation messages into Anthropic message dicts.

    Assistant messages are split at step boundaries: text arriving after
    a tool result starts a new assistant turn, with the results sent in
    between as a ``user`` message.  Tool calls without a result (and
    results without a call) are dropped since Anthropic rejects them.
    """
    out: list[dict] = []
    for msg in messages:
        if msg.role != "assistant":
            out.append({"role": "user", "content": visible_text(msg) or "(empty)"})
            continue

        call_ids = {p.tool_call_id for p in msg.parts if isinstance(p, ToolCallPart)}
        result_ids = {p.tool_call_id for p in msg.parts if isinstance(p, ToolResultPart)}
        blocks: list[dict] = []
        pending: list[dict] = []

        def _flush():
            if blocks:
                out.append({"role": "assistant", "content": list(blocks)})
            if pending:
                out.append({"role": "user", "content": list(pending)})
            blocks.clear()
            pending.clear()

        for part in msg.parts:
            if isinstance(part, TextPart):
                if not part.text:
                    continue
                if pending:
                    _flush()
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolCallPart):
                if part.tool_name and part.tool_call_id in result_ids:
                    blocks.append({
                        "type": "tool_use",
                        "id": part.tool_call_id,
                        "name": part.tool_name,
                        "input": part.args or {},
                    })
            elif isinstance(part, ToolResultPart):
                if part.tool_call_id in call_ids:
                    block = {
                        "type": "tool_result",
                        "tool_use_id": part.tool_call_id,
                        "content": _tool_result_content(part.result),
                    }
                    if part.is_error:
                        block["is_error"] = True
                    pending.append(block)
        _flush()
    return _ensure_alternation(out)


# ---------------------------------------------------------------------------
# AnthropicChatSession
# ---------------------------------------------------------------------------


class AnthropicChatSession(ChatSession):
    """Client-managed chat session for the Anthropic Messages API.

    Maintains a message list and ensures strict user/assistant alternation.
    """

    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str,
        system_prompt: str | list[dict],
        messages: list[dict],
        tools: list[dict] | None,
        max_tokens: int,
    ):
        self._client = client
        self._model = model
        self._system = system_prompt
        self._messages = messages
        self._tools = tools
        self._max_tokens = max_tokens

    def _build_request_kwargs(self, messages: list[dict]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
        }
        if self._system:
            kwargs["system"] = self._system
        if self._tools:
            kwargs["tools"] = self._tools
        return kwargs

    def _append_message(self, message) -> None:
        if isinstance(message, str):
            self._messages.append({"role": "user", "content": message})
        elif isinstance(message, dict):
            self._messages.append(message)
        elif isinstance(message, list):
            self._messages.append({"role": "user", "content": message})
        else:
            raise TypeError(f"Unsupported message type: {type(message)}")

    def send(self, message) -> LLMResponse:
        """Send a user message (str) or tool results (list of dicts)."""
        self._append_message(message)
        kwargs = self._build_request_kwargs(_ensure_alternation(self._messages))

        raw = self._client.messages.create(**kwargs)
        self._messages.extend(_response_to_messages(raw))
        return _parse_response(raw)

    def send_stream(
        self,
        message,
        on_chunk: Callable[[str], None] | None = None,
    ) -> LLMResponse:
        self._append_message(message)
        kwargs = self._build_request_kwargs(_ensure_alternation(self._messages))

        text_parts, tool_calls, thoughts = [], [], []
        _pending_tool = None

        with self._client.messages.stream(**kwargs) as stream:
            for event in stream:
                etype = getattr(event, "type", None)
                if etype == "content_block_start":
                    block = getattr(event, "content_block", None)
                    if block and getattr(block, "type", None) == "tool_use":
                        _pending_tool = {
                            "id": block.id,
                            "name": block.name,
                            "args_json": "",
                        }
                elif etype == "content_block_delta":
                    delta = getattr(event, "delta", None)
                    if delta is None:
                        continue
                    dtype = getattr(delta, "type", None)
                    if dtype == "text_delta":
                        t = getattr(delta, "text", "")
                        if t:
                            text_parts.append(t)
                            if on_chunk:
                                on_chunk(t)
                    elif dtype == "thinking_delta":
                        t = getattr(delta, "thinking", "")
                        if t:
                            thoughts.append(t)
                    elif dtype == "input_json_delta":
                        partial = getattr(delta, "partial_json", "")
                        if partial and _pending_tool is not None:
                            _pending_tool["args_json"] += partial
                elif etype == "content_block_stop":
                    if _pending_tool is not None:
                        try:
                            args = (
                                json.loads(_pending_tool["args_json"])
                                if _pending_tool["args_json"]
                                else {}
                            )
                        except json.JSONDecodeError:
                            args = {}
                        tool_calls.append(
                            ToolCall(
                                name=_pending_tool["name"],
                                args=args,
                                id=_pending_tool["id"],
                            )
                        )
                        _pending_tool = None

            final_message = stream.get_final_message()

        if final_message:
            self._messages.extend(_response_to_messages(final_message))

        return LLMResponse(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage=_usage_from(final_message.usage if final_message else None),
            thoughts=thoughts,
            finish_reason=_STOP_REASONS.get(
                getattr(final_message, "stop_reason", None), "other"
            ),
            raw=final_message,
        )

    def get_history(self) -> list[dict]:
        """Return the message list."""
        return list(self._messages)


# ---------------------------------------------------------------------------
# AnthropicAdapter
# ---------------------------------------------------------------------------


class AnthropicAdapter(LLMAdapter):
    """Adapter that wraps the ``anthropic`` SDK for Claude models."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout_ms: int = 300_000,
    ):
        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "timeout": timeout_ms / 1000.0,
        }
        if base_url:
            kwargs["base_url"] = base_url
        self._client = anthropic.Anthropic(**kwargs)

    # -- LLMAdapter interface --------------------------------------------------

    def create_chat(
        self,
        model: str,
        system_prompt: str,
        tools: list[FunctionSchema] | None = None,
        *,
        history: list[dict] | None = None,
        max_output_tokens: int | None = None,
    ) -> AnthropicChatSession:
        return AnthropicChatSession(
            client=self._client,
            model=model,
            system_prompt=_build_system_with_cache(system_prompt),
            messages=list(history or []),
            tools=_build_tools(tools, cache_tools=True),
            max_tokens=max_output_tokens or 8192,
        )

    def generate(
        self,
        model: str,
        contents: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": contents}],
            "max_tokens": max_output_tokens or 8192,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if temperature is not None:
            kwargs["temperature"] = temperature

        raw = self._client.messages.create(**kwargs)
        return _parse_response(raw)

    def make_tool_result_message(
        self, tool_name: str, result: Any, *, tool_call_id: str | None = None,
        is_error: bool = False,
    ) -> dict:
        """Build an Anthropic tool_result content block.

        Returns a dict that gets collected into a list and wrapped in a
        ``{"role": "user", "content": [...]}`` message by the session.
        """
        block = {
            "type": "tool_result",
            "tool_use_id": tool_call_id or f"toolu_{uuid.uuid4().hex[:24]}",
            "content": _tool_result_content(result),
        }
        if is_error:
            block["is_error"] = True
        return block

    def convert_history(self, messages: list[Message]) -> list[dict]:
        return convert_messages(messages)

    def is_quota_error(self, exc: Exception) -> bool:
        """Check if the exception is an Anthropic rate-limit error."""
        return isinstance(exc, anthropic.RateLimitError)

    @property
    def client(self):
        """Escape hatch — the underlying ``anthropic.Anthropic`` client."""
        return self._client
