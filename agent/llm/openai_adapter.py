"""OpenAI adapter — wraps the ``openai`` SDK for OpenAI and compatible APIs.

Uses the ``/chat/completions`` endpoint, so any OpenAI-compatible provider
(DeepSeek, Qwen, Groq, Ollama, vLLM, ...) works through ``base_url``.

This is the **only** module that imports the ``openai`` package.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import openai

from ..messages import Message, TextPart, ToolCallPart, ToolResultPart, visible_text
from .base import (
    ChatSession,
    FunctionSchema,
    LLMAdapter,
    LLMResponse,
    ToolCall,
    UsageMetadata,
)

_FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_tools(schemas: list[FunctionSchema] | None) -> list[dict] | None:
    """Convert FunctionSchema list to OpenAI tool format."""
    if not schemas:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": s.name,
                "description": s.description,
                "parameters": s.parameters or {"type": "object", "properties": {}},
            },
        }
        for s in schemas
    ]


def _parse_tool_calls(raw_tool_calls) -> list[ToolCall]:
    """Parse OpenAI tool calls into our ToolCall dataclass."""
    if not raw_tool_calls:
        return []
    result = []
    for tc in raw_tool_calls:
        try:
            args = json.loads(tc.function.arguments) if tc.function.arguments else {}
        except (json.JSONDecodeError, TypeError):
            args = {}
        result.append(ToolCall(name=tc.function.name, args=args, id=tc.id))
    return result


def _usage_from(raw_usage) -> UsageMetadata:
    if not raw_usage:
        return UsageMetadata()
    cached = getattr(raw_usage, "prompt_tokens_details", None)
    cached_tokens = getattr(cached, "cached_tokens", 0) if cached else 0
    return UsageMetadata(
        input_tokens=raw_usage.prompt_tokens or 0,
        output_tokens=raw_usage.completion_tokens or 0,
        cached_tokens=cached_tokens or 0,
    )


def _parse_response(raw) -> LLMResponse:
    """Parse a raw OpenAI ChatCompletion into a provider-agnostic LLMResponse."""
    if not raw.choices:
        return LLMResponse(raw=raw)

    choice = raw.choices[0]
    message = choice.message

    thoughts: list[str] = []
    reasoning = getattr(message, "reasoning_content", None)
    if reasoning:
        thoughts.append(reasoning)

    return LLMResponse(
        text=message.content or "",
        tool_calls=_parse_tool_calls(message.tool_calls),
        usage=_usage_from(raw.usage),
        thoughts=thoughts,
        finish_reason=_FINISH_REASONS.get(choice.finish_reason, "other"),
        raw=raw,
    )


def _tool_result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def _assistant_message(text: str, tool_calls: list[dict]) -> dict:
    msg: dict[str, Any] = {"role": "assistant", "content": text or ""}
    if tool_calls:
        msg["tool_calls"] = tool_calls
        if not text:
            msg["content"] = None
    return msg


def convert_messages(messages: list[Message]) -> list[dict]:
    """Convert conversation messages into Chat Completions message dicts.

    Each assistant step becomes an assistant message (text + tool_calls)
    followed by one ``tool`` message per result.  Calls without a result
    are dropped; the API rejects unanswered tool calls.
    """
    out: list[dict] = []
    for msg in messages:
        if msg.role != "assistant":
            out.append({"role": "user", "content": visible_text(msg) or "(empty)"})
            continue

        result_ids = {p.tool_call_id for p in msg.parts if isinstance(p, ToolResultPart)}
        call_ids = {p.tool_call_id for p in msg.parts if isinstance(p, ToolCallPart)}
        text_chunks: list[str] = []
        calls: list[dict] = []
        results: list[dict] = []

        def _flush():
            if text_chunks or calls:
                out.append(_assistant_message("\n".join(text_chunks), list(calls)))
            out.extend(results)
            text_chunks.clear()
            calls.clear()
            results.clear()

        for part in msg.parts:
            if isinstance(part, TextPart):
                if not part.text:
                    continue
                if results:
                    _flush()
                text_chunks.append(part.text)
            elif isinstance(part, ToolCallPart):
                if part.tool_name and part.tool_call_id in result_ids:
                    calls.append({
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": part.tool_name,
                            "arguments": json.dumps(part.args or {}, default=str),
                        },
                    })
            elif isinstance(part, ToolResultPart):
                if part.tool_call_id in call_ids:
                    results.append({
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "content": _tool_result_content(part.result),
                    })
        _flush()
    return out


# ---------------------------------------------------------------------------
# OpenAIChatSession
# ---------------------------------------------------------------------------


class OpenAIChatSession(ChatSession):
    """Client-managed chat session for OpenAI-compatible APIs.

    The client maintains and sends the full message list on every request.
    """

    def __init__(
        self,
        client: openai.OpenAI,
        model: str,
        messages: list[dict],
        tools: list[dict] | None,
        extra_kwargs: dict,
    ):
        self._client = client
        self._model = model
        self._messages = messages
        self._tools = tools
        self._extra_kwargs = extra_kwargs

    def _append_message(self, message) -> None:
        if isinstance(message, str):
            self._messages.append({"role": "user", "content": message})
        elif isinstance(message, dict):
            self._messages.append(message)
        elif isinstance(message, list):
            # Tool results: the assistant message carrying the matching
            # tool_calls was appended when the previous response arrived.
            self._messages.extend(message)
        else:
            raise TypeError(f"Unsupported message type: {type(message)}")

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": self._messages,
            **self._extra_kwargs,
        }
        if self._tools:
            kwargs["tools"] = self._tools
        return kwargs

    def send(self, message) -> LLMResponse:
        """Send a user message (str) or tool results (list of dicts)."""
        self._append_message(message)
        raw = self._client.chat.completions.create(**self._request_kwargs())
        self._messages.append(self._response_to_message(raw))
        return _parse_response(raw)

    def get_history(self) -> list[dict]:
        return list(self._messages)

    @staticmethod
    def _response_to_message(raw) -> dict:
        """Convert an OpenAI ChatCompletion response to a message dict for history."""
        choice = raw.choices[0] if raw.choices else None
        if not choice:
            return {"role": "assistant", "content": ""}
        msg = choice.message
        calls = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments,
                },
            }
            for tc in (msg.tool_calls or [])
        ]
        return _assistant_message(msg.content or "", calls)

    def send_stream(self, message, on_chunk=None) -> LLMResponse:
        """Send a streaming request."""
        self._append_message(message)
        kwargs = self._request_kwargs()
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        text_parts = []
        _pending_tools = {}
        usage = UsageMetadata()
        finish_reason = "other"

        stream = self._client.chat.completions.create(**kwargs)
        for chunk in stream:
            if not chunk.choices:
                if chunk.usage:
                    usage = _usage_from(chunk.usage)
                continue
            choice = chunk.choices[0]
            if choice.finish_reason:
                finish_reason = _FINISH_REASONS.get(choice.finish_reason, "other")
            delta = choice.delta
            if delta is None:
                continue
            if delta.content:
                text_parts.append(delta.content)
                if on_chunk:
                    on_chunk(delta.content)
            if delta.tool_calls:
                for tc in delta.tool_calls:
                    idx = tc.index
                    if idx not in _pending_tools:
                        _pending_tools[idx] = {
                            "id": tc.id or "",
                            "name": (tc.function.name if tc.function else "") or "",
                            "args_json": "",
                        }
                    if tc.id and not _pending_tools[idx]["id"]:
                        _pending_tools[idx]["id"] = tc.id
                    if tc.function and tc.function.name and not _pending_tools[idx]["name"]:
                        _pending_tools[idx]["name"] = tc.function.name
                    if tc.function and tc.function.arguments:
                        _pending_tools[idx]["args_json"] += tc.function.arguments

        tool_calls = []
        for idx in sorted(_pending_tools):
            pt = _pending_tools[idx]
            try:
                args = json.loads(pt["args_json"]) if pt["args_json"] else {}
            except json.JSONDecodeError:
                args = {}
            tool_calls.append(ToolCall(name=pt["name"], args=args, id=pt["id"]))

        text = "".join(text_parts)
        self._messages.append(_assistant_message(text, [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": json.dumps(tc.args)},
            }
            for tc in tool_calls
        ]))

        return LLMResponse(
            text=text, tool_calls=tool_calls, usage=usage,
            finish_reason=finish_reason, raw=None,
        )


# ---------------------------------------------------------------------------
# OpenAIAdapter
# ---------------------------------------------------------------------------


class OpenAIAdapter(LLMAdapter):
    """Adapter that wraps the ``openai`` SDK for OpenAI and compatible APIs."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout_ms: int = 300_000,
    ):
        self.base_url = base_url
        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        kwargs["timeout"] = timeout_ms / 1000.0  # openai SDK uses seconds
        self._client = openai.OpenAI(**kwargs)

    def create_chat(
        self,
        model: str,
        system_prompt: str,
        tools: list[FunctionSchema] | None = None,
        *,
        history: list[dict] | None = None,
        max_output_tokens: int | None = None,
    ) -> OpenAIChatSession:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if history:
            messages.extend(history)

        extra_kwargs: dict[str, Any] = {}
        if max_output_tokens is not None:
            extra_kwargs["max_tokens"] = max_output_tokens

        return OpenAIChatSession(
            client=self._client,
            model=model,
            messages=messages,
            tools=_build_tools(tools),
            extra_kwargs=extra_kwargs,
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
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": contents})

        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_output_tokens is not None:
            kwargs["max_tokens"] = max_output_tokens

        raw = self._client.chat.completions.create(**kwargs)
        return _parse_response(raw)

    def make_tool_result_message(
        self, tool_name: str, result: Any, *, tool_call_id: str | None = None,
        is_error: bool = False,
    ) -> dict:
        """Build an OpenAI tool-result message dict.

        OpenAI requires ``tool_call_id`` to match the original tool call.
        Errors travel as ordinary content; the payload itself says so.
        """
        return {
            "role": "tool",
            "tool_call_id": tool_call_id or f"call_{uuid.uuid4().hex[:24]}",
            "content": _tool_result_content(result),
        }

    def convert_history(self, messages: list[Message]) -> list[dict]:
        return convert_messages(messages)

    def is_quota_error(self, exc: Exception) -> bool:
        """Check if the exception is an OpenAI rate-limit error."""
        return isinstance(exc, openai.RateLimitError)

    @property
    def client(self):
        """Escape hatch — the underlying ``openai.OpenAI`` client."""
        return self._client
