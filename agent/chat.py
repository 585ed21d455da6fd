"""
One chat turn: data context, history compression, and the streamed
model/tool loop.

``run_chat_turn`` is synchronous and blocking.  The web layer runs it in a
worker thread and forwards every stream event through ``on_event``.

Steps run until the model answers without tool calls, or ``max_steps``
round-trips (default ``config.MAX_STEPS``).  A failure before anything was
streamed raises ``ChatTurnError``; a failure in a later step ends the
stream with an ``ErrorEvent`` so the partial message survives.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import config

from .data_context import build_context, format_for_prompt, get_cached_result
from .event_bus import (
    get_event_bus,
    AGENT_RESPONSE,
    DEBUG,
    LLM_CALL,
    PLAN_CREATED,
    TOKEN_USAGE,
    TOOL_CACHE_HIT,
    USER_MESSAGE,
    WORKFLOW_ANNOTATION,
)
from .llm import FunctionSchema, LLMAdapter, UsageMetadata
from .logging import log_error, log_tool_call, log_tool_result
from .messages import Message, message_text, visible_text
from .plan_store import PlanStore, plan_record_from_step
from .prompts import get_system_prompt
from .stream import (
    ErrorEvent,
    Finish,
    StepFinish,
    StreamEvent,
    StreamState,
    TextDelta,
    ToolCallEvent,
    ToolResultEvent,
)
from .summarizer import summarize_if_needed
from .tool_cache import ToolCache, execute_with_cache, is_error_result
from .truncation import trunc


class ChatTurnError(Exception):
    """A turn that failed before any output; ``status`` is the HTTP code."""

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.message = message
        self.status = status


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _usage_dict(usage: UsageMetadata) -> dict:
    return {
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "cachedTokens": usage.cached_tokens,
        "totalTokens": usage.total_tokens,
    }


def _tool_schemas(pool) -> list[FunctionSchema]:
    schemas = []
    for s in pool.get_tool_schemas():
        schemas.append(FunctionSchema(
            name=s["name"],
            description=s.get("description") or "",
            parameters=s.get("parameters") or {"type": "object", "properties": {}},
        ))
    return schemas


def _connected_servers(pool) -> list[str]:
    servers = pool.status().get("servers", {})
    return [name for name, info in servers.items() if info.get("connected")]


def _run_tool(tool_name: str, args: dict, pool, cache: Optional[ToolCache], context) -> tuple:
    """Result for one tool call: conversation history, then cache, then the server."""
    prior = get_cached_result(tool_name, args, context)
    if prior is not None and not is_error_result(prior):
        get_event_bus().emit(
            TOOL_CACHE_HIT, agent="chat", level="debug",
            msg=f"[Chat] Reusing {tool_name} result from conversation history",
            data={"tool_name": tool_name, "source": "history"},
        )
        return prior, True

    def _call():
        try:
            return pool.call_tool(tool_name, args)
        except Exception as e:
            log_error(f"[Chat] Tool {tool_name} raised", exc=e, context={"args": args})
            return {"status": "error", "isError": True, "message": f"{type(e).__name__}: {e}"}

    return execute_with_cache(tool_name, args, _call, cache)


def _record_step(
    text: str,
    tools_used: list[str],
    user_query: str,
    session_id: str,
    plan_store: Optional[PlanStore],
) -> None:
    """Log workflow annotations and persist a plan found in one step's text."""
    from workflow.annotations import extract_all_workflow_tags

    bus = get_event_bus()
    for meta, offset in extract_all_workflow_tags(text):
        bus.emit(
            WORKFLOW_ANNOTATION, agent="chat", level="debug",
            msg=(f"[Workflow] {'parallel' if meta.is_parallel else 'sequential'} "
                 f"phase={meta.phase!r} insight={meta.insight!r}"),
            data={"isParallel": meta.is_parallel, "phase": meta.phase,
                  "insight": meta.insight, "offset": offset},
        )

    record = plan_record_from_step(text, tools_used, user_query, session_id)
    if record is None:
        return
    store = plan_store or PlanStore()
    try:
        path = store.save(record)
        store.cleanup_old(session_id)
    except OSError as e:
        log_error("[Plans] Failed to save plan record", exc=e, context={"session_id": session_id})
        return
    bus.emit(
        PLAN_CREATED, agent="chat", level="info",
        msg=f"[Plans] Saved plan {record.id} ({len(record.plan_text)} chars)",
        data={"id": record.id, "path": str(path), "toolsUsed": record.tools_used},
    )


def run_chat_turn(
    messages: list[Message],
    *,
    adapter: Optional[LLMAdapter] = None,
    pool=None,
    cache: Optional[ToolCache] = None,
    on_event: Optional[Callable[[StreamEvent], None]] = None,
    session_id: str = "default",
    plan_store: Optional[PlanStore] = None,
    max_steps: Optional[int] = None,
    model: Optional[str] = None,
) -> Message:
    """Run one assistant turn for a conversation ending in a user message.

    Args:
        messages: Full conversation so far; never modified.
        adapter: LLM adapter; defaults to ``create_adapter()``.
        pool: MCP client pool; defaults to the process-wide pool.
        cache: Tool result cache; defaults to the process-wide cache.
        on_event: Receives every ``StreamEvent`` as it happens.
        session_id: Conversation id used for plan records.
        plan_store: Where detected plans are saved.
        max_steps: Model/tool round-trip cap.
        model: Chat model; defaults to ``config.CHAT_MODEL``.

    Returns:
        The new assistant message (text, tool calls and tool results).

    Raises:
        ChatTurnError: Empty conversation (400), provider unavailable or the
            first model call failed (429 for quota errors, else 502).
    """
    if not messages or messages[-1].role != "user":
        raise ChatTurnError("Conversation must end with a user message", status=400)

    bus = get_event_bus()
    user_query = message_text(messages[-1], sep=" ")
    bus.emit(
        USER_MESSAGE, agent="chat", level="info",
        msg=f"[Chat] User: {trunc(user_query, 'console.text')}",
        data={"text": user_query, "history": len(messages) - 1},
    )

    if pool is None:
        from .mcp_client import get_mcp_pool

        pool = get_mcp_pool()
    if adapter is None:
        try:
            from .llm import create_adapter

            adapter = create_adapter()
        except Exception as e:
            log_error("[Chat] LLM provider unavailable", exc=e)
            raise ChatTurnError(f"LLM provider unavailable: {e}", status=500) from e

    context = build_context(messages)
    context_prompt = format_for_prompt(context)
    if context_prompt:
        bus.emit(
            DEBUG, agent="chat",
            msg=(f"[Context] Injecting {len(context.tool_calls)} prior tool calls "
                 f"({len(context_prompt)} chars)"),
        )
    schemas = _tool_schemas(pool)
    system_prompt = get_system_prompt(context_prompt, _connected_servers(pool))
    processed = summarize_if_needed(system_prompt, messages, schemas, adapter=adapter)

    model = model or config.CHAT_MODEL
    max_steps = max_steps or config.MAX_STEPS
    history = adapter.convert_history(processed.messages[:-1])
    outgoing = visible_text(processed.messages[-1]) or user_query or "(empty)"

    state = StreamState(f"msg-{uuid.uuid4().hex[:16]}", created_at=_now_iso())

    def emit(event: StreamEvent) -> None:
        state.apply(event)
        if on_event is not None:
            on_event(event)

    try:
        chat = adapter.create_chat(model, system_prompt, schemas or None, history=history)
    except Exception as e:
        log_error("[Chat] Could not create chat session", exc=e, context={"model": model})
        raise ChatTurnError(f"Could not start chat: {e}", status=502) from e

    usage = UsageMetadata()
    finish_reason = "stop"
    steps = 0
    for step in range(max_steps):
        bus.emit(
            LLM_CALL, agent="chat", level="debug",
            msg=f"[Chat] Step {step + 1}: calling {model}",
            data={"step": step, "model": model},
        )
        try:
            response = chat.send_stream(
                outgoing, on_chunk=lambda text, step=step: emit(TextDelta(text, step)),
            )
        except Exception as e:
            log_error(f"[Chat] Model call failed at step {step + 1}", exc=e,
                      context={"model": model, "step": step})
            status = 429 if adapter.is_quota_error(e) else 502
            if steps == 0 and not state.message.parts:
                raise ChatTurnError(f"{type(e).__name__}: {e}", status=status) from e
            emit(ErrorEvent(f"{type(e).__name__}: {e}", status=status))
            finish_reason = "error"
            break
        steps += 1
        usage = usage + response.usage

        tools_used: list[str] = []
        tool_results = []
        for call in response.tool_calls:
            call_id = call.id or f"call_{uuid.uuid4().hex[:24]}"
            args = dict(call.args or {})
            emit(ToolCallEvent(call_id, call.name, args, step))
            log_tool_call(call.name, args)

            result, cached = _run_tool(call.name, args, pool, cache, context)
            is_error = is_error_result(result)
            log_tool_result(call.name, result, success=not is_error)
            emit(ToolResultEvent(call_id, call.name, result, is_error, cached, step))
            tool_results.append(adapter.make_tool_result_message(
                call.name, result, tool_call_id=call_id, is_error=is_error,
            ))
            tools_used.append(call.name)

        emit(StepFinish(step, response.finish_reason, _usage_dict(response.usage), len(tools_used)))
        _record_step(response.text, tools_used, user_query, session_id, plan_store)

        if not response.tool_calls:
            finish_reason = response.finish_reason
            break
        outgoing = tool_results
    else:
        finish_reason = "max-steps"
        bus.emit(
            DEBUG, agent="chat", level="warning",
            msg=f"[Chat] Stopped after {max_steps} steps with tool calls pending",
        )

    if state.error is None:
        emit(Finish(finish_reason, _usage_dict(usage), steps))

    bus.emit(
        TOKEN_USAGE, agent="chat", level="debug",
        msg=f"[Tokens] in={usage.input_tokens} out={usage.output_tokens} cached={usage.cached_tokens}",
        data=_usage_dict(usage),
    )
    reply = state.message
    bus.emit(
        AGENT_RESPONSE, agent="chat", level="info",
        msg=f"[Chat] Assistant: {trunc(visible_text(reply, sep=' '), 'console.text')}",
        data={"messageId": reply.id, "steps": steps, "finishReason": finish_reason},
    )
    return reply
