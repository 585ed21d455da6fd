"""agent/summarizer.py — Compress older history into one synthetic turn.

When the estimated context exceeds ``config.SUMMARIZATION_TRIGGER``, every
message except the most recent ``KEEP_RECENT_MESSAGES`` is rendered into a
flattened transcript and summarized by ``SUMMARY_MODEL``.  The summary is
prepended to the recent messages as a tagged synthetic user message.

A failed summary call never fails the turn: a templated summary built from
the older messages' tool names is used instead.

A previous synthetic summary is ordinary history here: once it falls out
of the recent window it is summarized again along with everything else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import config

from .event_bus import get_event_bus, SUMMARIZATION, SUMMARIZATION_FALLBACK, CONTEXT_SIZE
from .llm import LLMAdapter
from .logging import log_error
from .messages import Message, ToolCallPart, create_summary_message, visible_text
from .token_counter import ContextSize, context_size

SUMMARY_PROMPT = """Summarize the following conversation concisely. Focus on:
1. What data the user requested or loaded
2. What tools were called and their results
3. What visualizations were created
4. The user's current goal or intent

Keep the summary under 200 words. Be specific about data and operations.

Conversation:
{conversation}

Summary:"""


@dataclass(frozen=True)
class SummarizationResult:
    summary_text: str
    recent_messages: list
    summarized_count: int


@dataclass(frozen=True)
class ProcessedHistory:
    """History ready for the model plus before/after size estimates."""
    messages: list
    summarized: bool
    summarized_count: int
    before: ContextSize
    after: ContextSize


def _tool_names(message: Message) -> list[str]:
    return [
        p.tool_name or "unknown"
        for p in message.parts
        if isinstance(p, ToolCallPart)
    ]


def render_transcript(messages: list[Message]) -> str:
    """Role-prefixed transcript; tool calls are listed by name only."""
    chunks = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        content = visible_text(msg)
        names = _tool_names(msg)
        if names:
            listing = "\n".join(f"  - Called tool: {n}" for n in names)
            content += f"\n\n[Tool Calls]\n{listing}"
        chunks.append(f"{role}: {content}")
    return "\n\n---\n\n".join(chunks)


def fallback_summary(older: list[Message]) -> str:
    """Deterministic summary from tool names alone. Never raises."""
    seen: list[str] = []
    for msg in older:
        for name in _tool_names(msg):
            if name not in seen:
                seen.append(name)
    tools = ", ".join(seen) or "none"
    return (
        f"Previous conversation ({len(older)} messages): User interacted with the "
        f"assistant, calling tools including: {tools}."
    )


def summarize(
    messages: list[Message],
    keep_recent: Optional[int] = None,
    *,
    adapter: Optional[LLMAdapter] = None,
    model: Optional[str] = None,
) -> SummarizationResult:
    """Split off the most recent ``keep_recent`` messages and summarize the rest.

    With ``len(messages) <= keep_recent`` nothing is summarized and the
    original list is returned as-is.
    """
    if keep_recent is None:
        keep_recent = config.KEEP_RECENT_MESSAGES
    keep_recent = max(0, int(keep_recent))

    if len(messages) <= keep_recent:
        return SummarizationResult(summary_text="", recent_messages=messages, summarized_count=0)

    split = len(messages) - keep_recent
    older = list(messages[:split])
    recent = list(messages[split:])
    bus = get_event_bus()
    bus.emit(
        SUMMARIZATION, agent="summarizer", level="info",
        msg=f"[Summarizer] Summarizing {len(older)} messages, keeping {len(recent)} recent",
        data={"older": len(older), "recent": len(recent)},
    )

    prompt = SUMMARY_PROMPT.format(conversation=render_transcript(older))
    try:
        if adapter is None:
            from .llm import create_adapter

            adapter = create_adapter()
        response = adapter.generate(
            model=model or config.SUMMARY_MODEL,
            contents=prompt,
            temperature=0.2,
        )
        summary = (response.text or "").strip()
        if not summary:
            raise ValueError("Summary model returned empty text")
    except Exception as e:
        log_error("[Summarizer] Summary call failed, using fallback", exc=e,
                  context={"older_messages": len(older)})
        summary = fallback_summary(older)
        bus.emit(
            SUMMARIZATION_FALLBACK, agent="summarizer", level="warning",
            msg=f"[Summarizer] Fallback summary used ({type(e).__name__})",
        )
    else:
        bus.emit(
            SUMMARIZATION, agent="summarizer", level="debug",
            msg=f"[Summarizer] Generated summary ({len(summary)} chars)",
        )

    return SummarizationResult(
        summary_text=summary, recent_messages=recent, summarized_count=len(older),
    )


def summarize_if_needed(
    system_prompt: str,
    messages: list[Message],
    tools=None,
    *,
    adapter: Optional[LLMAdapter] = None,
    trigger: Optional[int] = None,
    keep_recent: Optional[int] = None,
) -> ProcessedHistory:
    """Estimate the context and compress history when it is over budget."""
    before = context_size(system_prompt, messages, tools, trigger=trigger)
    get_event_bus().emit(
        CONTEXT_SIZE, agent="summarizer",
        msg=(f"[Context] system={before.system_tokens} messages={before.message_tokens} "
             f"tools={before.tool_tokens} total={before.total}"),
        data=before.to_dict(),
    )
    if not before.exceeds_threshold:
        return ProcessedHistory(list(messages), False, 0, before, before)

    result = summarize(messages, keep_recent, adapter=adapter)
    if result.summarized_count == 0:
        return ProcessedHistory(list(messages), False, 0, before, before)

    processed = [create_summary_message(result.summary_text), *result.recent_messages]
    after = context_size(system_prompt, processed, tools, trigger=trigger)
    get_event_bus().emit(
        SUMMARIZATION, agent="summarizer", level="info",
        msg=(f"[Summarizer] Context reduced {before.total} -> {after.total} tokens "
             f"({result.summarized_count} messages summarized)"),
        data={"before": before.total, "after": after.total,
              "summarized_count": result.summarized_count},
    )
    return ProcessedHistory(processed, True, result.summarized_count, before, after)
