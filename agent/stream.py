"""Typed stream events for one chat turn and the in-progress message they build.

The turn runner emits, in order per step:
    TextDelta*  ToolCallEvent/ToolResultEvent*  StepFinish
and ends with one Finish (or an ErrorEvent when a later step fails).

``StreamState`` folds events into a fresh assistant ``Message`` after every
event; received messages are never touched.  ``split_display`` separates
the thinking steps shown in a collapsible trace from the final answer.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from workflow.annotations import ANSWER_DELIMITER, FOLLOWUP_DELIMITER

from .messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

# Text after the last tool shorter than this is still reasoning
SUBSTANTIAL_ANSWER_CHARS = 100

_CODE_BLOCK_RE = re.compile(r"```(?:jsx|javascript|tsx|js|typescript|ts|react)[\s\n].*?```", re.DOTALL)
_ARTIFACT_TAG_RE = re.compile(r"<artifact[^>]*>.*?</artifact>", re.DOTALL)
_WORKFLOW_TAG_RE = re.compile(r'\[WORKFLOW:[^\]]*\]', re.IGNORECASE)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    text: str
    step: int = 0
    type: str = field(default="text-delta", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: dict
    step: int = 0
    type: str = field(default="tool-call", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "toolCallId": self.tool_call_id,
                "toolName": self.tool_name, "args": self.args, "step": self.step}


@dataclass(frozen=True)
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    result: Any
    is_error: bool = False
    cached: bool = False
    step: int = 0
    type: str = field(default="tool-result", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "toolCallId": self.tool_call_id,
                "toolName": self.tool_name, "result": self.result,
                "isError": self.is_error, "cached": self.cached, "step": self.step}


@dataclass(frozen=True)
class StepFinish:
    step: int
    finish_reason: str
    usage: dict = field(default_factory=dict)
    tool_calls: int = 0
    type: str = field(default="step-finish", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "step": self.step, "finishReason": self.finish_reason,
                "usage": self.usage, "toolCalls": self.tool_calls}


@dataclass(frozen=True)
class Finish:
    finish_reason: str
    usage: dict = field(default_factory=dict)
    steps: int = 0
    type: str = field(default="finish", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "finishReason": self.finish_reason,
                "usage": self.usage, "steps": self.steps}


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    status: int = 500
    type: str = field(default="error", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


StreamEvent = TextDelta | ToolCallEvent | ToolResultEvent | StepFinish | Finish | ErrorEvent


# ---------------------------------------------------------------------------
# StreamState
# ---------------------------------------------------------------------------

class StreamState:
    """Accumulates stream events into the in-progress assistant message."""

    def __init__(self, message_id: str, created_at: Optional[str] = None):
        self.message_id = message_id
        self.created_at = created_at
        self._parts: list = []
        self._new_text_part = True
        self.finished = False
        self.error: Optional[str] = None
        self.finish_reason: Optional[str] = None

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            if not event.text:
                return
            if not self._new_text_part and self._parts and isinstance(self._parts[-1], TextPart):
                self._parts[-1] = TextPart(self._parts[-1].text + event.text)
            else:
                self._parts.append(TextPart(event.text))
            self._new_text_part = False
        elif isinstance(event, ToolCallEvent):
            self._parts.append(ToolCallPart(event.tool_call_id, event.tool_name, dict(event.args)))
            self._new_text_part = True
        elif isinstance(event, ToolResultEvent):
            self._parts.append(ToolResultPart(
                event.tool_call_id, event.tool_name, event.result, event.is_error,
            ))
            self._new_text_part = True
        elif isinstance(event, StepFinish):
            self._new_text_part = True
        elif isinstance(event, Finish):
            self.finished = True
            self.finish_reason = event.finish_reason
        elif isinstance(event, ErrorEvent):
            self.finished = True
            self.error = event.message
        else:
            raise TypeError(f"Unknown stream event: {type(event)}")

    @property
    def message(self) -> Message:
        return Message(
            id=self.message_id,
            role="assistant",
            parts=tuple(self._parts),
            created_at=self.created_at,
        )

    @property
    def display_status(self) -> str:
        """``thinking`` → ``generating`` → ``complete``."""
        if self.finished:
            return "complete"
        if split_display(self.message).final_text:
            return "generating"
        return "thinking"


# ---------------------------------------------------------------------------
# Display split
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DisplaySplit:
    thinking_steps: list  # [{"type": "reasoning-text"|"tool", "content": ..., "index": i}]
    final_text: str


def _display_text(text: str) -> str:
    text = _CODE_BLOCK_RE.sub("", text)
    text = _ARTIFACT_TAG_RE.sub("", text)
    text = _WORKFLOW_TAG_RE.sub("", text)
    before, _, _ = text.partition(FOLLOWUP_DELIMITER)
    return before.strip()


def split_display(message: Message) -> DisplaySplit:
    """Classify parts into thinking steps and the final answer.

    Text before ``---ANSWER---`` is thinking and text after it is the
    answer.  Otherwise, with tools, text after the last tool call is the
    answer only if it is longer than ``SUBSTANTIAL_ANSWER_CHARS``; without
    tools all text is the answer.
    """
    steps: list[dict] = []
    last_tool = -1
    for idx, part in enumerate(message.parts):
        if isinstance(part, ToolCallPart):
            last_tool = idx

    answer: Optional[tuple[str, int]] = None
    delimited = False
    for idx, part in enumerate(message.parts):
        if isinstance(part, TextPart):
            text = _display_text(part.text)
            if not text:
                continue
            if ANSWER_DELIMITER in text:
                thinking, _, after = text.partition(ANSWER_DELIMITER)
                if thinking.strip():
                    steps.append({"type": "reasoning-text", "content": thinking.strip(), "index": idx})
                if after.strip():
                    if answer is not None:
                        steps.append({"type": "reasoning-text", "content": answer[0], "index": answer[1]})
                    answer = (after.strip(), idx)
                    delimited = True
                continue
            if last_tool == -1 or idx > last_tool:
                if answer is not None:
                    steps.append({"type": "reasoning-text", "content": answer[0], "index": answer[1]})
                answer = (text, idx)
                delimited = False
            else:
                steps.append({"type": "reasoning-text", "content": text, "index": idx})
        elif isinstance(part, ToolCallPart):
            steps.append({"type": "tool", "content": part.tool_name, "index": idx})
        elif isinstance(part, ReasoningPart) and part.text.strip():
            steps.append({"type": "reasoning-text", "content": part.text.strip(), "index": idx})

    final = ""
    if answer is not None:
        text, idx = answer
        if delimited or last_tool == -1 or len(text) > SUBSTANTIAL_ANSWER_CHARS:
            final = text
        else:
            steps.append({"type": "reasoning-text", "content": text, "index": idx})

    steps.sort(key=lambda s: s["index"])
    return DisplaySplit(thinking_steps=steps, final_text=final)
