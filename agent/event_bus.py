"""
Structured EventBus — single source of truth for chat session activity.

Architecture:
    bus.emit() → SessionEvent → listeners[]
      ├── DebugLogListener → Python logger (file + console handlers)
      └── SSEEventListener → transport callback for the live activity feed

Every event type carries routing tags resolved from ``EVENT_TAGS``:
"display" events are forwarded to the frontend, "console" events are
written to the log. Warnings and errors are always forwarded.
"""

import collections
import contextvars
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .logging import tagged


# ---- Event type constants ----

# Conversation
USER_MESSAGE = "user_message"
AGENT_RESPONSE = "agent_response"

# Tool lifecycle
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
TOOL_ERROR = "tool_error"
TOOL_CACHE_HIT = "tool_cache_hit"

# Context window
CONTEXT_SIZE = "context_size"
SUMMARIZATION = "summarization"
SUMMARIZATION_FALLBACK = "summarization_fallback"

# Workflow / plans
WORKFLOW_ANNOTATION = "workflow_annotation"
PLAN_CREATED = "plan_created"
INSIGHT_RESULT = "insight_result"

# External tool servers
MCP_CONNECTED = "mcp_connected"
MCP_CONNECT_ERROR = "mcp_connect_error"

# Sandbox
SANDBOX_ERROR = "sandbox_error"

# LLM
LLM_CALL = "llm_call"
TOKEN_USAGE = "token_usage"

# Errors / catch-all
ERROR_LOG = "error_log"
DEBUG = "debug"


# ---- Tags registry ----

EVENT_TAGS: dict[str, frozenset[str]] = {
    USER_MESSAGE:           frozenset({"display", "console"}),
    AGENT_RESPONSE:         frozenset({"display", "console"}),
    TOOL_CALL:              frozenset({"display", "console"}),
    TOOL_RESULT:            frozenset({"display", "console"}),
    TOOL_ERROR:             frozenset({"display", "console"}),
    TOOL_CACHE_HIT:         frozenset({"console"}),
    CONTEXT_SIZE:           frozenset({"console"}),
    SUMMARIZATION:          frozenset({"display", "console"}),
    SUMMARIZATION_FALLBACK: frozenset({"console"}),
    WORKFLOW_ANNOTATION:    frozenset({"console"}),
    PLAN_CREATED:           frozenset({"display", "console"}),
    INSIGHT_RESULT:         frozenset({"console"}),
    MCP_CONNECTED:          frozenset({"console"}),
    MCP_CONNECT_ERROR:      frozenset({"console"}),
    SANDBOX_ERROR:          frozenset({"display", "console"}),
    LLM_CALL:               frozenset({"console"}),
    TOKEN_USAGE:            frozenset({"console"}),
    ERROR_LOG:              frozenset({"console"}),
    DEBUG:                  frozenset({"console"}),
}


def _resolve_tags(event_type: str) -> frozenset[str]:
    return EVENT_TAGS.get(event_type, frozenset())


# ---- SessionEvent ----

@dataclass(frozen=True)
class SessionEvent:
    """A single structured event in the session.

    Fields:
        id: Session-unique event ID (e.g. "evt_0001").
        type: Event type constant (e.g. "tool_call", "summarization").
        ts: ISO 8601 timestamp (UTC, millisecond precision).
        agent: Source component name.
        level: Log level (debug/info/warning/error).
        summary: Short one-liner for logs and the activity feed.
        details: Full context, multi-line OK.
        data: Structured machine-readable payload.
        tags: Routing tags.
    """
    id: str
    type: str
    ts: str
    agent: str
    level: str
    summary: str
    details: str
    data: dict
    tags: frozenset

    @property
    def msg(self) -> str:
        return self.summary


class EventBus:
    """Per-session event bus with synchronous listener dispatch.

    Thread-safe: emit() and subscribe() use a lock.  With ``max_events`` set,
    only the newest events are kept.
    """

    def __init__(self, session_id: str = "", max_events: Optional[int] = None):
        self._events: collections.deque[SessionEvent] = collections.deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self.session_id = session_id
        self._next_event_id: int = 0

    def emit(
        self,
        type: str,
        *,
        agent: str = "chat",
        level: str = "debug",
        msg: str = "",
        details: str = "",
        data: Optional[dict] = None,
    ) -> SessionEvent:
        """Create, store, and dispatch a SessionEvent.

        Args:
            type: Event type constant (e.g. TOOL_CALL, SUMMARIZATION).
            agent: Source component name.
            level: Log level (debug/info/warning/error).
            msg: Human-readable message. Truncated for the summary; the
                full text is kept in ``details`` when none is given.
            details: Full context, multi-line OK.
            data: Structured payload.

        Returns:
            The created SessionEvent.
        """
        from .truncation import trunc

        with self._lock:
            self._next_event_id += 1
            event = SessionEvent(
                id=f"evt_{self._next_event_id:04d}",
                type=type,
                ts=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                agent=agent,
                level=level,
                summary=trunc(msg, "console.summary"),
                details=details or msg,
                data=data or {},
                tags=_resolve_tags(type),
            )
            self._events.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                pass  # Never let a listener break the emitter
        return event

    def subscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Register a listener called synchronously on each emit()."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Remove a previously registered listener."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def get_events(
        self,
        *,
        types: Optional[set[str]] = None,
        tags: Optional[set[str]] = None,
        since_index: int = 0,
    ) -> list[SessionEvent]:
        """Return stored events, optionally filtered by type and tag."""
        with self._lock:
            events = list(self._events)[since_index:]
        result = []
        for e in events:
            if types and e.type not in types:
                continue
            if tags and not (e.tags & frozenset(tags)):
                continue
            result.append(e)
        return result

    def clear(self) -> None:
        """Remove all stored events."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# ---- ContextVar singleton ----

_bus_var: contextvars.ContextVar[Optional[EventBus]] = contextvars.ContextVar(
    "_bus_var", default=None
)

# Module-level fallback for code that runs outside any chat session
_fallback_bus: Optional[EventBus] = None
_fallback_lock = threading.Lock()
_FALLBACK_MAX_EVENTS = 1000


def get_event_bus() -> EventBus:
    """Return the EventBus for the current context.

    Falls back to a module-level singleton if no context-specific bus is
    set, so module-level code (MCP pool, sandbox) can always emit.
    """
    bus = _bus_var.get()
    if bus is not None:
        return bus
    global _fallback_bus
    if _fallback_bus is None:
        with _fallback_lock:
            if _fallback_bus is None:
                _fallback_bus = EventBus(session_id="<fallback>", max_events=_FALLBACK_MAX_EVENTS)
                _fallback_bus.subscribe(DebugLogListener(logging.getLogger("edachat")))
    return _fallback_bus


def set_event_bus(bus: EventBus) -> contextvars.Token:
    """Set the EventBus for the current context."""
    return _bus_var.set(bus)


def reset_event_bus(token: contextvars.Token) -> None:
    """Restore the EventBus that was active before ``set_event_bus``."""
    _bus_var.reset(token)


# ---- Listeners ----

class DebugLogListener:
    """Writes console-tagged events (and all warnings/errors) to the logger."""

    _LEVEL_MAP = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    # Map event type to the log_tag picked up by the "gui" console format.
    _TYPE_TO_TAG = {
        USER_MESSAGE: "user_message",
        AGENT_RESPONSE: "agent_response",
        TOOL_CALL: "tool",
        TOOL_RESULT: "tool",
        TOOL_ERROR: "error",
        SUMMARIZATION: "context",
        SUMMARIZATION_FALLBACK: "context",
        CONTEXT_SIZE: "context",
        PLAN_CREATED: "plan_event",
        WORKFLOW_ANNOTATION: "workflow",
        MCP_CONNECT_ERROR: "error",
        SANDBOX_ERROR: "error",
        ERROR_LOG: "error",
    }

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def __call__(self, event: SessionEvent) -> None:
        if "console" not in event.tags and event.level not in ("warning", "error"):
            return
        level = self._LEVEL_MAP.get(event.level, logging.DEBUG)
        tag = self._TYPE_TO_TAG.get(event.type, "")
        text = event.details if event.level == "error" else event.summary
        self._logger.log(level, text, extra=tagged(tag))


class SSEEventListener:
    """Push display-tagged events (plus warnings/errors) to a transport callback."""

    def __init__(self, callback: Callable[[dict], None]):
        self._callback = callback

    def __call__(self, event: SessionEvent) -> None:
        if "display" not in event.tags and event.level not in ("warning", "error"):
            return
        self._callback({
            "type": "activity",
            "event": event.type,
            "level": event.level,
            "agent": event.agent,
            "text": event.summary,
            "data": event.data,
            "ts": event.ts,
        })
