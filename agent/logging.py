"""
Logging configuration for edachat.

Two destinations:

  - Console: DEBUG if verbose, WARNING+ otherwise.  ``console_format``
    config options:
      - "full"   — structured format identical to the file handler
      - "simple" — (default) bare messages for DEBUG/INFO, [LEVEL] prefix
                   for WARNING+
      - "gui"    — curated tagged records only (mirrors the live activity feed)
      - "clean"  — no console output at all (file logging still active)
  - File: always DEBUG, one file per chat session under <data_dir>/logs/.
    Format: "timestamp | level | name | session_id | tag | message"
"""

import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import get_data_dir


def get_log_dir() -> Path:
    """Per-session log files live under <data_dir>/logs."""
    return get_data_dir() / "logs"


# Tags shown by the "gui" console format.
# Tag a log call with ``extra=tagged("my_tag")`` and add the tag here
# to surface it.
WEBUI_VISIBLE_TAGS = frozenset({
    "tool",          # tool call / result one-liners
    "context",       # context size + summarization
    "plan_event",    # plan detected / saved
    "workflow",      # [WORKFLOW: ...] annotations seen in a step
    "error",         # log_error() and tool/sandbox failures
})


def tagged(tag: str) -> dict:
    """Return ``extra`` dict for logger calls: ``logger.debug("...", extra=tagged("x"))``."""
    return {"log_tag": tag}


# Module-level state (shared across re-inits)
_session_filter: Optional["_SessionFilter"] = None

_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(session_id)s | %(log_tag)s | %(message)s"


class _SessionFilter(logging.Filter):
    """Injects session_id into every log record."""

    def __init__(self) -> None:
        super().__init__()
        self.session_id = ""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self.session_id or "-"
        if not hasattr(record, "log_tag"):
            record.log_tag = ""
        return True


class _ConsoleFormatter(logging.Formatter):
    """Console formatter: shows [LEVEL] prefix only for WARNING and above."""

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            return f"  [{record.levelname}] {record.getMessage()}"
        return f"  {record.getMessage()}"


class _WebUITagFilter(logging.Filter):
    """Pass only records tagged with a key in WEBUI_VISIBLE_TAGS."""

    def filter(self, record: logging.LogRecord) -> bool:
        tag = getattr(record, "log_tag", "")
        return tag in WEBUI_VISIBLE_TAGS


def attach_log_file(session_id: str) -> Path:
    """Attach a per-session file handler (``chat_{session_id}.log``).

    Replaces any file handler attached for a previous session.
    """
    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"chat_{session_id}.log"

    logger = logging.getLogger("edachat")
    for h in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(h)
        h.close()

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    set_session_id(session_id)
    logger.info("=" * 60)
    logger.info(f"Session started at {datetime.now().isoformat()}")
    logger.info(f"Log file: {log_file}")
    return log_file


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure console logging for the service.

    File handlers are attached later by ``attach_log_file()`` once a
    session ID is known.

    Args:
        verbose: If True, show DEBUG level on console; otherwise WARNING+.

    Returns:
        Configured logger instance.
    """
    global _session_filter

    logger = logging.getLogger("edachat")
    logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level
    logger.handlers.clear()

    # Reuse the filter instance to preserve session_id across re-inits
    if _session_filter is None:
        _session_filter = _SessionFilter()
    if _session_filter not in logger.filters:
        logger.addFilter(_session_filter)

    import config as _config
    console_format = _config.get("console_format", "simple")

    if console_format != "clean":
        console_handler = logging.StreamHandler(sys.stderr)

        if console_format == "gui":
            console_handler.setLevel(logging.DEBUG)
            console_handler.addFilter(_WebUITagFilter())
            console_handler.setFormatter(_ConsoleFormatter())
        elif console_format == "simple":
            console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
            console_handler.setFormatter(_ConsoleFormatter())
        else:
            # "full"
            console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
            console_handler.setFormatter(
                logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
            )

        logger.addHandler(console_handler)

    return logger


def set_session_id(session_id: str) -> None:
    """Set the session ID included in all subsequent log lines."""
    global _session_filter
    if _session_filter is None:
        # Logger not set up yet: create filter so it's ready when logging starts
        _session_filter = _SessionFilter()
    _session_filter.session_id = session_id


def log_error(
    message: str,
    exc: Optional[BaseException] = None,
    context: Optional[dict] = None,
) -> None:
    """Log an error with full details including stack trace.

    Routes through the EventBus; the DebugLogListener writes the full
    message to the file + console handlers.

    Args:
        message: Error description
        exc: Optional exception to include stack trace from
        context: Optional dict of additional context (tool name, args, etc.)
    """
    from .event_bus import get_event_bus, ERROR_LOG
    from .truncation import trunc

    lines = [message]

    if context:
        lines.append("Context:")
        for key, value in context.items():
            lines.append(f"  {key}: {value}")

    if exc is not None:
        lines.append(f"Exception type: {type(exc).__name__}")
        lines.append(f"Exception message: {exc}")
        lines.append("Stack trace:")
        lines.append("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))

    full_message = "\n".join(lines)
    get_event_bus().emit(
        ERROR_LOG, agent="edachat", level="error", msg=full_message,
        data={"short": trunc(message, "detail.request"), "context": context or {}},
    )


def log_tool_call(tool_name: str, tool_args: dict) -> None:
    """Log a tool call for debugging."""
    from .event_bus import get_event_bus, TOOL_CALL
    from .truncation import trunc

    get_event_bus().emit(
        TOOL_CALL, level="debug",
        msg=f"Tool call: {tool_name}({trunc(str(tool_args), 'console.args')})",
        data={"tool_name": tool_name, "tool_args": tool_args},
    )


def log_tool_result(tool_name: str, result, success: bool) -> None:
    """Log a tool result; failures are logged at warning level."""
    from .event_bus import get_event_bus, TOOL_RESULT, TOOL_ERROR
    from .truncation import trunc

    if success:
        get_event_bus().emit(
            TOOL_RESULT, level="debug",
            msg=f"Tool result: {tool_name} -> success",
            data={"tool_name": tool_name, "status": "success"},
        )
    else:
        error_msg = result.get("message", "Unknown error") if isinstance(result, dict) else str(result)
        get_event_bus().emit(
            TOOL_ERROR, level="warning",
            msg=f"Tool result: {tool_name} -> error: {trunc(error_msg, 'console.error')}",
            data={"tool_name": tool_name, "status": "error", "error": error_msg},
        )

