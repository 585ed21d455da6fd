"""agent/truncation.py — Central truncation registry.

Every truncation limit in the codebase lives here as a named constant.
Config.json overrides via ``"truncation"`` (text limits) and
``"truncation_items"`` (item count limits).  Setting a limit to ``0``
disables truncation for that key.

Public API:
    trunc(text, limit_name)        — truncate text, append "..." if cut
    trunc_items(items, limit_name) — truncate list, return (list, total)
    join_labels(labels, limit_name)— join + truncate
    get_limit(name)                — raw lookup (int)
    get_item_limit(name)           — raw lookup (int)
    reload()                       — re-read config overrides
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Default limits: text character counts
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, int] = {
    # Console summaries
    "console.summary":          300,
    "console.error":            500,
    "console.args":             500,
    "console.text":             200,
    # Detail sections
    "detail.request":          2000,
    # Workflow node insights
    "insight.heuristic":        120,
    "insight.llm":              150,
    "insight.prompt_text":     2000,
}

# ---------------------------------------------------------------------------
# Default limits: item counts
# ---------------------------------------------------------------------------

ITEM_DEFAULTS: dict[str, int] = {
    "items.context_info":         3,
    "items.allowed_components":  40,
    "items.undefined_names":      5,
    "items.stderr_lines":         6,
}


# ---------------------------------------------------------------------------
# Runtime state: overrides from config.json
# ---------------------------------------------------------------------------

_text_overrides: dict[str, int] = {}
_item_overrides: dict[str, int] = {}


def reload() -> None:
    """Re-read config.json overrides for truncation limits.

    Called by ``config.reload_config()`` and at import time.
    """
    global _text_overrides, _item_overrides
    import config
    _text_overrides = config.get("truncation", {})
    _item_overrides = config.get("truncation_items", {})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_limit(name: str) -> int:
    """Return the effective text character limit for *name*.

    Raises ``KeyError`` if *name* is not in DEFAULTS (catches typos).
    Config override of ``0`` means "no truncation" — returned as 0.
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown truncation limit: {name!r}")
    override = _text_overrides.get(name)
    if override is not None:
        return int(override)
    return DEFAULTS[name]


def get_item_limit(name: str) -> int:
    """Return the effective item count limit for *name*.

    Raises ``KeyError`` if *name* is not in ITEM_DEFAULTS.
    """
    if name not in ITEM_DEFAULTS:
        raise KeyError(f"Unknown item limit: {name!r}")
    override = _item_overrides.get(name)
    if override is not None:
        return int(override)
    return ITEM_DEFAULTS[name]


def trunc(text: str, limit_name: str) -> str:
    """Truncate *text* to the named limit, appending ``"..."`` if cut.

    A limit of ``0`` (from config override) disables truncation.
    """
    n = get_limit(limit_name)
    if n == 0 or len(text) <= n:
        return text
    return text[: n - 3] + "..."


def trunc_items(items: list, limit_name: str) -> tuple[list, int]:
    """Return ``(truncated_list, total_count)`` for a named item limit.

    A limit of ``0`` returns the full list.
    """
    total = len(items)
    n = get_item_limit(limit_name)
    if n == 0 or total <= n:
        return items, total
    return items[:n], total


def tail_items(items: list, limit_name: str) -> list:
    """Return the last *n* items for a named item limit (0 keeps all)."""
    n = get_item_limit(limit_name)
    if n == 0 or len(items) <= n:
        return list(items)
    return list(items[-n:])


def join_labels(labels: list, limit_name: str) -> str:
    """Join labels with ``", "`` and truncate the resulting string.

    Returns ``"(none)"`` for empty lists.
    """
    if not labels:
        return "(none)"
    text = ", ".join(str(l) for l in labels)
    return trunc(text, limit_name)


# ---------------------------------------------------------------------------
# Initialize overrides at import time
# ---------------------------------------------------------------------------

try:
    reload()
except Exception:
    pass  # config may not be loadable yet (e.g., during testing)
