"""agent/data_context.py — What data the conversation has already loaded.

Scans assistant messages for tool invocations and their results, infers
human-readable dataset labels and "available information" strings, and
renders a short block for the system prompt so the model reuses data
instead of reloading it.

The context is rebuilt from scratch on every turn; it is cheap next to a
model call.

Public API:
    build_context(messages) -> ContextSummary
    format_for_prompt(summary) -> str
    is_redundant(tool_name, args, summary) -> bool
    get_cached_result(tool_name, args, summary) -> result | None
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .messages import Message, ToolInvocationRecord, canonical_json, iter_tool_invocations
from .truncation import tail_items


# ---------------------------------------------------------------------------
# Dataset inference rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DatasetRule:
    """One inference rule: if ``matches(tool_name)``, the tool loaded ``dataset``
    (may be None) and made ``information`` available."""
    name: str
    matches: Callable[[str], bool]
    dataset: Optional[str]
    information: tuple[str, ...]


def _is_loader(name: str) -> bool:
    return any(w in name for w in ("load", "get", "read"))


# First matching loader rule wins. Extend by inserting before the generic rule.
DATASET_RULES: list[DatasetRule] = [
    DatasetRule(
        "compound",
        lambda n: _is_loader(n) and "compound" in n,
        "Compound list",
        ("compound names, formulas, retention times",),
    ),
    DatasetRule(
        "cv",
        lambda n: _is_loader(n) and ("cv" in n or "coefficient" in n),
        "CV analysis results",
        ("CV values by extraction method", "quality metrics (CV distribution, outliers)"),
    ),
    DatasetRule(
        "acquisition",
        lambda n: _is_loader(n) and "acquisition" in n,
        "Acquisition data",
        ("sample acquisition information",),
    ),
    DatasetRule("generic", _is_loader, "Dataset", ("analysis data",)),
]


def _row_count(result: Any) -> Optional[int]:
    if isinstance(result, dict):
        count = result.get("rowCount") or result.get("row_count")
        if count:
            return count
        return None
    if isinstance(result, list) and result:
        return len(result)
    return None


def infer_dataset_info(
    tool_name: str, args: dict, result: Any
) -> tuple[Optional[str], list[str]]:
    """Return ``(dataset_label, information)`` inferred from one tool call."""
    info: list[str] = []
    dataset: Optional[str] = None
    if not tool_name:
        return dataset, info

    for rule in DATASET_RULES:
        if rule.matches(tool_name):
            dataset = rule.dataset
            info.extend(rule.information)
            break

    if dataset is not None:
        count = _row_count(result)
        if count:
            dataset = f"{dataset} ({count} rows)"

    if "analyze" in tool_name or "calculate" in tool_name:
        info.append(f"{tool_name} analysis results")

    return dataset, info


# ---------------------------------------------------------------------------
# Context summary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContextSummary:
    tool_calls: tuple[ToolInvocationRecord, ...] = ()
    loaded_datasets: tuple[str, ...] = ()
    available_information: tuple[str, ...] = ()
    last_updated: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )

    def to_dict(self) -> dict:
        return {
            "toolCalls": [c.to_dict() for c in self.tool_calls],
            "loadedDatasets": list(self.loaded_datasets),
            "availableInformation": list(self.available_information),
            "lastUpdated": self.last_updated,
        }


def _dedupe(items: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


def build_context(messages: list[Message]) -> ContextSummary:
    """Collect every tool invocation in assistant messages, in order."""
    calls: list[ToolInvocationRecord] = []
    datasets: list[str] = []
    info: list[str] = []
    for record in iter_tool_invocations(messages):
        calls.append(record)
        dataset, information = infer_dataset_info(
            record.tool_name, record.args, record.result
        )
        if dataset:
            datasets.append(dataset)
        info.extend(information)
    return ContextSummary(
        tool_calls=tuple(calls),
        loaded_datasets=_dedupe(datasets),
        available_information=_dedupe(info),
    )


def format_for_prompt(summary: ContextSummary) -> str:
    """Compact system-prompt block; empty before the first tool call."""
    if not summary.tool_calls:
        return ""

    sections = ["## Previous Data Loaded\n"]
    if summary.loaded_datasets:
        sections.append(f"Datasets: {', '.join(summary.loaded_datasets)}")
    if summary.available_information:
        recent = tail_items(list(summary.available_information), "items.context_info")
        sections.append(f"Info: {', '.join(recent)}")
    sections.append("\nREUSE existing data. Only reload if user requests new/different data.\n")
    return "\n".join(sections)


def _find_call(
    tool_name: str, args: dict, summary: ContextSummary
) -> Optional[ToolInvocationRecord]:
    key = canonical_json(args or {})
    for call in summary.tool_calls:
        if call.tool_name == tool_name and canonical_json(call.args) == key:
            return call
    return None


def is_redundant(tool_name: str, args: dict, summary: ContextSummary) -> bool:
    """True iff the exact call (name + key-order-independent args) was made."""
    return _find_call(tool_name, args, summary) is not None


def get_cached_result(tool_name: str, args: dict, summary: ContextSummary) -> Any:
    """Result of an identical earlier call, or None."""
    call = _find_call(tool_name, args, summary)
    if call is None or not call.has_result:
        return None
    return call.result
