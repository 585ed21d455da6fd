"""Analysis phase vocabulary and inference rules.

Phase inference is an ordered list of ``PhaseRule``s; the first rule with
a matching keyword wins.  Rules are data, so the vocabulary can grow
without touching the graph builder.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

DEFAULT_PHASE = "Initial"

PHASES = (
    "Data Loading",
    "QC Assessment",
    "Data Preprocessing",
    "Exploratory Analysis",
    "Statistical Testing",
    "Dimensionality Reduction",
    "Comparative Analysis",
    "Visualization",
    DEFAULT_PHASE,
)

_FALLBACK_COLOR = "#6b7280"  # gray
_FALLBACK_ICON = "activity"

PHASE_COLORS = {
    "Data Loading": "#3b82f6",
    "QC Assessment": "#8b5cf6",
    "Data Preprocessing": "#6366f1",
    "Exploratory Analysis": "#10b981",
    "Statistical Testing": "#f59e0b",
    "Dimensionality Reduction": "#ec4899",
    "Comparative Analysis": "#06b6d4",
    "Visualization": "#14b8a6",
    DEFAULT_PHASE: _FALLBACK_COLOR,
}

PHASE_ICONS = {
    "Data Loading": "database",
    "QC Assessment": "shield-check",
    "Data Preprocessing": "filter",
    "Exploratory Analysis": "search",
    "Statistical Testing": "calculator",
    "Dimensionality Reduction": "git-branch",
    "Comparative Analysis": "git-compare",
    "Visualization": "bar-chart-3",
    DEFAULT_PHASE: _FALLBACK_ICON,
}

_PARALLEL_PHASES = frozenset({"QC Assessment", "Exploratory Analysis", "Statistical Testing"})

# Terms that make a first-person insight sentence worth keeping
PHASE_TERMS = {
    "Data Loading": ("load", "dataset", "data", "file"),
    "QC Assessment": ("qc", "quality", "cv", "coefficient"),
    "Data Preprocessing": ("normaliz", "transform", "preprocess", "filter"),
    "Exploratory Analysis": ("explor", "distribution", "summary"),
    "Statistical Testing": ("test", "significant", "p-value", "statistic"),
    "Dimensionality Reduction": ("pca", "dimension", "component"),
    "Comparative Analysis": ("compar", "differ", "between", "groups"),
    "Visualization": ("plot", "chart", "visualiz", "graph"),
}


@dataclass(frozen=True)
class PhaseRule:
    phase: str
    keywords: tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(k in text for k in self.keywords)


@dataclass(frozen=True)
class PatternPhaseRule:
    phase: str
    pattern: re.Pattern

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


# Substring rules over lower-cased tool names
TOOL_PHASE_RULES: list[PhaseRule] = [
    PhaseRule("Data Loading", ("load", "read", "fetch", "get_data")),
    PhaseRule("QC Assessment", ("cv", "coefficient", "quality", "qc", "check", "validate", "replicate")),
    PhaseRule("Data Preprocessing", ("normalize", "transform", "filter", "clean", "preprocess", "impute", "scale")),
    PhaseRule("Dimensionality Reduction", ("pca", "tsne", "umap", "dimension", "cluster")),
    PhaseRule("Statistical Testing", ("stat", "test", "compare", "anova", "ttest", "correlation", "regression")),
    PhaseRule("Comparative Analysis", ("difference", "between", "contrast")),
    PhaseRule("Exploratory Analysis", ("explore", "summarize", "describe", "distribution")),
    PhaseRule("Visualization", ("plot", "chart", "visualiz", "graph")),
]


def _words(*prefixes: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(prefixes) + ")", re.IGNORECASE)


# Word-prefix rules over free text ("test" must not match "latest")
TEXT_PHASE_RULES: list[PatternPhaseRule] = [
    PatternPhaseRule("Data Loading", _words(r"loading\b", r"load data\b", r"load\b")),
    PatternPhaseRule("QC Assessment", _words(r"qc\b", r"quality", r"coefficient of variation", r"cv\b")),
    PatternPhaseRule("Data Preprocessing", _words(r"preprocess", r"normali[sz]", r"transform")),
    PatternPhaseRule("Dimensionality Reduction", _words(r"pca\b", r"dimensionality")),
    PatternPhaseRule("Statistical Testing", _words(r"statistical", r"test", r"compar")),
    PatternPhaseRule("Exploratory Analysis", _words(r"exploratory", r"explor")),
    PatternPhaseRule("Visualization", _words(r"visuali[sz]")),
]


def phase_from_tools(tool_names: Iterable[str]) -> Optional[str]:
    """First phase whose rule matches any tool name, or None."""
    names = [n.lower() for n in tool_names if n]
    if not names:
        return None
    for rule in TOOL_PHASE_RULES:
        if any(rule.matches(n) for n in names):
            return rule.phase
    return None


def phase_from_text(text: str) -> Optional[str]:
    """First phase whose keyword cluster appears in ``text``, or None."""
    if not text:
        return None
    for rule in TEXT_PHASE_RULES:
        if rule.matches(text):
            return rule.phase
    return None


def get_phase_color(phase: str) -> str:
    return PHASE_COLORS.get(phase, _FALLBACK_COLOR)


def get_phase_icon(phase: str) -> str:
    return PHASE_ICONS.get(phase, _FALLBACK_ICON)


def is_typically_parallel(phase: str) -> bool:
    return phase in _PARALLEL_PHASES
