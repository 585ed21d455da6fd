"""Heuristic one-sentence findings for workflow nodes (no model call).

Prefers what the data showed over what the assistant did: sentences that
open with an action verb are skipped, and sentences with numbers or
result words win.
"""

import re
from typing import Optional

from agent.truncation import get_limit

from .annotations import ANSWER_DELIMITER, strip_followup, strip_workflow_tags
from .phases import PHASE_TERMS

ACTION_VERBS = frozenset({
    "loading", "calling", "running", "executing",
    "processing", "using", "analyzing", "checking",
})

_RESULT_RE = re.compile(
    r"\b(?:found|detected|identified|shows|contains|reveals|has|were|are)\b",
    re.IGNORECASE,
)
_DIGIT_RE = re.compile(r"\d")
_INTENTION_PREFIXES = ("let me", "i will", "i can", "i'll")

_CODE_FENCE_RE = re.compile(r"```.*?(?:```|$)", re.DOTALL)
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"\*([^*]+)\*")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_HEADER_RE = re.compile(r"#+\s+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+(?:\s+|$)|\n+")

_SHORT_INSIGHT = 50


def _clean(text: str) -> str:
    text = strip_followup(strip_workflow_tags(text))
    text = text.replace(ANSWER_DELIMITER, "\n")
    text = _CODE_FENCE_RE.sub("\n", text)
    text = _BOLD_RE.sub(r"\1", text)
    text = _ITALIC_RE.sub(r"\1", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    return _HEADER_RE.sub("", text)


def _is_action(sentence: str) -> bool:
    first = sentence.split(None, 1)[0].lower() if sentence.split() else ""
    return first.strip(":,;") in ACTION_VERBS


def _tidy(sentence: str) -> str:
    sentence = re.sub(r"\s+", " ", sentence)
    return re.sub(r"^[:\-•*\s]+", "", sentence).strip()


def extract_insight(
    text: str,
    phase: Optional[str] = None,
    max_length: Optional[int] = None,
) -> Optional[str]:
    """One-sentence finding from ``text``, or None.

    A first-person intention ("Let me ...", "I'll ...") is dropped unless it
    mentions a term of ``phase``.
    """
    if not text or not text.strip():
        return None
    if max_length is None:
        max_length = get_limit("insight.heuristic")

    sentences = [_tidy(s) for s in _SENTENCE_SPLIT_RE.split(_clean(text))]
    candidates = [s for s in sentences if s and not _is_action(s)]
    if not candidates:
        return None

    chosen = 0
    for i, sentence in enumerate(candidates):
        if _DIGIT_RE.search(sentence) or _RESULT_RE.search(sentence):
            chosen = i
            break
    insight = candidates[chosen]

    if len(insight) < _SHORT_INSIGHT and chosen + 1 < len(candidates):
        combined = f"{insight}. {candidates[chosen + 1]}"
        if max_length <= 0 or len(combined) <= max_length:
            insight = combined

    if max_length > 0 and len(insight) > max_length:
        insight = insight[: max_length - 3] + "..."

    lower = insight.lower()
    if lower.startswith(_INTENTION_PREFIXES):
        terms = PHASE_TERMS.get(phase or "", ())
        if not any(t in lower for t in terms):
            return None

    return insight or None
