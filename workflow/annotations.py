"""Inline annotations the model embeds in its own text.

Wire formats (instructed in the system prompt, matched exactly here):

    [WORKFLOW: type="parallel"|"sequential" phase="..." insight="..."]
    <plan title="..." description="...">...markdown...</plan>
    ---ANSWER---      separates internal reasoning from the visible answer
    ---FOLLOWUP---    precedes a suggested next question
    ```jsx ... ```    visualization source

Parsing never raises: a malformed or missing tag is simply "no signal".
"""

import re
from typing import Optional

from .models import Artifact, WorkflowMetadata
from .phases import phase_from_text

ANSWER_DELIMITER = "---ANSWER---"
FOLLOWUP_DELIMITER = "---FOLLOWUP---"

# Attribute order is fixed as the model writes it; phase/insight optional.
_WORKFLOW_RE = re.compile(
    r'\[WORKFLOW:\s*type="(parallel|sequential)"'
    r'(?:\s+phase="([^"]*)")?'
    r'(?:\s+insight="([^"]*)")?'
    r'\s*\]',
    re.IGNORECASE,
)
_WORKFLOW_HEAD_RE = re.compile(r'\[WORKFLOW:\s*type="(parallel|sequential)"', re.IGNORECASE)
_PHASE_ATTR_RE = re.compile(r'phase="([^"]+)"', re.IGNORECASE)

# Non-greedy: the first closing tag ends the plan, nested tags are not special.
_PLAN_RE = re.compile(
    r'<plan(?:\s+title="([^"]*)")?(?:\s+description="([^"]*)")?\s*>(.*?)</plan>',
    re.DOTALL,
)

_ARTIFACT_RE = re.compile(
    r"```(jsx|tsx|javascript|react)[^\n]*\n(.*?)```",
    re.DOTALL | re.IGNORECASE,
)

_CONTEXT_CHARS = 50


def _metadata(match: re.Match, description: str) -> WorkflowMetadata:
    kind, phase, insight = match.groups()
    return WorkflowMetadata(
        is_parallel=kind.lower() == "parallel",
        phase=phase or None,
        insight=insight or None,
        description=description,
    )


def extract_workflow_tag(text: str) -> Optional[WorkflowMetadata]:
    """First ``[WORKFLOW: ...]`` tag in ``text``, or None."""
    if not text:
        return None
    match = _WORKFLOW_RE.search(text)
    if match is None:
        return None
    return _metadata(match, text.strip())


def extract_all_workflow_tags(text: str) -> list[tuple[WorkflowMetadata, int]]:
    """Every tag with its character offset, in order of appearance."""
    if not text:
        return []
    results = []
    for match in _WORKFLOW_RE.finditer(text):
        start = max(0, match.start() - _CONTEXT_CHARS)
        end = min(len(text), match.end() + _CONTEXT_CHARS)
        results.append((_metadata(match, text[start:end]), match.start()))
    return results


def has_workflow_tag(text: str) -> bool:
    return bool(text) and _WORKFLOW_HEAD_RE.search(text) is not None


def strip_workflow_tags(text: str) -> str:
    """Remove exactly the tag spans; surrounding text is left untouched."""
    if not text:
        return text
    return _WORKFLOW_RE.sub("", text)


def extract_phase_hint(text: str) -> Optional[str]:
    """Explicit ``phase="..."`` attribute, else keyword inference, else None."""
    if not text:
        return None
    match = _PHASE_ATTR_RE.search(text)
    if match:
        return match.group(1)
    return phase_from_text(text)


def extract_plan_tags(text: str) -> list[dict]:
    """``[{title, description, content}]`` for each ``<plan>`` block."""
    if not text:
        return []
    return [
        {
            "title": m.group(1) or None,
            "description": m.group(2) or None,
            "content": (m.group(3) or "").strip(),
        }
        for m in _PLAN_RE.finditer(text)
    ]


def extract_followup(text: str) -> Optional[str]:
    """Text after the first follow-up delimiter, or None when absent or empty."""
    if not text or FOLLOWUP_DELIMITER not in text:
        return None
    _, _, after = text.partition(FOLLOWUP_DELIMITER)
    after = after.strip()
    return after or None


def strip_followup(text: str) -> str:
    """Everything before the first follow-up delimiter."""
    if not text or FOLLOWUP_DELIMITER not in text:
        return text
    before, _, _ = text.partition(FOLLOWUP_DELIMITER)
    return before.strip()


def split_answer(text: str) -> tuple[str, Optional[str]]:
    """``(reasoning, answer)``; answer is None without the delimiter."""
    if not text or ANSWER_DELIMITER not in text:
        return text or "", None
    before, _, after = text.partition(ANSWER_DELIMITER)
    return before.strip(), after.strip()


def extract_artifacts(text: str, message_id: str = "") -> list[Artifact]:
    """Fenced jsx/tsx/javascript/react blocks, in order."""
    if not text:
        return []
    return [
        Artifact(
            id=f"artifact-{message_id}-{i}" if message_id else f"artifact-{i}",
            language=m.group(1).lower(),
            code=m.group(2).strip("\n"),
            message_id=message_id,
        )
        for i, m in enumerate(_ARTIFACT_RE.finditer(text))
    ]
