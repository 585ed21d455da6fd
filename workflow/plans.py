"""Plans the assistant wrote, tagged or recognisable by structure."""

import logging
import re
from typing import Optional

from agent.messages import Message, TextPart

from .annotations import extract_plan_tags
from .models import Plan

logger = logging.getLogger("edachat")

_PLAN_INDICATORS = (
    re.compile(r"^##?\s*Plan:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##?\s*Implementation Plan", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##?\s*Strategy", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##?\s*Approach", re.IGNORECASE | re.MULTILINE),
)
_NUMBERED_STEP_RE = re.compile(r"(?:^|\n)\d+\.\s+.+")
_SECTION_RE = re.compile(r"(?:^|\n)##\s+.+")
_STEP_BULLET_RE = re.compile(r"(?:^|\n)[-*]\s+(?:Step|Phase|Task|Action)", re.IGNORECASE)
_TITLE_RE = re.compile(r"^##?\s*(.+?)$", re.MULTILINE)
_DESCRIPTION_RE = re.compile(r"^(?:##?\s*.+?\n+)(.+?)(?:\n\n|$)", re.DOTALL)

_DESCRIPTION_MAX = 150


def looks_like_plan(text: str) -> bool:
    """Plan heading plus numbered steps, ``##`` sections, or 3+ step bullets."""
    if not any(p.search(text) for p in _PLAN_INDICATORS):
        return False
    return bool(
        _NUMBERED_STEP_RE.search(text)
        or _SECTION_RE.search(text)
        or len(_STEP_BULLET_RE.findall(text)) >= 3
    )


def _auto_plan(message: Message, index: int, text: str, streaming: bool) -> Plan:
    title_match = _TITLE_RE.search(text)
    desc_match = _DESCRIPTION_RE.search(text)
    return Plan(
        id=f"plan-auto-{message.id}",
        title=title_match.group(1).strip() if title_match else "Plan",
        description=desc_match.group(1).strip()[:_DESCRIPTION_MAX] if desc_match else None,
        content=text,
        message_id=message.id,
        message_index=index,
        timestamp=message.created_at,
        is_streaming=streaming,
    )


def extract_plans(
    messages: list[Message], streaming_message_id: Optional[str] = None
) -> list[Plan]:
    """All plans in assistant messages, most recent first."""
    plans: list[Plan] = []
    for index, message in enumerate(messages):
        if message.role != "assistant":
            continue
        streaming = streaming_message_id is not None and message.id == streaming_message_id
        tagged_count = 0
        auto_found = False
        for part in message.parts:
            if not isinstance(part, TextPart) or not part.text:
                continue
            tags = extract_plan_tags(part.text)
            for tag in tags:
                plans.append(Plan(
                    id=f"plan-{message.id}-{tagged_count}",
                    title=tag["title"] or f"Plan {tagged_count + 1}",
                    description=tag["description"],
                    content=tag["content"],
                    message_id=message.id,
                    message_index=index,
                    timestamp=message.created_at,
                    is_streaming=streaming,
                ))
                tagged_count += 1
            if not tags and not auto_found and looks_like_plan(part.text):
                plans.append(_auto_plan(message, index, part.text, streaming))
                auto_found = True

    plans.reverse()
    if plans:
        logger.debug(f"[Plans] Extracted {len(plans)}: {[p.title for p in plans]}")
    return plans
