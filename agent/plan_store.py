"""Plan store — one JSON file per plan record under ``<data_dir>/plans``.

Files are named ``{sessionId}-{timestamp}.json`` and hold the wire shape
``{id, sessionId, timestamp, planText, toolsUsed, userQuery, status}``.
"""

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import config

logger = logging.getLogger("edachat")

PLAN_STATUSES = ("pending", "in_progress", "completed")

# Loose "this step text is a plan" phrases
_PLAN_INDICATORS = (
    "plan:",
    "here's my plan",
    "i will",
    "i need to",
    "steps:",
    "first, i",
    "the plan is",
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass
class PlanRecord:
    id: str
    session_id: str
    timestamp: int  # epoch milliseconds
    plan_text: str
    tools_used: list[str] = field(default_factory=list)
    user_query: str = ""
    status: str = "pending"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "planText": self.plan_text,
            "toolsUsed": list(self.tools_used),
            "userQuery": self.user_query,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PlanRecord":
        return cls(
            id=d["id"],
            session_id=d.get("sessionId", d.get("session_id", "")),
            timestamp=int(d.get("timestamp", 0)),
            plan_text=d.get("planText", d.get("plan_text", "")),
            tools_used=list(d.get("toolsUsed", d.get("tools_used", [])) or []),
            user_query=d.get("userQuery", d.get("user_query", "")) or "",
            status=d.get("status", "pending"),
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


def extract_plan_text(text: str) -> Optional[str]:
    """Return the stripped text if it contains planning language, else None."""
    lower = (text or "").lower()
    if not any(ind in lower for ind in _PLAN_INDICATORS):
        return None
    return text.strip()


def plan_record_from_step(
    text: str,
    tools_used: list[str],
    user_query: str,
    session_id: str,
) -> Optional[PlanRecord]:
    """Build a pending record from one step's text, or None if it is not a plan."""
    plan_text = extract_plan_text(text)
    if plan_text is None:
        return None
    ts = _now_ms()
    return PlanRecord(
        id=f"plan-{ts}",
        session_id=session_id,
        timestamp=ts,
        plan_text=plan_text,
        tools_used=list(dict.fromkeys(tools_used)),
        user_query=user_query or "",
    )


class PlanStore:
    def __init__(self, path: Optional[Path] = None):
        if path is None:
            path = config.get_plans_dir()
        self._dir = Path(path)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _filename(self, session_id: str, timestamp: int) -> Path:
        safe = _UNSAFE_CHARS.sub("_", session_id) or "default"
        return self._dir / f"{safe}-{timestamp}.json"

    def save(self, record: PlanRecord) -> Path:
        """Write ``record`` atomically (tmp file + rename)."""
        if record.status not in PLAN_STATUSES:
            raise ValueError(f"Invalid plan status: {record.status!r}")
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            target = self._filename(record.session_id, record.timestamp)
            tmp = target.with_suffix(".json.tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp, target)
        logger.debug(
            f"[PlanStore] Saved plan {record.id} (session={record.session_id}, "
            f"tools={record.tools_used})"
        )
        return target

    def load_all(self, session_id: str) -> list[PlanRecord]:
        """All records of a session, newest first. Unreadable files are skipped."""
        if not self._dir.exists():
            return []
        safe = _UNSAFE_CHARS.sub("_", session_id) or "default"
        records = []
        with self._lock:
            for path in self._dir.glob(f"{safe}-*.json"):
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        record = PlanRecord.from_dict(json.load(f))
                except (json.JSONDecodeError, OSError, KeyError, ValueError) as e:
                    logger.warning(f"[PlanStore] Skipping unreadable plan file {path.name}: {e}")
                    continue
                if record.session_id == session_id:
                    records.append(record)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    def latest(self, session_id: str) -> Optional[PlanRecord]:
        plans = self.load_all(session_id)
        return plans[0] if plans else None

    def cleanup_old(self, session_id: str, keep: Optional[int] = None) -> int:
        """Delete all but the newest ``keep`` records. Returns how many were removed."""
        if keep is None:
            keep = config.PLANS_KEEP
        plans = self.load_all(session_id)
        removed = 0
        with self._lock:
            for record in plans[keep:]:
                path = self._filename(record.session_id, record.timestamp)
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
        if removed:
            logger.debug(f"[PlanStore] Removed {removed} old plans for session {session_id}")
        return removed
