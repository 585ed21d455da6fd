"""
InsightExtractor — one-line data findings for workflow nodes via a small model.

Each node's response text is sent to ``INSIGHT_MODEL`` with a finding-first
prompt.  Calls for different nodes are independent and fan out over a
thread pool; results are merged by node id.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Optional

import config

from .event_bus import get_event_bus, INSIGHT_RESULT, DEBUG
from .llm import LLMAdapter
from .logging import log_error
from .truncation import trunc

INSIGHT_PROMPT = """You are analyzing the output from a data analysis step.

Analysis Phase: {phase}

Analysis Response:
{text}

Extract the single most important insight about THE DATA from this analysis.

CRITICAL PRIORITY ORDER:
1. DATA INTERPRETATIONS FIRST - What patterns, values, trends, or findings were discovered in the data?
2. ACTIONS ONLY IF NO DATA INSIGHTS - What was done (only if there are no interpretable findings about the data itself)

Requirements:
- Maximum 100 characters
- Be specific and quantitative when possible
- Prioritize what the data SHOWS/REVEALS over what was DONE
- Use active voice
- No unnecessary words

Examples of GOOD insights (data-focused):
- "PC1 explains 67% variance, clear separation between treatment groups"
- "High CV in lipid metabolites: avg 18%, max 34%"
- "23 metabolites show significant differences (p<0.05, FC>2)"

Examples of ACCEPTABLE insights (action-focused, use only if no data findings):
- "Loaded 245 metabolites across 120 samples from 3 batches"
- "Applied log transformation and quantile normalization"

Examples to AVOID (too vague):
- "Data was loaded"
- "Analysis completed"

Return ONLY the insight text, nothing else."""


@dataclass(frozen=True)
class InsightRequest:
    node_id: str
    text: str
    phase: str


class InsightExtractor:
    """LLM-backed insight extraction.

    Args:
        adapter: LLM adapter used for one-shot ``generate`` calls.
        model: Model name; defaults to ``config.INSIGHT_MODEL``.
        max_workers: Parallel calls in ``extract_batch``.
    """

    def __init__(
        self,
        adapter: LLMAdapter,
        model: Optional[str] = None,
        max_workers: Optional[int] = None,
    ):
        self.adapter = adapter
        self.model = model or config.INSIGHT_MODEL
        self.max_workers = max_workers or config.INSIGHT_MAX_WORKERS

    def extract(self, text: str, phase: str) -> Optional[str]:
        """Return a short finding for ``text``, or None (empty input or failure)."""
        if not text or not text.strip():
            return None
        bus = get_event_bus()
        bus.emit(
            DEBUG, agent="InsightExtractor",
            msg=f"[Insight Extractor] Analyzing {len(text)} chars for phase: {phase}",
        )
        prompt = INSIGHT_PROMPT.format(
            phase=phase or "Analysis", text=trunc(text, "insight.prompt_text"),
        )
        try:
            response = self.adapter.generate(
                model=self.model, contents=prompt, temperature=0.2, max_output_tokens=200,
            )
        except Exception as e:
            log_error("[Insight Extractor] Insight call failed", exc=e, context={"phase": phase})
            return None

        insight = (response.text or "").strip().strip('"')
        if not insight:
            return None
        insight = trunc(insight, "insight.llm")
        bus.emit(
            INSIGHT_RESULT, agent="InsightExtractor", level="debug",
            msg=f"[Insight Extractor] Generated insight: {insight!r}",
            data={"phase": phase, "insight": insight},
        )
        return insight

    def extract_batch(self, requests: list[InsightRequest]) -> dict[str, Optional[str]]:
        """Extract insights for many nodes concurrently; ``{node_id: insight}``."""
        if not requests:
            return {}
        results: dict[str, Optional[str]] = {}
        workers = max(1, min(len(requests), self.max_workers))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(contextvars.copy_context().run, self.extract, r.text, r.phase): r
                for r in requests
            }
            for future in as_completed(futures):
                results[futures[future].node_id] = future.result()
        return results
