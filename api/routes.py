"""All REST + SSE endpoints for the FastAPI backend."""

import asyncio
import contextvars
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import config
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from agent.chat import ChatTurnError, run_chat_turn
from agent.event_bus import (
    DebugLogListener,
    EventBus,
    SSEEventListener,
    reset_event_bus,
    set_event_bus,
)
from agent.insight import InsightExtractor, InsightRequest as NodeInsightRequest
from agent.logging import attach_log_file, log_error
from agent.mcp_client import get_mcp_pool
from agent.messages import Message, message_from_dict, message_to_dict, visible_text
from agent.plan_store import PlanStore
from agent.stream import split_display
from agent.tool_cache import get_tool_cache
from rendering import SandboxError, SandboxUnavailableError, get_artifact_compiler
from workflow import extract_plans, get_workflow_tracker
from workflow.annotations import extract_artifacts, extract_followup
from workflow.insights import extract_insight

from .models import (
    ChatRequest,
    InsightRequest,
    InsightResponse,
    PlanRecordInfo,
    RenderRequest,
    ServerStatus,
    WorkflowRequest,
)
from .streaming import SSEBridge

router = APIRouter(prefix="/api")

# These are injected by app.py lifespan
_start_time: float = 0.0
_thread_pool: ThreadPoolExecutor = None  # type: ignore[assignment]

logger = logging.getLogger("edachat")

# session_id: alphanumeric + underscore/dot/dash
_SAFE_PATH_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _parse_messages(raw: list[dict]) -> list[Message]:
    try:
        return [message_from_dict(m) for m in raw]
    except (AttributeError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid message: {e}")


def _run_in_pool(fn, *args):
    """Run ``fn`` on the worker pool with a copy of the caller's context."""
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return loop.run_in_executor(_thread_pool, ctx.run, fn, *args)


def _insight_extractor() -> Optional[InsightExtractor]:
    """LLM extractor when a provider key is configured, else None."""
    if not config.INSIGHT_MODEL or not config.get_api_key():
        return None
    try:
        from agent.llm import create_adapter

        return InsightExtractor(create_adapter())
    except Exception as e:
        log_error("[API] Insight model unavailable, using heuristic", exc=e)
        return None


def _done_event(messages: list[Message], reply: Message, session_id: str) -> dict:
    """Final SSE payload: the message plus everything derived from the conversation."""
    conversation = [*messages, reply]
    text = visible_text(reply)
    split = split_display(reply)
    graph = get_workflow_tracker(session_id).update(conversation)
    return {
        "type": "done",
        "message": message_to_dict(reply),
        "followup": extract_followup(text),
        "display": {"thinkingSteps": split.thinking_steps, "finalText": split.final_text},
        "artifacts": [a.to_dict() for a in extract_artifacts(text, reply.id)],
        "plans": [p.to_dict() for p in extract_plans(conversation)],
        "workflow": graph.to_dict(),
    }


# ---- Chat (SSE) ----


@router.post("/chat")
async def chat(req: ChatRequest):
    """Run one assistant turn and stream its events.

    Events: ``text-delta``, ``tool-call``, ``tool-result``, ``step-finish``,
    ``activity``, then ``finish`` and ``done`` (or ``error``).
    """
    messages = _parse_messages(req.messages)
    if messages[-1].role != "user":
        raise HTTPException(status_code=400, detail="Conversation must end with a user message")

    bridge = SSEBridge(asyncio.get_running_loop())

    def _run_turn():
        attach_log_file(req.session_id)
        bus = EventBus(session_id=req.session_id)
        bus.subscribe(DebugLogListener(logger))
        bus.subscribe(SSEEventListener(bridge.callback))
        token = set_event_bus(bus)
        try:
            reply = run_chat_turn(
                messages,
                on_event=lambda event: bridge.callback(event.to_dict()),
                session_id=req.session_id,
            )
            done = _done_event(messages, reply, req.session_id)
        except ChatTurnError as e:
            bridge.error(e.message, e.status)
        except Exception as e:
            log_error("[API] Chat turn crashed", exc=e, context={"session_id": req.session_id})
            bridge.error(f"{type(e).__name__}: {e}", 500)
        else:
            bridge.finish(done)
        finally:
            reset_event_bus(token)

    async def event_generator():
        future = _run_in_pool(_run_turn)
        async for event in bridge.events():
            yield {"event": event.get("type", "message"), "data": json.dumps(event, default=str)}
        await future

    return EventSourceResponse(event_generator())


# ---- Insights ----


@router.post("/extract-insight", response_model=InsightResponse)
async def extract_insight_route(req: InsightRequest):
    """One-line finding for a response text; heuristic when no model is configured."""
    if not req.text or not req.text.strip():
        raise HTTPException(status_code=400, detail="text is required")
    phase = req.phase or "Analysis"

    extractor = _insight_extractor()
    if extractor is not None:
        insight = await _run_in_pool(extractor.extract, req.text, phase)
        if insight:
            return InsightResponse(insight=insight, source="llm")
    return InsightResponse(insight=extract_insight(req.text, phase), source="heuristic")


# ---- Workflow ----


@router.post("/workflow")
async def workflow(req: WorkflowRequest):
    """Rebuild the workflow graph for a conversation snapshot."""
    messages = _parse_messages(req.messages)
    tracker = get_workflow_tracker(req.conversation_id)
    graph = tracker.update(messages, streaming=bool(req.streaming_message_id))

    if req.enrich and not req.streaming_message_id:
        extractor = _insight_extractor()
        pending = [
            NodeInsightRequest(n.id, n.response_text, n.phase)
            for n in graph.nodes
            if n.insight_source != "annotation" and n.response_text
        ]
        if extractor is not None and pending:
            insights = await _run_in_pool(extractor.extract_batch, pending)
            tracker.merge_insights(insights)
            graph = tracker.graph()

    return {
        "workflow": graph.to_dict(),
        "plans": [p.to_dict() for p in extract_plans(messages, req.streaming_message_id)],
    }


# ---- Plans ----


@router.get("/plans/{session_id}", response_model=list[PlanRecordInfo])
async def list_plans(session_id: str):
    """Persisted plan records for a session, newest first."""
    if not _SAFE_PATH_RE.match(session_id):
        raise HTTPException(status_code=400, detail=f"Invalid session_id: {session_id!r}")
    records = await _run_in_pool(PlanStore().load_all, session_id)
    return [r.to_dict() for r in records]


# ---- Rendering ----


@router.post("/render")
async def render(req: RenderRequest):
    """Compile a visualization component, or return a structured sandbox error."""
    try:
        component = await _run_in_pool(get_artifact_compiler().render, req.code, req.props)
    except SandboxUnavailableError as e:
        return JSONResponse(status_code=503, content=e.to_dict())
    except SandboxError as e:
        return JSONResponse(status_code=422, content=e.to_dict())
    return component.to_dict()


# ---- Status ----


@router.get("/status")
async def server_status():
    """Server status, connected tool servers and cache stats."""
    pool_status = get_mcp_pool().status()
    return ServerStatus(
        uptime_seconds=time.time() - _start_time if _start_time else 0.0,
        provider=config.LLM_PROVIDER,
        model=config.CHAT_MODEL,
        api_key_configured=bool(config.get_api_key()),
        mcp_servers=pool_status.get("servers", {}),
        total_tools=pool_status.get("total_tools", 0),
        tool_cache=get_tool_cache().stats(),
        artifact_cache=get_artifact_compiler().stats(),
    ).model_dump()
