import pytest

from agent.chat import ChatTurnError, run_chat_turn
from agent.event_bus import PLAN_CREATED, TOOL_CACHE_HIT
from agent.messages import TextPart, ToolCallPart, ToolResultPart
from agent.plan_store import PlanStore
from agent.stream import ErrorEvent, Finish, StepFinish, TextDelta, ToolResultEvent
from agent.tool_cache import ToolCache

from conftest import FakeAdapter, FakePool, QuotaError, assistant, llm_response, tool_pair, user

LOAD = "analytics__load_compound_data"


@pytest.fixture
def pool():
    return FakePool({LOAD: {"status": "success", "rowCount": 10}})


def _run(messages, adapter, pool, tmp_path, **kwargs):
    events = []
    reply = run_chat_turn(
        messages,
        adapter=adapter,
        pool=pool,
        cache=kwargs.pop("cache", ToolCache()),
        on_event=events.append,
        plan_store=PlanStore(tmp_path / "plans"),
        **kwargs,
    )
    return reply, events


def test_plain_answer(bus, pool, tmp_path):
    adapter = FakeAdapter([llm_response("The answer is 4.")])
    reply, events = _run([user("u1", "2+2?")], adapter, pool, tmp_path)

    assert reply.role == "assistant"
    assert reply.parts == (TextPart("The answer is 4."),)
    assert [type(e) for e in events] == [TextDelta, TextDelta, StepFinish, Finish]
    assert events[-1].finish_reason == "stop"
    assert events[-1].usage["totalTokens"] == 15
    assert adapter.sent == ["2+2?"]


def test_tool_loop_feeds_results_back(bus, pool, tmp_path):
    adapter = FakeAdapter([
        llm_response("Loading.", [("c1", LOAD, {"file": "X"})]),
        llm_response("Loaded 10 rows."),
    ])
    reply, events = _run([user("u1", "load X")], adapter, pool, tmp_path)

    assert pool.calls == [(LOAD, {"file": "X"})]
    assert reply.parts == (
        TextPart("Loading."),
        ToolCallPart("c1", LOAD, {"file": "X"}),
        ToolResultPart("c1", LOAD, {"status": "success", "rowCount": 10}, False),
        TextPart("Loaded 10 rows."),
    )
    assert adapter.sent[1] == [{
        "tool": LOAD, "id": "c1",
        "result": {"status": "success", "rowCount": 10}, "is_error": False,
    }]
    finish = events[-1]
    assert isinstance(finish, Finish) and finish.steps == 2
    assert adapter.created[0]["tools"][0].name == LOAD


def test_identical_call_hits_the_cache(bus, pool, tmp_path):
    cache = ToolCache()
    for _ in range(2):
        adapter = FakeAdapter([llm_response("", [("c1", LOAD, {"file": "X"})]), llm_response("ok")])
        _, events = _run([user("u1", "load X")], adapter, pool, tmp_path, cache=cache)
    assert len(pool.calls) == 1
    results = [e for e in events if isinstance(e, ToolResultEvent)]
    assert results[0].cached is True


def test_call_already_in_history_is_reused(bus, pool, tmp_path):
    history = [
        user("u1", "load X"),
        assistant("a1", *tool_pair("c0", LOAD, {"file": "X"}, {"rowCount": 10})),
        user("u2", "load it again"),
    ]
    adapter = FakeAdapter([llm_response("", [("c1", LOAD, {"file": "X"})]), llm_response("same")])
    _, events = _run(history, adapter, pool, tmp_path)

    assert pool.calls == []
    result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert result.cached is True and result.result == {"rowCount": 10}
    assert bus.get_events(types={TOOL_CACHE_HIT})


def test_history_context_reaches_the_system_prompt(bus, pool, tmp_path):
    history = [
        user("u1", "load X"),
        assistant("a1", *tool_pair("c0", LOAD, {"file": "X"}, {"rowCount": 10})),
        user("u2", "now summarize"),
    ]
    adapter = FakeAdapter([llm_response("Summary.")])
    _run(history, adapter, pool, tmp_path)

    created = adapter.created[0]
    assert created["system_prompt"].startswith("## Previous Data Loaded")
    assert "Compound list (10 rows)" in created["system_prompt"]
    assert created["history"] == [{"role": "user", "id": "u1"}, {"role": "assistant", "id": "a1"}]
    assert adapter.sent[0] == "now summarize"


def test_tool_exception_becomes_error_result(bus, tmp_path):
    pool = FakePool({LOAD: RuntimeError("server crashed")})
    adapter = FakeAdapter([llm_response("", [("c1", LOAD, {})]), llm_response("It failed.")])
    reply, _ = _run([user("u1", "load")], adapter, pool, tmp_path)

    result = next(p for p in reply.parts if isinstance(p, ToolResultPart))
    assert result.is_error is True
    assert "server crashed" in result.result["message"]
    assert adapter.sent[1][0]["is_error"] is True


def test_conversation_must_end_with_user(bus, pool, tmp_path):
    with pytest.raises(ChatTurnError) as exc:
        _run([assistant("a1", "hi")], FakeAdapter(), pool, tmp_path)
    assert exc.value.status == 400


def test_first_step_failure_raises(bus, pool, tmp_path):
    with pytest.raises(ChatTurnError) as exc:
        _run([user("u1", "hi")], FakeAdapter([RuntimeError("down")]), pool, tmp_path)
    assert exc.value.status == 502


def test_quota_failure_is_429(bus, pool, tmp_path):
    with pytest.raises(ChatTurnError) as exc:
        _run([user("u1", "hi")], FakeAdapter([QuotaError("slow down")]), pool, tmp_path)
    assert exc.value.status == 429


def test_later_failure_keeps_partial_message(bus, pool, tmp_path):
    adapter = FakeAdapter([
        llm_response("Loading.", [("c1", LOAD, {})]),
        RuntimeError("connection reset"),
    ])
    reply, events = _run([user("u1", "load")], adapter, pool, tmp_path)

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].status == 502
    assert not any(isinstance(e, Finish) for e in events)
    assert len(reply.parts) == 3


def test_max_steps(bus, pool, tmp_path):
    adapter = FakeAdapter([llm_response("", [(f"c{i}", LOAD, {"i": i})]) for i in range(5)])
    _, events = _run([user("u1", "loop")], adapter, pool, tmp_path, max_steps=2)
    assert events[-1].finish_reason == "max-steps"
    assert events[-1].steps == 2
    assert len(pool.calls) == 2


def test_plan_in_step_text_is_saved(bus, pool, tmp_path):
    adapter = FakeAdapter([llm_response("Here's my plan: load the data, then check CVs.")])
    _run([user("u1", "analyze")], adapter, pool, tmp_path, session_id="s1")

    records = PlanStore(tmp_path / "plans").load_all("s1")
    assert len(records) == 1
    assert records[0].user_query == "analyze"
    assert bus.get_events(types={PLAN_CREATED})
