import json

import pytest

from agent.plan_store import PlanRecord, PlanStore, extract_plan_text, plan_record_from_step
from workflow import extract_plans
from workflow.plans import looks_like_plan

from conftest import assistant, user


def test_tagged_plans_get_ids_and_default_titles():
    msgs = [
        user("u1", "plan it"),
        assistant(
            "a1",
            '<plan title="QC" description="check">1. Load\n2. Check</plan>\n<plan>Second</plan>',
            created_at="2024-05-01T00:00:00Z",
        ),
    ]
    plans = extract_plans(msgs)
    assert [p.id for p in plans] == ["plan-a1-1", "plan-a1-0"]
    assert plans[0].title == "Plan 2"
    assert plans[1].title == "QC" and plans[1].description == "check"
    assert plans[1].timestamp == "2024-05-01T00:00:00Z"


def test_auto_detected_plan():
    text = "## Plan: QC review\nFirst we look at CVs.\n\n1. Load data\n2. Compute CV"
    assert looks_like_plan(text)
    plans = extract_plans([assistant("a1", text)])
    assert len(plans) == 1
    plan = plans[0]
    assert plan.id == "plan-auto-a1"
    assert plan.title == "Plan: QC review"
    assert plan.description == "First we look at CVs."


def test_heading_without_structure_is_not_a_plan():
    assert not looks_like_plan("# Approach\nJust one paragraph.")
    assert not looks_like_plan("1. step\n2. step")


def test_plans_are_most_recent_first_and_flag_streaming():
    msgs = [
        assistant("a1", "<plan>old</plan>"),
        user("u1", "more"),
        assistant("a2", "<plan>new</plan>"),
    ]
    plans = extract_plans(msgs, streaming_message_id="a2")
    assert [p.content for p in plans] == ["new", "old"]
    assert plans[0].is_streaming and not plans[1].is_streaming


def test_user_messages_are_ignored():
    assert extract_plans([user("u1", "<plan>mine</plan>")]) == []


def test_plan_text_detection():
    assert extract_plan_text("  Here's my plan: load then test  ") == "Here's my plan: load then test"
    assert extract_plan_text("The mean is 4.2") is None


def test_plan_record_from_step():
    record = plan_record_from_step("I will load the data", ["load", "load", "cv"], "go", "s1")
    assert record.status == "pending"
    assert record.tools_used == ["load", "cv"]
    assert record.id == f"plan-{record.timestamp}"
    assert plan_record_from_step("Result: 4", [], "", "s1") is None


def test_store_round_trip_newest_first(tmp_path):
    store = PlanStore(tmp_path / "plans")
    store.save(PlanRecord("plan-1", "s1", 1000, "first"))
    store.save(PlanRecord("plan-2", "s1", 2000, "second", ["load"], "q", "completed"))
    store.save(PlanRecord("plan-3", "other", 3000, "elsewhere"))

    records = store.load_all("s1")
    assert [r.id for r in records] == ["plan-2", "plan-1"]
    assert records[0].tools_used == ["load"]
    assert store.latest("s1").id == "plan-2"
    assert (tmp_path / "plans" / "s1-2000.json").exists()
    data = json.loads((tmp_path / "plans" / "s1-2000.json").read_text())
    assert data["planText"] == "second" and data["sessionId"] == "s1"


def test_store_rejects_unknown_status(tmp_path):
    with pytest.raises(ValueError):
        PlanStore(tmp_path).save(PlanRecord("p", "s", 1, "x", status="done"))


def test_store_skips_unreadable_files(tmp_path):
    store = PlanStore(tmp_path)
    store.save(PlanRecord("plan-1", "s1", 1000, "ok"))
    (tmp_path / "s1-5000.json").write_text("{not json")
    assert [r.id for r in store.load_all("s1")] == ["plan-1"]


def test_cleanup_old_keeps_newest(tmp_path):
    store = PlanStore(tmp_path)
    for ts in range(1, 6):
        store.save(PlanRecord(f"plan-{ts}", "s1", ts, "x"))
    assert store.cleanup_old("s1", keep=2) == 3
    assert [r.id for r in store.load_all("s1")] == ["plan-5", "plan-4"]


def test_default_store_lives_under_data_dir(data_dir):
    assert PlanStore().directory == data_dir / "plans"
    assert PlanStore().load_all("missing") == []
