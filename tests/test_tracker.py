from workflow import WorkflowTracker, build, get_workflow_tracker, reset_workflow_trackers
from workflow.tracker import apply_insights, message_signature

from conftest import assistant, user


def _messages():
    return [
        user("u1", "check"),
        assistant("a1", '[WORKFLOW: type="sequential" insight="Annotated finding"] done'),
        assistant("a2", "Found 4 outliers in batch B."),
        assistant("a3", "Calling the tool."),
    ]


def test_signature_changes_with_content():
    msgs = _messages()
    assert message_signature(msgs) == message_signature(list(msgs))
    assert message_signature(msgs) != message_signature(msgs[:-1])


def test_stale_commit_is_discarded():
    tracker = WorkflowTracker()
    old = _messages()[:2]
    new = _messages()
    old_sig = tracker.begin(old)
    new_sig = tracker.begin(new)
    assert tracker.commit(new_sig, build(new)) is True
    assert tracker.commit(old_sig, build(old)) is False
    assert len(tracker.graph().nodes) == 3
    assert tracker.signature == new_sig


def test_update_returns_cached_graph_while_streaming():
    tracker = WorkflowTracker()
    tracker.update(_messages()[:2])
    graph = tracker.update(_messages(), streaming=True)
    assert len(graph.nodes) == 1
    assert len(tracker.update(_messages()).nodes) == 3


def test_insight_precedence():
    tracker = WorkflowTracker()
    tracker.update(_messages())
    tracker.merge_insights({
        "analysis-a1": "llm one",
        "analysis-a2": "llm two",
        "analysis-a3": None,
    })
    nodes = {n.id: n for n in tracker.graph().nodes}
    assert nodes["analysis-a1"].insight == "Annotated finding"
    assert nodes["analysis-a1"].insight_source == "annotation"
    assert nodes["analysis-a2"].insight == "llm two"
    assert nodes["analysis-a2"].insight_source == "llm"
    assert nodes["analysis-a3"].insight is None
    assert nodes["analysis-a3"].insight_source is None


def test_heuristic_insight_without_llm():
    graph = apply_insights(build(_messages()), {})
    node = graph.node("analysis-a2")
    assert node.insight_source == "heuristic"


def test_registry_is_per_conversation():
    a = get_workflow_tracker("a")
    assert get_workflow_tracker("a") is a
    assert get_workflow_tracker("b") is not a
    reset_workflow_trackers()
    assert get_workflow_tracker("a") is not a
