from agent.messages import ReasoningPart, ToolCallPart, ToolResultPart, create_summary_message
from workflow import (
    all_phases,
    build,
    count_artifacts,
    nodes_by_type,
    nodes_for_phase,
)

from conftest import assistant, tool_pair, user


def _scenario_one():
    return [
        user("u1", "load X"),
        assistant(
            "a1",
            ReasoningPart(
                '[WORKFLOW: type="sequential" phase="Data Loading" insight="Loaded 10 rows"]'
            ),
            ToolCallPart("c1", "load", {"file": "X"}),
            ToolResultPart("c1", "load", {"rows": 10}),
        ),
    ]


def test_single_annotated_message_gives_one_node():
    graph = build(_scenario_one())
    assert len(graph.nodes) == 1
    assert graph.edges == ()
    node = graph.nodes[0]
    assert node.id == "analysis-a1"
    assert node.phase == "Data Loading"
    assert node.insight == "Loaded 10 rows"
    assert node.insight_source == "annotation"
    assert node.status == "completed"
    assert node.user_query == "load X"
    assert node.tool_calls[0].tool_name == "load"
    assert node.tool_calls[0].result == {"rows": 10}


def test_parallel_annotation_gives_parallel_edge():
    graph = build([
        user("u1", "check quality"),
        assistant("a1", '[WORKFLOW: type="sequential" phase="QC Assessment"] CV is 12%'),
        assistant("a2", '[WORKFLOW: type="parallel" phase="QC Assessment"] Replicates agree'),
    ])
    assert len(graph.nodes) == 2
    assert len(graph.edges) == 1
    edge = graph.edges[0]
    assert edge.type == "parallel"
    assert edge.source == "analysis-a1" and edge.target == "analysis-a2"
    assert edge.id == "analysis-a1-analysis-a2"


def test_build_is_idempotent():
    msgs = _scenario_one() + [assistant("a2", "Plotting the distribution chart")]
    assert build(msgs) == build(msgs)
    assert build(msgs).to_dict() == build(msgs).to_dict()


def test_phase_falls_back_to_tools_then_text_then_previous():
    graph = build([
        user("u1", "go"),
        assistant("a1", *tool_pair("c1", "analytics__calculate_cv", {}, {"meanCv": 12})),
        assistant("a2", "Now a statistical comparison."),
        assistant("a3", "Nothing specific here."),
    ])
    assert [n.phase for n in graph.nodes] == [
        "QC Assessment", "Statistical Testing", "Statistical Testing",
    ]
    assert graph.nodes[1].user_query is None


def test_default_phase_is_initial():
    graph = build([user("u1", "hi"), assistant("a1", "Hello there.")])
    assert graph.nodes[0].phase == "Initial"


def test_messages_without_text_or_tools_are_skipped():
    graph = build([user("u1", "hi"), assistant("a1", ""), assistant("a2", "Result is 4.")])
    assert [n.id for n in graph.nodes] == ["analysis-a2"]


def test_tool_only_message_is_a_node():
    graph = build([assistant("a1", *tool_pair("c1", "load_data", {}, {"rowCount": 3}))])
    assert len(graph.nodes) == 1
    assert graph.nodes[0].response_text is None


def test_failed_tool_marks_error_over_streaming():
    msgs = [assistant("a1", "Trying.", *tool_pair("c1", "load_data", {}, {"error": "x"}, is_error=True))]
    assert build(msgs).nodes[0].status == "error"
    assert build(msgs, streaming_message_id="a1").nodes[0].status == "error"


def test_streaming_message_is_in_progress():
    graph = build([assistant("a1", "Working on it.")], streaming_message_id="a1")
    assert graph.nodes[0].status == "in_progress"


def test_summary_message_is_not_a_user_query():
    graph = build([
        create_summary_message("earlier work"),
        assistant("a1", "Continuing."),
    ])
    assert graph.nodes[0].user_query is None


def test_duplicate_message_ids_get_index_suffix():
    graph = build([assistant("a1", "One."), assistant("a1", "Two.")])
    assert [n.id for n in graph.nodes] == ["analysis-a1", "analysis-a1-1"]
    graph.validate()


def test_heuristic_insight_when_not_annotated():
    graph = build([assistant("a1", "Loading now. Found 23 significant metabolites.")])
    node = graph.nodes[0]
    assert node.insight == "Found 23 significant metabolites"
    assert node.insight_source == "heuristic"


def test_artifacts_and_queries():
    graph = build([
        user("u1", "plot it"),
        assistant("a1", "Here is a visualization:\n```jsx\nexport default () => null;\n```"),
        assistant("a2", *tool_pair("c1", "load_data", {}, {})),
    ])
    assert graph.nodes[0].artifacts == ("artifact-a1-0",)
    assert count_artifacts(graph) == 1
    assert all_phases(graph) == ["Visualization", "Data Loading"]
    assert len(nodes_for_phase(graph, "Data Loading")) == 1
    assert len(nodes_by_type(graph, "analysis")) == 2


def test_edges_point_forward():
    msgs = [assistant(f"a{i}", f"Step {i} found {i} rows.") for i in range(5)]
    graph = build(msgs)
    graph.validate()
    assert len(graph.edges) == 4
    assert all(e.type == "sequential" for e in graph.edges)


def test_to_dict_shape():
    data = build(_scenario_one()).to_dict()
    node = data["nodes"][0]
    assert node["userQuery"] == "load X"
    assert node["insightSource"] == "annotation"
    assert node["metadata"]["isParallel"] is False
    assert data["edges"] == []
