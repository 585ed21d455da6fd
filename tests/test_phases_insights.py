from workflow.insights import extract_insight
from workflow.phases import (
    DEFAULT_PHASE,
    TOOL_PHASE_RULES,
    PhaseRule,
    get_phase_color,
    get_phase_icon,
    is_typically_parallel,
    phase_from_text,
    phase_from_tools,
)


def test_tool_rules_are_ordered():
    assert phase_from_tools(["analytics__load_compounds"]) == "Data Loading"
    assert phase_from_tools(["analytics__calculate_cv"]) == "QC Assessment"
    assert phase_from_tools(["run_pca"]) == "Dimensionality Reduction"
    assert phase_from_tools(["plot_histogram"]) == "Visualization"
    assert phase_from_tools(["mystery"]) is None
    assert phase_from_tools([]) is None


def test_tool_rule_order_decides_between_phases():
    # "load" beats "stat" because Data Loading is checked first
    assert phase_from_tools(["load_stats"]) == "Data Loading"
    assert [r.phase for r in TOOL_PHASE_RULES][0] == "Data Loading"


def test_rules_are_extensible():
    rule = PhaseRule("Custom", ("zzz",))
    assert rule.matches("a_zzz_tool")
    assert not rule.matches("other")


def test_text_rules_match_word_prefixes():
    assert phase_from_text("Now loading the file") == "Data Loading"
    assert phase_from_text("The coefficient of variation is low") == "QC Assessment"
    assert phase_from_text("Running a statistical test") == "Statistical Testing"
    assert phase_from_text("the latest numbers") is None
    assert phase_from_text("") is None


def test_phase_styles():
    assert get_phase_color("Data Loading") == "#3b82f6"
    assert get_phase_color("Unknown") == get_phase_color(DEFAULT_PHASE)
    assert get_phase_icon("Visualization") == "bar-chart-3"
    assert is_typically_parallel("QC Assessment")
    assert not is_typically_parallel("Data Loading")


def test_insight_prefers_sentences_with_results():
    text = "Loading the dataset now. The table contains 245 metabolites across 3 batches."
    assert extract_insight(text) == "The table contains 245 metabolites across 3 batches"


def test_insight_skips_action_sentences():
    assert extract_insight("Calling the tool. Running the analysis.") is None


def test_short_insight_is_combined_with_next_sentence():
    insight = extract_insight("Found 3 outliers. They sit in batch B")
    assert insight == "Found 3 outliers. They sit in batch B"


def test_insight_is_truncated():
    insight = extract_insight("Found " + "x" * 300, max_length=50)
    assert len(insight) == 50 and insight.endswith("...")


def test_intention_needs_phase_term():
    text = "Let me compute the averages"
    assert extract_insight(text, "Data Loading") is None
    assert extract_insight("Let me load the data file", "Data Loading") == "Let me load the data file"


def test_insight_ignores_markup():
    text = '[WORKFLOW: type="sequential"] **Detected** 12 `peaks`\n---FOLLOWUP---\nNext?'
    assert extract_insight(text) == "Detected 12 peaks"


def test_empty_text_has_no_insight():
    assert extract_insight("") is None
    assert extract_insight("   ") is None
