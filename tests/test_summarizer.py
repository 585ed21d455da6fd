import pytest

from agent.event_bus import SUMMARIZATION_FALLBACK
from agent.messages import SUMMARY_MARKER, ToolCallPart, is_summary_message
from agent.summarizer import fallback_summary, render_transcript, summarize, summarize_if_needed

from conftest import FakeAdapter, assistant, user


def _conversation(n: int) -> list:
    msgs = []
    for i in range(n):
        if i % 2 == 0:
            msgs.append(user(f"u{i}", f"question {i} " + "x" * 50))
        else:
            msgs.append(assistant(f"a{i}", f"answer {i} " + "y" * 50,
                                  ToolCallPart(f"c{i}", f"tool_{i}", {})))
    return msgs


def test_short_history_is_returned_untouched():
    msgs = _conversation(3)
    result = summarize(msgs, keep_recent=5, adapter=FakeAdapter(generate_text="unused"))
    assert result.summarized_count == 0
    assert result.recent_messages is msgs


def test_summarize_keeps_recent_suffix(bus):
    adapter = FakeAdapter(generate_text="User loaded compounds.")
    msgs = _conversation(8)
    result = summarize(msgs, keep_recent=5, adapter=adapter)
    assert result.summary_text == "User loaded compounds."
    assert result.recent_messages == msgs[3:]
    assert result.summarized_count == 3
    assert "Called tool: tool_1" in adapter.prompts[0]


def test_failed_summary_uses_tool_name_fallback(bus):
    adapter = FakeAdapter(generate_error=RuntimeError("model down"))
    msgs = _conversation(8)
    result = summarize(msgs, keep_recent=5, adapter=adapter)
    assert result.summary_text == fallback_summary(msgs[:3])
    assert "tool_1" in result.summary_text
    assert bus.get_events(types={SUMMARIZATION_FALLBACK})


@pytest.mark.parametrize("keep_recent", [0, 1, 5])
@pytest.mark.parametrize("n", [0, 1, 3, 5, 8])
def test_split_covers_every_message_when_summary_fails(bus, n, keep_recent):
    msgs = _conversation(n)
    result = summarize(msgs, keep_recent=keep_recent,
                       adapter=FakeAdapter(generate_error=RuntimeError("model down")))
    assert result.summarized_count + len(result.recent_messages) == n
    assert result.recent_messages == msgs[result.summarized_count:]
    assert len(result.recent_messages) == min(n, keep_recent)
    if n > keep_recent:
        assert result.summary_text.strip()
        assert result.summary_text == fallback_summary(msgs[:result.summarized_count])
    else:
        assert result.summarized_count == 0
        assert result.summary_text == ""


def test_empty_summary_text_counts_as_failure(bus):
    result = summarize(_conversation(8), keep_recent=2, adapter=FakeAdapter(generate_text="  "))
    assert result.summary_text.startswith("Previous conversation (6 messages)")


def test_fallback_without_tools():
    assert "including: none" in fallback_summary([user("u1", "hi")])


def test_transcript_prefixes_roles():
    transcript = render_transcript(_conversation(2))
    assert transcript.startswith("User: question 0")
    assert "\n\n---\n\nAssistant: answer 1" in transcript


def test_summarize_if_needed_below_trigger(bus):
    msgs = _conversation(4)
    processed = summarize_if_needed("system", msgs, adapter=FakeAdapter(), trigger=1_000_000)
    assert processed.summarized is False
    assert processed.messages == msgs


def test_summarize_if_needed_prepends_summary(bus):
    msgs = _conversation(10)
    processed = summarize_if_needed(
        "system", msgs, adapter=FakeAdapter(generate_text="short summary"),
        trigger=10, keep_recent=5,
    )
    assert processed.summarized is True
    assert len(processed.messages) == 6
    head = processed.messages[0]
    assert is_summary_message(head)
    assert head.parts[0].text == f"{SUMMARY_MARKER}\n\nshort summary"
    assert processed.messages[1:] == msgs[5:]
    assert processed.after.total < processed.before.total


def test_previous_summary_is_summarized_again(bus):
    adapter = FakeAdapter(generate_text="first")
    first = summarize_if_needed("s", _conversation(10), adapter=adapter, trigger=10, keep_recent=5)
    adapter.generate_text = "second"
    again = summarize_if_needed("s", first.messages + _conversation(6),
                                adapter=adapter, trigger=10, keep_recent=5)
    assert SUMMARY_MARKER in adapter.prompts[-1]
    assert again.messages[0].parts[0].text.endswith("second")
