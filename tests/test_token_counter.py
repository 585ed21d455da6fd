import config
from agent.llm import FunctionSchema
from agent.messages import Message
from agent.token_counter import (
    context_size,
    count_message_tokens,
    count_messages_tokens,
    count_tokens,
    count_tool_tokens,
)

from conftest import assistant, tool_pair, user


def test_count_tokens_is_ceiling_of_chars():
    assert count_tokens("") == 0
    assert count_tokens("a") == 1
    assert count_tokens("abcd") == 1
    assert count_tokens("abcde") == 2


def test_longer_text_never_counts_fewer_tokens():
    previous = 0
    for n in range(0, 50):
        current = count_tokens("x" * n)
        assert current >= previous
        previous = current


def test_message_tokens_include_role_and_tool_payloads():
    plain = count_message_tokens(user("u1", "hello there"))
    assert plain == -(-(len("user") + len("hello there")) // config.CHARS_PER_TOKEN)

    with_tools = assistant("a1", "x", *tool_pair("c1", "load_data", {"id": 1}, {"rows": [1, 2, 3]}))
    assert count_message_tokens(with_tools) > count_message_tokens(assistant("a2", "x"))


def test_empty_message_has_role_tokens_only():
    assert count_message_tokens(Message(id="m", role="user")) == 1


def test_messages_tokens_is_a_sum():
    msgs = [user("u1", "a" * 40), assistant("a1", "b" * 40)]
    assert count_messages_tokens(msgs) == sum(count_message_tokens(m) for m in msgs)


def test_tool_tokens_accepts_schemas_and_dicts():
    schema = FunctionSchema("t", "desc", {"type": "object"})
    as_dict = {"name": "t", "description": "desc", "parameters": {"type": "object"}}
    assert count_tool_tokens([schema]) == count_tool_tokens([as_dict]) > 0
    assert count_tool_tokens(None) == 0


def test_context_size_threshold_is_strictly_greater():
    msgs = [user("u1", "x" * 36)]  # 4 + 36 chars -> 10 tokens
    size = context_size("", msgs, trigger=10)
    assert size.total == 10
    assert size.exceeds_threshold is False
    assert context_size("abcd", msgs, trigger=10).exceeds_threshold is True
