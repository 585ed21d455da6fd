"""Conversation core for the exploratory-data-analysis chat assistant.

Lazy imports keep ``import agent.truncation`` (used by workflow/) from
pulling in the LLM SDKs:
workflow.* → agent.truncation → agent.__init__ → agent.chat → workflow.*
"""


def __getattr__(name: str):
    if name in ("run_chat_turn", "ChatTurnError"):
        from .chat import run_chat_turn, ChatTurnError
        return run_chat_turn if name == "run_chat_turn" else ChatTurnError
    if name == "get_system_prompt":
        from .prompts import get_system_prompt
        return get_system_prompt
    raise AttributeError(f"module 'agent' has no attribute {name!r}")
