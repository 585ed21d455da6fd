import json

import pytest

import config
from agent.truncation import trunc


@pytest.fixture
def user_config(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", path)
    monkeypatch.setattr(config, "_LOCAL_CONFIG_PATH", tmp_path / "absent.json")
    yield path
    monkeypatch.undo()
    config.reload_config()


def test_defaults_without_config_file(user_config):
    config.reload_config()
    assert config.MAX_STEPS == 25
    assert config.SUMMARIZATION_TRIGGER == 30_000
    assert config.KEEP_RECENT_MESSAGES == 5
    assert config.CHARS_PER_TOKEN == 4


def test_reload_applies_user_settings(user_config):
    user_config.write_text(json.dumps({
        "max_steps": 7,
        "context": {"keep_recent_messages": 2},
        "truncation": {"console.text": 10},
    }))
    config.reload_config()
    assert config.MAX_STEPS == 7
    assert config.KEEP_RECENT_MESSAGES == 2
    assert config.get("context.keep_recent_messages") == 2
    assert trunc("z" * 50, "console.text") == "z" * 7 + "..."


def test_provider_section_wins(user_config):
    user_config.write_text(json.dumps({
        "llm_provider": "openai",
        "model": "top-level-model",
        "providers": {"openai": {"model": "provider-model"}},
    }))
    config.reload_config()
    assert config.LLM_PROVIDER == "openai"
    assert config.CHAT_MODEL == "provider-model"
    assert config.INSIGHT_MODEL == "gpt-4o-mini"


def test_data_dir_from_environment(data_dir):
    assert config.get_data_dir() == data_dir.resolve()
    assert config.get_plans_dir() == data_dir.resolve() / "plans"


def test_api_key_per_provider(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert config.get_api_key("anthropic") == "a-key"
    assert config.get_api_key("openai") is None
    assert config.get_api_key("unknown") is None
