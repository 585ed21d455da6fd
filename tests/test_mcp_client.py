import json
from types import SimpleNamespace

import pytest
import requests

from agent import mcp_client
from agent.mcp_client import (
    MCPClientPool,
    MCPConnectionError,
    _parse_call_result,
    close_mcp_pool,
    get_mcp_pool,
    is_auth_tool,
    load_mcp_config,
    namespace_tool,
    resolve_placeholders,
    set_mcp_pool,
    split_tool_name,
)

from conftest import FakePool


def test_missing_config_means_no_servers(tmp_path):
    assert load_mcp_config(tmp_path / "absent.json") == {}


def test_config_is_read(tmp_path):
    path = tmp_path / "mcp-config.json"
    path.write_text(json.dumps({"mcpServers": {"analytics": {"url": "http://x/mcp"}}}))
    assert load_mcp_config(path) == {"analytics": {"url": "http://x/mcp"}}


def test_malformed_config_raises(tmp_path):
    path = tmp_path / "mcp-config.json"
    path.write_text("{")
    with pytest.raises(ValueError):
        load_mcp_config(path)


def test_namespacing_round_trip():
    assert namespace_tool("analytics", "load_data") == "analytics__load_data"
    assert split_tool_name("analytics__load_data") == ("analytics", "load_data")
    with pytest.raises(ValueError):
        split_tool_name("load_data")


def test_auth_tools_are_hidden():
    assert is_auth_tool("user_login")
    assert is_auth_tool("Authenticate")
    assert not is_auth_tool("load_data")


def test_placeholders_resolve_from_environment(monkeypatch):
    monkeypatch.setenv("MCP_HOST", "example.org")
    cfg = {"url": "https://${MCP_HOST}/mcp", "args": ["--host", "${MCP_HOST}"]}
    assert resolve_placeholders(cfg, {}) == {
        "url": "https://example.org/mcp", "args": ["--host", "example.org"],
    }


def test_unset_placeholder_is_an_error(monkeypatch):
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    with pytest.raises(MCPConnectionError):
        resolve_placeholders("${NOT_SET_ANYWHERE}", {})


def test_token_is_fetched_once(monkeypatch):
    monkeypatch.delenv("ANALYTICS_TOKEN", raising=False)
    monkeypatch.setenv("ANALYTICS_USER", "alice")
    monkeypatch.setenv("ANALYTICS_PASS", "secret")
    posts = []

    def fake_post(url, json=None, timeout=None):
        posts.append((url, json))
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: {"access_token": "tok"})

    monkeypatch.setattr(mcp_client.requests, "post", fake_post)
    server = {
        "headers": {"Authorization": "Bearer ${ANALYTICS_TOKEN}", "X-Token": "${ANALYTICS_TOKEN}"},
        "token": {
            "env": "ANALYTICS_TOKEN",
            "login_url": "https://auth.example.org/login",
            "username_env": "ANALYTICS_USER",
            "password_env": "ANALYTICS_PASS",
        },
    }
    resolved = resolve_placeholders(server["headers"], server)
    assert resolved == {"Authorization": "Bearer tok", "X-Token": "tok"}
    assert posts == [("https://auth.example.org/login", {"username": "alice", "password": "secret"})]


def test_token_fetch_failure(monkeypatch):
    monkeypatch.delenv("ANALYTICS_TOKEN", raising=False)
    monkeypatch.setenv("ANALYTICS_USER", "alice")
    monkeypatch.setenv("ANALYTICS_PASS", "secret")

    def fake_post(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(mcp_client.requests, "post", fake_post)
    spec = {"env": "ANALYTICS_TOKEN", "login_url": "https://auth", "username_env": "ANALYTICS_USER",
            "password_env": "ANALYTICS_PASS"}
    with pytest.raises(MCPConnectionError):
        resolve_placeholders("${ANALYTICS_TOKEN}", {"token": spec})


def _block(text):
    return SimpleNamespace(text=text)


def test_parse_call_result_shapes():
    ok = SimpleNamespace(isError=False, content=[_block('{"rowCount": 3}')], structuredContent=None)
    assert _parse_call_result(ok) == {"rowCount": 3}

    plain = SimpleNamespace(isError=False, content=[_block("hello")], structuredContent=None)
    assert _parse_call_result(plain) == {"status": "success", "text": "hello"}

    listed = SimpleNamespace(isError=False, content=[_block("[1, 2]")], structuredContent=None)
    assert _parse_call_result(listed) == {"status": "success", "result": [1, 2]}

    failed = SimpleNamespace(isError=True, content=[_block("bad args")], structuredContent=None)
    assert _parse_call_result(failed) == {"status": "error", "isError": True, "message": "bad args"}

    structured = SimpleNamespace(isError=False, content=[], structuredContent={"a": 1})
    assert _parse_call_result(structured) == {"a": 1}


def test_unconnected_pool_reports_status_and_errors():
    pool = MCPClientPool({"analytics": {"url": "http://x"}})
    assert pool.status() == {
        "servers": {"analytics": {"connected": False, "tools": 0, "error": None}},
        "total_tools": 0,
    }
    assert pool.get_tool_schemas() == []
    result = pool.call_tool("analytics__load", {})
    assert result["isError"] is True and "not connected" in result["message"]
    assert pool.call_tool("load", {})["isError"] is True


def test_singleton_respects_installed_pool():
    fake = FakePool(tools=["analytics__load"])
    set_mcp_pool(fake)
    assert get_mcp_pool() is fake
    close_mcp_pool()
    assert fake._closed is True
