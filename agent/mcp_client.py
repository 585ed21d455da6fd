"""
MCP client pool for the external data-analysis tool servers.

Reads ``mcp-config.json`` (``{"mcpServers": {name: {...}}}``), connects to
every configured server over stdio or streamable HTTP, and exposes the
merged tool set with names namespaced as ``{server}__{tool}``.

A background daemon thread runs the async event loop that owns all MCP
sessions; ``call_tool()`` is a synchronous bridge for the chat turn
running in a worker thread.  One server failing to connect only removes
that server's tools.
"""

import asyncio
import atexit
import json
import os
import re
import threading
from contextlib import AsyncExitStack
from datetime import timedelta
from pathlib import Path
from typing import Optional

import requests

import config

from .event_bus import get_event_bus, DEBUG, MCP_CONNECTED, MCP_CONNECT_ERROR
from .logging import log_error

NAMESPACE_SEP = "__"

# Credentials are provisioned out of band; these tools are never exposed.
_AUTH_KEYWORDS = ("login", "auth")

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_CONNECT_TIMEOUT = 60
_TOKEN_TIMEOUT = 15


class MCPConnectionError(RuntimeError):
    """A server could not be configured or reached."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def load_mcp_config(path: Optional[Path] = None) -> dict[str, dict]:
    """Return ``{server_name: server_config}`` from the MCP config file.

    A missing file means no servers; a malformed one raises ValueError.
    """
    path = Path(path or config.MCP_CONFIG_PATH)
    if not path.exists():
        get_event_bus().emit(
            DEBUG, agent="MCP", level="warning",
            msg=f"[MCP] No MCP configuration at {path}; no external tools available",
        )
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid MCP configuration {path}: {e}") from e
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ValueError(f"'mcpServers' in {path} must be an object")
    return servers


def fetch_access_token(token_spec: dict) -> str:
    """Log in with username/password env vars and return the access token."""
    login_url = token_spec.get("login_url")
    username = os.environ.get(token_spec.get("username_env", ""), "")
    password = os.environ.get(token_spec.get("password_env", ""), "")
    if not login_url or not username or not password:
        raise MCPConnectionError(
            f"Credentials not found. Set {token_spec.get('env')} or "
            f"({token_spec.get('username_env')} + {token_spec.get('password_env')}) in .env"
        )
    try:
        resp = requests.post(
            login_url,
            json={"username": username, "password": password},
            timeout=_TOKEN_TIMEOUT,
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
    except (requests.RequestException, ValueError) as e:
        raise MCPConnectionError(f"Token fetch failed for {login_url}: {e}") from e
    if not token:
        raise MCPConnectionError(f"No access_token in response from {login_url}")
    return token


def resolve_placeholders(value, server_cfg: dict, _cache: Optional[dict] = None):
    """Replace ``${VAR}`` in strings (recursively) from the environment.

    A variable named by the server's ``token.env`` that is not set is
    fetched once via ``fetch_access_token``.  Any other unset variable is
    a configuration error.
    """
    cache = {} if _cache is None else _cache
    token_spec = server_cfg.get("token") or {}

    def _lookup(match: re.Match) -> str:
        var = match.group(1)
        if var in cache:
            return cache[var]
        val = os.environ.get(var)
        if val is None and token_spec.get("env") == var:
            val = fetch_access_token(token_spec)
        if val is None:
            raise MCPConnectionError(f"Environment variable {var} is not set")
        cache[var] = val
        return val

    if isinstance(value, str):
        return _PLACEHOLDER_RE.sub(_lookup, value)
    if isinstance(value, list):
        return [resolve_placeholders(v, server_cfg, cache) for v in value]
    if isinstance(value, dict):
        return {k: resolve_placeholders(v, server_cfg, cache) for k, v in value.items()}
    return value


def is_auth_tool(tool_name: str) -> bool:
    lower = tool_name.lower()
    return any(k in lower for k in _AUTH_KEYWORDS)


def namespace_tool(server: str, tool: str) -> str:
    return f"{server}{NAMESPACE_SEP}{tool}"


def split_tool_name(namespaced: str) -> tuple[str, str]:
    """Inverse of ``namespace_tool``. Raises ValueError when not namespaced."""
    server, sep, tool = namespaced.partition(NAMESPACE_SEP)
    if not sep or not server or not tool:
        raise ValueError(f"Tool name {namespaced!r} is not namespaced as server__tool")
    return server, tool


def _error_payload(message: str) -> dict:
    return {"status": "error", "isError": True, "message": message}


def _parse_call_result(result) -> dict:
    """Normalise an MCP CallToolResult into a JSON-serialisable dict."""
    texts = [block.text for block in (result.content or []) if hasattr(block, "text")]
    if result.isError:
        return _error_payload(texts[0] if texts else "Unknown MCP error")
    structured = getattr(result, "structuredContent", None)
    if structured:
        return structured
    for text in texts:
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return {"status": "success", "text": text}
        return parsed if isinstance(parsed, dict) else {"status": "success", "result": parsed}
    return {"status": "success", "text": ""}


# ---------------------------------------------------------------------------
# MCPClientPool
# ---------------------------------------------------------------------------

class MCPClientPool:
    """Persistent MCP sessions for every configured server.

    Args:
        servers: ``{name: server_config}``; defaults to ``load_mcp_config()``.
    """

    def __init__(self, servers: Optional[dict[str, dict]] = None):
        self._servers = dict(servers) if servers is not None else load_mcp_config()
        self._sessions: dict[str, object] = {}
        self._stacks: dict[str, AsyncExitStack] = {}
        self._tools: dict[str, dict] = {}  # namespaced name -> schema
        self._failed: dict[str, str] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._closed = False

    # ---- lifecycle ----

    def start(self, timeout: float = _CONNECT_TIMEOUT) -> "MCPClientPool":
        """Spawn the loop thread and connect to all servers."""
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="mcp-pool")
        self._thread.start()
        if not self._ready.wait(timeout=timeout):
            get_event_bus().emit(
                DEBUG, agent="MCP", level="warning",
                msg=f"[MCP] Connecting servers took longer than {timeout}s",
            )
        return self

    def _run_loop(self):
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._async_connect_all())
            self._ready.set()
            loop.run_forever()
        finally:
            self._ready.set()
            try:
                loop.run_until_complete(self._async_cleanup())
            except Exception as e:
                get_event_bus().emit(DEBUG, agent="MCP", msg=f"[MCP] Cleanup error: {e}")
            loop.close()

    async def _async_connect_all(self):
        get_event_bus().emit(
            DEBUG, agent="MCP", level="info",
            msg=f"[MCP] Initializing {len(self._servers)} MCP servers...",
        )
        for name, server_cfg in self._servers.items():
            try:
                await self._async_connect(name, server_cfg)
            except Exception as e:
                self._failed[name] = str(e)
                log_error(f"[MCP] Failed to connect to {name}", exc=e, context={"server": name})
                get_event_bus().emit(
                    MCP_CONNECT_ERROR, agent="MCP", level="warning",
                    msg=f"[MCP] Failed to connect to {name}: {e}",
                    data={"server": name, "error": str(e)},
                )
        get_event_bus().emit(
            DEBUG, agent="MCP", level="info",
            msg=f"[MCP] Connected to {len(self._sessions)} servers, {len(self._tools)} tools available",
        )

    async def _async_connect(self, name: str, server_cfg: dict):
        from mcp.client.session import ClientSession

        cfg = resolve_placeholders(
            {k: v for k, v in server_cfg.items() if k != "token"}, server_cfg
        )
        stack = AsyncExitStack()
        try:
            if "command" in cfg:
                from mcp.client.stdio import stdio_client, StdioServerParameters

                params = StdioServerParameters(
                    command=cfg["command"],
                    args=list(cfg.get("args", [])),
                    env={**os.environ, **cfg.get("env", {})},
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            elif "url" in cfg:
                from mcp.client.streamable_http import streamablehttp_client

                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(cfg["url"], headers=cfg.get("headers") or None)
                )
            else:
                raise MCPConnectionError(f"Server {name} needs either 'command' or 'url'")

            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listed = await session.list_tools()
        except BaseException:
            await stack.aclose()
            raise

        self._sessions[name] = session
        self._stacks[name] = stack
        loaded = 0
        for t in listed.tools:
            if is_auth_tool(t.name):
                get_event_bus().emit(
                    DEBUG, agent="MCP",
                    msg=f"[MCP] Skipping auth tool: {namespace_tool(name, t.name)} (pre-authenticated)",
                )
                continue
            self._tools[namespace_tool(name, t.name)] = {
                "name": namespace_tool(name, t.name),
                "description": t.description or "",
                "parameters": getattr(t, "inputSchema", None)
                or {"type": "object", "properties": {}, "required": []},
            }
            loaded += 1
        get_event_bus().emit(
            MCP_CONNECTED, agent="MCP", level="info",
            msg=f"[MCP] Connected to {name}: {loaded}/{len(listed.tools)} tools",
            data={"server": name, "tools": loaded},
        )

    async def _async_cleanup(self):
        for name, stack in list(self._stacks.items()):
            try:
                await stack.aclose()
            except Exception as e:
                get_event_bus().emit(DEBUG, agent="MCP", msg=f"[MCP] Failed to close {name}: {e}")
        self._stacks.clear()
        self._sessions.clear()

    def close_all(self):
        """Close every session and stop the loop thread."""
        if self._closed:
            return
        self._closed = True
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=10)
        get_event_bus().emit(DEBUG, agent="MCP", msg="[MCP] All clients closed")

    # ---- tools ----

    def get_tool_schemas(self) -> list[dict]:
        """Merged ``{name, description, parameters}`` schemas, namespaced."""
        return list(self._tools.values())

    def get_tool_names(self) -> set[str]:
        return set(self._tools)

    def has_tool(self, namespaced: str) -> bool:
        return namespaced in self._tools

    def call_tool(self, namespaced: str, args: dict, timeout: float = 120) -> dict:
        """Run a namespaced tool. Failures come back as an error payload."""
        try:
            server, tool = split_tool_name(namespaced)
        except ValueError as e:
            return _error_payload(str(e))
        session = self._sessions.get(server)
        if self._closed or session is None or self._loop is None:
            return _error_payload(f"MCP server {server!r} is not connected")
        if namespaced not in self._tools:
            return _error_payload(f"Unknown tool {namespaced!r}")

        async def _call():
            result = await session.call_tool(
                name=tool,
                arguments=args or {},
                read_timeout_seconds=timedelta(seconds=timeout),
            )
            return _parse_call_result(result)

        future = asyncio.run_coroutine_threadsafe(_call(), self._loop)
        try:
            return future.result(timeout=timeout)
        except Exception as e:
            log_error(f"[MCP] Tool call failed: {namespaced}", exc=e, context={"args": args})
            return _error_payload(f"{type(e).__name__}: {e}")

    def status(self) -> dict:
        per_server = {}
        for name in self._servers:
            count = sum(1 for t in self._tools if t.startswith(name + NAMESPACE_SEP))
            per_server[name] = {
                "connected": name in self._sessions,
                "tools": count,
                "error": self._failed.get(name),
            }
        return {"servers": per_server, "total_tools": len(self._tools)}

    def is_connected(self) -> bool:
        return self._loop is not None and self._loop.is_running() and not self._closed


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_pool: Optional[MCPClientPool] = None
_pool_lock = threading.Lock()


def get_mcp_pool() -> MCPClientPool:
    """Get or create the process-wide pool (connects on first call)."""
    global _pool
    if _pool is not None and not _pool._closed:
        return _pool
    with _pool_lock:
        if _pool is None or _pool._closed:
            _pool = MCPClientPool().start()
    return _pool


def set_mcp_pool(pool: Optional[MCPClientPool]) -> None:
    """Install a pool (tests, or a pre-started pool from the server lifespan)."""
    global _pool
    _pool = pool


def close_mcp_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close_all()
        _pool = None


atexit.register(close_mcp_pool)
