import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secret: stays in .env (per-provider env vars: OPENAI_API_KEY, ANTHROPIC_API_KEY,
# plus whatever MCP server tokens mcp-config.json references)

# User config: loaded from ~/.edachat/config.json (primary)
# or project-root config.json (fallback).
CONFIG_PATH = Path.home() / ".edachat" / "config.json"
_LOCAL_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"
_user_config: dict = {}


def _load_config() -> dict:
    # Project-local config.json as base, user home config overlaid on top
    merged: dict = {}
    for path in (_LOCAL_CONFIG_PATH, CONFIG_PATH):
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    merged.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                pass
    return merged


def get(key: str, default=None):
    """Get a config value by dot-separated key. E.g. get('tool_cache.max_size', 50)"""
    keys = key.split(".")
    val = _user_config
    for k in keys:
        if isinstance(val, dict):
            val = val.get(k)
        else:
            return default
    return val if val is not None else default


_user_config = _load_config()


# ---- Data directory -----------------------------------------------------------
# Base directory for logs and plan records.
# Priority: EDACHAT_DIR env var > "data_dir" config key > ~/.edachat

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``EDACHAT_DIR`` environment variable (highest — useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.edachat`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("EDACHAT_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".edachat"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- LLM provider config ------------------------------------------------------
LLM_PROVIDER = get("llm_provider", "anthropic")  # "anthropic", "openai"

_PROVIDER_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def get_api_key(provider: str | None = None) -> str | None:
    """Return the API key for the given provider.

    Each provider uses its own env var:
      openai    → OPENAI_API_KEY
      anthropic → ANTHROPIC_API_KEY
    """
    p = (provider or LLM_PROVIDER).lower()
    env_key = _PROVIDER_ENV_KEYS.get(p)
    if env_key:
        return os.getenv(env_key)
    return None


# ---- Per-provider defaults ---------------------------------------------------
# Used as final fallback when neither providers.<active>.key nor a
# top-level key is set in config.json.
_PROVIDER_DEFAULTS = {
    "openai": {
        "model": "gpt-4o",
        "summary_model": "gpt-4o-mini",
        "insight_model": "gpt-4o-mini",
        "base_url": None,
    },
    "anthropic": {
        "model": "claude-sonnet-4-5",
        "summary_model": "claude-haiku-4-5",
        "insight_model": "claude-haiku-4-5",
        "base_url": None,
    },
}


def _provider_get(key: str, default=None):
    """Get a config value with provider-section priority.

    Resolution order:
    1. providers.<active_provider>.key  (provider-specific)
    2. Top-level key                    (override)
    3. _PROVIDER_DEFAULTS[provider].key (hardcoded defaults)
    4. default argument
    """
    provider = get("llm_provider", "anthropic")
    val = get(f"providers.{provider}.{key}")
    if val is not None:
        return val
    val = get(key)
    if val is not None:
        return val
    provider_defaults = _PROVIDER_DEFAULTS.get(provider, {})
    if provider_defaults.get(key) is not None:
        return provider_defaults[key]
    return default


# ---- Model tiers ---------------------------------------------------------------
# chat = main tool-calling turn, summary = history compression,
# insight = one-line workflow node findings.
LLM_BASE_URL = _provider_get("base_url")
CHAT_MODEL = _provider_get("model")
SUMMARY_MODEL = _provider_get("summary_model") or CHAT_MODEL
INSIGHT_MODEL = _provider_get("insight_model") or SUMMARY_MODEL

# ---- Context window ------------------------------------------------------------
SUMMARIZATION_TRIGGER = get("context.summarization_trigger", 30_000)
KEEP_RECENT_MESSAGES = get("context.keep_recent_messages", 5)
CHARS_PER_TOKEN = get("context.chars_per_token", 4)
MAX_STEPS = get("max_steps", 25)

# ---- Tool result cache ---------------------------------------------------------
TOOL_CACHE_MAX_SIZE = get("tool_cache.max_size", 50)
TOOL_CACHE_TTL_SECONDS = get("tool_cache.ttl_seconds", 30 * 60)
TOOL_CACHE_CLEANUP_SECONDS = get("tool_cache.cleanup_seconds", 5 * 60)

# ---- External tool servers / plans / sandbox ----------------------------------
MCP_CONFIG_PATH = Path(get("mcp_config_path", "mcp-config.json"))
ESBUILD_PATH = get("sandbox.esbuild_path")
SANDBOX_TIMEOUT_SECONDS = get("sandbox.timeout_seconds", 30)
INSIGHT_MAX_WORKERS = get("insight.max_workers", 4)
PLANS_KEEP = get("plans.keep", 10)


def get_plans_dir() -> Path:
    """Directory holding one JSON file per persisted plan record."""
    configured = get("plans.dir")
    if configured:
        return Path(configured).expanduser().resolve()
    return get_data_dir() / "plans"


def reload_config() -> None:
    """Re-read config from disk and reassign all module-level constants.

    Call this after writing config.json to make new values take effect
    without restarting the server. Singletons built from the old values
    (tool cache, MCP pool) keep them until they are reset.
    """
    global _user_config
    global LLM_PROVIDER, LLM_BASE_URL, CHAT_MODEL, SUMMARY_MODEL, INSIGHT_MODEL
    global SUMMARIZATION_TRIGGER, KEEP_RECENT_MESSAGES, CHARS_PER_TOKEN, MAX_STEPS
    global TOOL_CACHE_MAX_SIZE, TOOL_CACHE_TTL_SECONDS, TOOL_CACHE_CLEANUP_SECONDS
    global MCP_CONFIG_PATH, ESBUILD_PATH, SANDBOX_TIMEOUT_SECONDS
    global INSIGHT_MAX_WORKERS, PLANS_KEEP

    load_dotenv(override=True)

    _user_config = _load_config()
    _reset_data_dir()

    LLM_PROVIDER = get("llm_provider", "anthropic")
    LLM_BASE_URL = _provider_get("base_url")
    CHAT_MODEL = _provider_get("model")
    SUMMARY_MODEL = _provider_get("summary_model") or CHAT_MODEL
    INSIGHT_MODEL = _provider_get("insight_model") or SUMMARY_MODEL
    SUMMARIZATION_TRIGGER = get("context.summarization_trigger", 30_000)
    KEEP_RECENT_MESSAGES = get("context.keep_recent_messages", 5)
    CHARS_PER_TOKEN = get("context.chars_per_token", 4)
    MAX_STEPS = get("max_steps", 25)
    TOOL_CACHE_MAX_SIZE = get("tool_cache.max_size", 50)
    TOOL_CACHE_TTL_SECONDS = get("tool_cache.ttl_seconds", 30 * 60)
    TOOL_CACHE_CLEANUP_SECONDS = get("tool_cache.cleanup_seconds", 5 * 60)
    MCP_CONFIG_PATH = Path(get("mcp_config_path", "mcp-config.json"))
    ESBUILD_PATH = get("sandbox.esbuild_path")
    SANDBOX_TIMEOUT_SECONDS = get("sandbox.timeout_seconds", 30)
    INSIGHT_MAX_WORKERS = get("insight.max_workers", 4)
    PLANS_KEEP = get("plans.keep", 10)

    # Reload truncation overrides from config
    try:
        from agent.truncation import reload as _reload_truncation

        _reload_truncation()
    except ImportError:
        pass
