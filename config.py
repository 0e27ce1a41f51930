import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secrets stay in .env (ANTHROPIC_API_KEY, OPENAI_API_KEY, GROQ_API_KEY,
# GOOGLE_API_KEY, ORGO_API_KEY, ORGO_PROJECT_ID)

# User config, loaded from ~/.deskpilot/config.json (primary)
# or project-root config.json (fallback).
CONFIG_PATH = Path.home() / ".deskpilot" / "config.json"
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
    """Get a config value by dot-separated key. E.g. get('delays.action_ms', 0)"""
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
# Base directory for logs.
# Priority: DESKPILOT_DIR env var > "data_dir" config key > ~/.deskpilot

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``DESKPILOT_DIR`` environment variable (highest — useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.deskpilot`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("DESKPILOT_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".deskpilot"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- LLM provider config ------------------------------------------------------

_PROVIDER_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GOOGLE_API_KEY",
}


def get_api_key(provider: str) -> str | None:
    """Return the API key for the given provider.

    Each provider uses its own env var:
      anthropic → ANTHROPIC_API_KEY
      openai    → OPENAI_API_KEY
      groq      → GROQ_API_KEY
      gemini    → GOOGLE_API_KEY
    """
    env_key = _PROVIDER_ENV_KEYS.get(provider.lower())
    if env_key:
        return os.getenv(env_key)
    return None


def get_orgo_api_key() -> str | None:
    """Return ORGO_API_KEY (the orgo SDK also reads it on its own)."""
    return os.getenv("ORGO_API_KEY")


# Hardcoded defaults per provider. Used as final fallback when neither
# providers.<name>.key nor backends.<backend>.key is set in config.json.
# "groq" speaks the OpenAI chat-completions protocol at its own base URL.
_PROVIDER_DEFAULTS = {
    "anthropic": {
        "model": "claude-sonnet-4-20250514",
        "base_url": None,
        "max_tokens": 4096,
    },
    "openai": {
        "model": "gpt-4.1-mini",
        "base_url": None,
        "max_tokens": 4096,
    },
    "groq": {
        "model": "llama-3.3-70b-versatile",
        "base_url": "https://api.groq.com/openai/v1",
        "max_tokens": 4096,
    },
    "gemini": {
        "model": "gemini-2.5-flash",
        "base_url": None,
        "max_tokens": 4096,
    },
}

_BACKEND_DEFAULTS = {
    "native": {"provider": "anthropic"},
    "structured": {"provider": "groq"},
    "tool_calling": {"provider": "groq"},
}


def provider_get(provider: str, key: str, default=None):
    """Get a provider setting.

    Resolution order:
    1. providers.<provider>.key  (config.json)
    2. _PROVIDER_DEFAULTS[provider].key
    3. default argument
    """
    val = get(f"providers.{provider}.{key}")
    if val is not None:
        return val
    provider_defaults = _PROVIDER_DEFAULTS.get(provider, {})
    if key in provider_defaults and provider_defaults[key] is not None:
        return provider_defaults[key]
    return default


def backend_get(backend: str, key: str, default=None):
    """Get a per-backend setting, falling back to the backend's provider.

    Resolution order:
    1. backends.<backend>.key        (config.json)
    2. _BACKEND_DEFAULTS[backend].key
    3. providers.<provider>.key / provider defaults
    4. default argument
    """
    val = get(f"backends.{backend}.{key}")
    if val is not None:
        return val
    backend_defaults = _BACKEND_DEFAULTS.get(backend, {})
    if key in backend_defaults:
        return backend_defaults[key]
    provider = get(f"backends.{backend}.provider") or backend_defaults.get("provider")
    if provider:
        return provider_get(provider, key, default)
    return default


# ---- Desktop ------------------------------------------------------------------
ORGO_PROJECT_ID = os.getenv("ORGO_PROJECT_ID") or get("desktop.project_id")
DISPLAY_WIDTH = get("display.width", 1024)
DISPLAY_HEIGHT = get("display.height", 768)
EXCLUSIVE_DESKTOP = get("desktop.exclusive", True)

# ---- Orchestration ------------------------------------------------------------
DEFAULT_BACKEND = get("default_backend", "native")
ACTION_DELAY_MS = get("delays.action_ms", 0)
SCREENSHOT_DELAY_MS = get("delays.screenshot_ms", 500)
LLM_TIMEOUT_SECONDS = get("llm_timeout_seconds", None)
MAX_RENDERED_HISTORY = get("history.max_rendered_entries", 40)
MAX_WAIT_SECONDS = get("executor.max_wait_seconds", 30)

# ---- Sessions -----------------------------------------------------------------
MAX_SESSIONS = get("sessions.max_sessions", 100)
SESSION_IDLE_TIMEOUT = get("sessions.idle_timeout_seconds", 6 * 3600)


# ---- Setting descriptions -----------------------------------------------------
CONFIG_DESCRIPTIONS: dict[str, str] = {
    "default_backend": "Decision backend used when a request doesn't name one: 'native', 'structured' or 'tool_calling'.",
    "display.width": "Desktop width in pixels. Click coordinates outside [0, width) are rejected.",
    "display.height": "Desktop height in pixels. Click coordinates outside [0, height) are rejected.",
    "desktop.exclusive": "Serialize runs of different conversations on the one shared desktop. When false, two conversations may drive the desktop at the same time.",
    "delays.action_ms": "Pause between consecutive actions of one decision.",
    "delays.screenshot_ms": "Pause after a state-changing action before the refreshed screenshot is taken.",
    "llm_timeout_seconds": "Upper bound for one decision call. Unset means wait indefinitely.",
    "history.max_rendered_entries": "How many of the most recent history entries are summarized into the prompt when a conversation is resumed.",
    "executor.max_wait_seconds": "Longest 'wait' action the executor will honour; longer requests are clamped.",
    "sessions.max_sessions": "Maximum conversations kept in memory. The least recently used idle one is evicted when full.",
    "sessions.idle_timeout_seconds": "Idle conversations older than this are evicted by the cleanup task.",
    "turn_limits": "Override iteration bounds. Keys are named limits (e.g. 'tool_calling.max_iterations'). See pilot/turn_limits.py DEFAULTS.",
    "backends": "Per-backend overrides: provider, model, base_url, max_tokens, agent_iterations.",
    "providers": "Per-provider overrides: model, base_url, max_tokens.",
    "console_format": "Console log format: 'full', 'simple' (default) or 'clean'.",
}


def reload_config() -> None:
    """Re-read config from disk and reassign all module-level constants.

    Existing conversations keep their backend instances; only new runs pick
    up changes.
    """
    global _user_config
    global ORGO_PROJECT_ID, DISPLAY_WIDTH, DISPLAY_HEIGHT, EXCLUSIVE_DESKTOP
    global \
        DEFAULT_BACKEND, \
        ACTION_DELAY_MS, \
        SCREENSHOT_DELAY_MS, \
        LLM_TIMEOUT_SECONDS, \
        MAX_RENDERED_HISTORY, \
        MAX_WAIT_SECONDS
    global MAX_SESSIONS, SESSION_IDLE_TIMEOUT

    load_dotenv(override=True)

    _user_config = _load_config()
    _reset_data_dir()

    ORGO_PROJECT_ID = os.getenv("ORGO_PROJECT_ID") or get("desktop.project_id")
    DISPLAY_WIDTH = get("display.width", 1024)
    DISPLAY_HEIGHT = get("display.height", 768)
    EXCLUSIVE_DESKTOP = get("desktop.exclusive", True)
    DEFAULT_BACKEND = get("default_backend", "native")
    ACTION_DELAY_MS = get("delays.action_ms", 0)
    SCREENSHOT_DELAY_MS = get("delays.screenshot_ms", 500)
    LLM_TIMEOUT_SECONDS = get("llm_timeout_seconds", None)
    MAX_RENDERED_HISTORY = get("history.max_rendered_entries", 40)
    MAX_WAIT_SECONDS = get("executor.max_wait_seconds", 30)
    MAX_SESSIONS = get("sessions.max_sessions", 100)
    SESSION_IDLE_TIMEOUT = get("sessions.idle_timeout_seconds", 6 * 3600)

    # Reload turn limits overrides from config
    try:
        from pilot.turn_limits import reload as _reload_turn_limits

        _reload_turn_limits()
    except ImportError:
        pass
