import os
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

from .domain.errors import ConfigError
from .logging import get_logger

log = get_logger("config")

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_BUCKET = "receipts.nowayout"


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Return key/value pairs from the nearest .env without touching os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: (v or "").strip() for k, v in dotenv_values(path).items()}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(env: Dict[str, str], *names: str) -> Optional[str]:
    """First non-empty value for any of names, process environment winning over .env."""
    for name in names:
        v = os.environ.get(name)
        if v and v.strip():
            return v.strip()
    for name in names:
        v = env.get(name)
        if v:
            return v
    return None


def _require(env: Dict[str, str], *names: str) -> str:
    value = _lookup(env, *names)
    if not value:
        raise ConfigError(f"{names[0]} missing in env/.env")
    return value


def load_supabase(dotenv_dir: str) -> Tuple[str, str, str]:
    """Return (url, key, bucket). URL and key are mandatory."""
    env = _read_dotenv(dotenv_dir)
    url = _require(env, "SUPABASE_URL")
    key = _require(env, "SUPABASE_ANON_KEY", "SUPABASE_KEY")
    bucket = _lookup(env, "SUPABASE_BUCKET") or DEFAULT_BUCKET
    return url, key, bucket


def load_groq(dotenv_dir: str) -> Tuple[str, str, str]:
    """Return (api_key, base_url, model) for the chat model used for text tasks."""
    env = _read_dotenv(dotenv_dir)
    api_key = _require(env, "GROQ_API_KEY")
    base_url = _lookup(env, "GROQ_BASE_URL") or GROQ_BASE_URL
    model = _lookup(env, "GROQ_MODEL") or "llama-3.3-70b-versatile"
    return api_key, base_url, model


def load_openai(dotenv_dir: str) -> Tuple[str, str]:
    """Return (api_key, whisper_model) for speech-to-text.

    Reads OPENAI_API_KEY (or lowercase openai_api_key); the SDK default
    endpoint is used.
    """
    env = _read_dotenv(dotenv_dir)
    api_key = _require(env, "OPENAI_API_KEY", "openai_api_key")
    model = _lookup(env, "WHISPER_MODEL") or "whisper-1"
    return api_key, model


def load_vision(dotenv_dir: str) -> Tuple[str, str, str]:
    """Return (api_key, base_url, model) for the vision model.

    Gemini is reached through its OpenAI-compatible endpoint so one SDK covers
    every model call.
    """
    env = _read_dotenv(dotenv_dir)
    api_key = _require(env, "GEMINI_API_KEY")
    base_url = _lookup(env, "VISION_BASE_URL") or GEMINI_OPENAI_BASE_URL
    model = _lookup(env, "VISION_MODEL") or "gemini-2.0-flash"
    return api_key, base_url, model


def _as_float(raw: Optional[str], default: float, name: str) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not a number; using {default}")
        return default


def _as_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def load_tuning(dotenv_dir: str) -> Dict[str, float]:
    """Timeouts, pacing and retry knobs with their defaults."""
    env = _read_dotenv(dotenv_dir)
    return {
        "http_timeout": _as_float(_lookup(env, "HTTP_TIMEOUT"), 60.0, "HTTP_TIMEOUT"),
        "item_delay": _as_float(_lookup(env, "ITEM_DELAY"), 2.0, "ITEM_DELAY"),
        "stage_delay": _as_float(_lookup(env, "STAGE_DELAY"), 1.0, "STAGE_DELAY"),
        "max_retries": int(_as_float(_lookup(env, "MAX_RETRIES"), 3, "MAX_RETRIES")),
        "backoff_base": _as_float(_lookup(env, "BACKOFF_BASE"), 2.0, "BACKOFF_BASE"),
        "backoff_max": _as_float(_lookup(env, "BACKOFF_MAX"), 30.0, "BACKOFF_MAX"),
        "batch_size": int(_as_float(_lookup(env, "BATCH_SIZE"), 0, "BATCH_SIZE")),
        "batch_pause": _as_float(_lookup(env, "BATCH_PAUSE"), 10.0, "BATCH_PAUSE"),
        "track_status": _as_bool(_lookup(env, "TRACK_STATUS")),
    }


def load_scratch_dir(dotenv_dir: str) -> Optional[str]:
    """Optional SCRATCH_DIR override for downloaded media."""
    return _lookup(_read_dotenv(dotenv_dir), "SCRATCH_DIR")
