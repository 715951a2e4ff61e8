import os
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "qwen2.5:7b-instruct"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_LOCALE = "fr-FR"
EXTRACTION_BACKENDS = ("ollama", "openai", "none")


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running the CLI from subdirectories still find the
    project-level `.env`.
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
    """Read the nearest .env into a mapping; does not mutate the environment."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as e:
        log.warning(f"Failed reading .env: {e}")
        return {}
    env = {k: v.strip() for k, v in values.items() if k and v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(dotenv_dir: str, *keys: str) -> Optional[str]:
    for key in keys:
        v = os.environ.get(key)
        if v and v.strip():
            return v.strip()
    env = _read_dotenv(dotenv_dir)
    for key in keys:
        v = env.get(key)
        if v:
            return v
    return None


def load_recipient(dotenv_dir: str) -> Optional[str]:
    """Return the fixed listing recipient address (LISTING_RECIPIENT)."""
    v = _lookup(dotenv_dir, "LISTING_RECIPIENT")
    if not v:
        log.debug("LISTING_RECIPIENT not found in env or .env")
    return v


def load_mail_api(dotenv_dir: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (api_url, api_key, from_address) for the HTTP mail channel."""
    return (
        _lookup(dotenv_dir, "MAIL_API_URL"),
        _lookup(dotenv_dir, "MAIL_API_KEY"),
        _lookup(dotenv_dir, "MAIL_FROM"),
    )


def load_outbox_dir(dotenv_dir: str) -> Optional[str]:
    return _lookup(dotenv_dir, "MAIL_OUTBOX_DIR")


def load_ollama(dotenv_dir: str) -> Tuple[str, str]:
    """Return (ollama_url, ollama_model) with sensible defaults."""
    url = _lookup(dotenv_dir, "OLLAMA_URL") or DEFAULT_OLLAMA_URL
    model = _lookup(dotenv_dir, "OLLAMA_MODEL") or DEFAULT_OLLAMA_MODEL
    return url, model


def load_openai(dotenv_dir: str) -> Tuple[Optional[str], str]:
    """Return (api_key, model) for OpenAI.

    Reads OPENAI_API_KEY (or lowercase openai_api_key) and OPENAI_MODEL.
    """
    api_key = _lookup(dotenv_dir, "OPENAI_API_KEY", "openai_api_key")
    model = _lookup(dotenv_dir, "OPENAI_MODEL") or DEFAULT_OPENAI_MODEL
    return api_key, model


def load_extraction_backend(dotenv_dir: str) -> str:
    v = (_lookup(dotenv_dir, "EXTRACTION_BACKEND") or "ollama").lower()
    if v not in EXTRACTION_BACKENDS:
        log.warning(f"Unknown EXTRACTION_BACKEND '{v}'; using pattern extraction only")
        return "none"
    return v


def load_locale(dotenv_dir: str) -> str:
    return _lookup(dotenv_dir, "TRANSCRIPTION_LOCALE") or DEFAULT_LOCALE
