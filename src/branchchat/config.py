"""Environment-driven settings and platform-aware default paths."""

import os
import sys
from pathlib import Path


def get_data_dir() -> Path:
    """Return the directory where branchchat keeps its database."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "branchchat"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "branchchat"
    else:  # Linux
        return Path.home() / ".local" / "share" / "branchchat"


def get_db_path() -> Path:
    """Return the path of the SQLite chat database."""
    env = os.environ.get("BRANCHCHAT_DB_PATH")
    if env:
        return Path(env)
    return get_data_dir() / "chats.db"


def get_store_backend() -> str:
    """Return the configured store backend: "sqlite" or "memory"."""
    return os.environ.get("BRANCHCHAT_STORE", "sqlite").strip().lower()


def get_default_provider() -> str:
    return os.environ.get("BRANCHCHAT_DEFAULT_PROVIDER", "openai")


def get_default_model() -> str:
    return os.environ.get("BRANCHCHAT_DEFAULT_MODEL", "gpt-4o-mini")


def get_api_base() -> str:
    return os.environ.get("BRANCHCHAT_API_BASE", "https://api.openai.com/v1").rstrip("/")


def get_api_key() -> str:
    return os.environ.get("BRANCHCHAT_API_KEY", "")


def get_max_sessions() -> int:
    """Return how many open chat sessions the server keeps cached."""
    raw = os.environ.get("BRANCHCHAT_MAX_SESSIONS", "64")
    try:
        return max(1, int(raw))
    except ValueError:
        return 64


def get_timeout() -> float:
    """Return the model request timeout in seconds."""
    raw = os.environ.get("BRANCHCHAT_TIMEOUT", "60")
    try:
        return float(raw)
    except ValueError:
        return 60.0
