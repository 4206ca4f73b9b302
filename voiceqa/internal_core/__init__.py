from __future__ import annotations

from .config import AppConfig, load_config
from .session_store import SessionStore

__all__ = ["AppConfig", "load_config", "SessionStore"]
