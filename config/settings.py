from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, List

from dotenv import load_dotenv

from relay.core.prompt import SYSTEM_PROMPT


load_dotenv()


class Settings:
    """Application settings loaded from environment variables.

    Keep all backend, retry and session tuning centralized here. Keyword
    arguments override individual values (used by tests and embedding code).
    """

    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    ollama_url: str = os.getenv("OLLAMA_URL", "http://127.0.0.1:11434")
    model: str = os.getenv("OLLAMA_MODEL", "dolphin-llama3:8b")
    system_prompt: str = os.getenv("SYSTEM_PROMPT", SYSTEM_PROMPT)

    max_retries: int = int(os.getenv("MAX_RETRIES", "5"))
    retry_delay: float = float(os.getenv("RETRY_DELAY", "2.0"))
    request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "30"))
    max_connections: int = int(os.getenv("MAX_CONNECTIONS", "50"))
    keepalive_expiry: float = float(os.getenv("KEEPALIVE_EXPIRY", "30"))

    history_length: int = int(os.getenv("HISTORY_LENGTH", "10"))
    session_timeout: float = float(os.getenv("SESSION_TIMEOUT", "3600"))

    cors_origins: List[str] = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    static_dir: str = os.getenv("STATIC_DIR", "public")

    def __init__(self, **overrides: Any) -> None:
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)
        if self.max_retries < 1:
            raise ValueError("MAX_RETRIES must be at least 1")
        if self.history_length < 2:
            raise ValueError("HISTORY_LENGTH must hold at least one user/assistant pair")
        self.ollama_url = self.ollama_url.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
