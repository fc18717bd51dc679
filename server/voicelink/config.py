"""Configuration helpers for the realtime voice service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    """Read an integer environment variable, falling back on bad input."""
    try:
        value = int(os.getenv(name, default))
    except (TypeError, ValueError):
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant. Ask questions and be engaging. "
    "Keep responses concise."
)


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Values are read once at import time; tests reload the module after
    patching the environment.
    """

    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY")
    # Ephemeral tokens are only served by the v1alpha surface.
    token_url: str = os.getenv(
        "GEMINI_TOKEN_URL",
        "https://generativelanguage.googleapis.com/v1alpha/auth_tokens",
    )
    live_url: str = os.getenv(
        "GEMINI_LIVE_URL",
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContentConstrained",
    )
    live_model: str = os.getenv("GEMINI_LIVE_MODEL", "models/gemini-2.5-flash-native-audio-preview-09-2025")
    live_voice: str = os.getenv("GEMINI_LIVE_VOICE", "Fenrir")
    system_instruction: str = os.getenv("GEMINI_SYSTEM_INSTRUCTION", DEFAULT_SYSTEM_INSTRUCTION)
    token_expire_minutes: int = _env_int("TOKEN_EXPIRE_MINUTES", 5, minimum=1)
    token_new_session_minutes: int = _env_int("TOKEN_NEW_SESSION_MINUTES", 1, minimum=1)
    # 0 = unlimited uses
    token_uses: int = _env_int("TOKEN_USES", 1, minimum=0)
    token_safety_margin_seconds: int = _env_int("TOKEN_SAFETY_MARGIN_SECONDS", 30, minimum=0)
    request_timeout: float = float(_env_int("REQUEST_TIMEOUT", 30, minimum=1))
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
