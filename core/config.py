# core/config.py

import os
from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful, friendly medical assistant. Give clear, general health "
    "information in plain language, ask a follow-up question when symptoms are "
    "ambiguous, and always recommend seeing a doctor in person for diagnosis, "
    "prescriptions or emergencies. Never claim to be a licensed physician."
)


def _parse_keys(raw: str | None) -> List[str]:
    """Split a comma-separated key list, dropping blanks and duplicates."""
    keys: List[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part and part not in keys:
            keys.append(part)
    return keys


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, read once from the environment (and .env).

    The service instance owns one Settings object; nothing below reads
    os.environ after startup.
    """
    api_keys: Tuple[str, ...] = ()
    model_id: str = "gemini-1.5-flash"
    host: str = "0.0.0.0"
    port: int = 3000
    app_env: str = "development"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_message_length: int = 4000
    max_history_turns: int = 20
    cache_ttl_seconds: float = 120.0
    cache_max_entries: int = 10000
    cache_include_history: bool = False
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    cors_origins: Tuple[str, ...] = field(default=("*",))
    max_body_bytes: int = 5 * 1024 * 1024
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        keys = _parse_keys(os.getenv("GEMINI_API_KEYS"))
        if not keys:
            keys = _parse_keys(os.getenv("GEMINI_API_KEY"))

        origins = tuple(
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ) or ("*",)

        return cls(
            api_keys=tuple(keys),
            model_id=os.getenv("MODEL_ID", "gemini-1.5-flash"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
            app_env=os.getenv("APP_ENV", "development"),
            system_prompt=os.getenv("SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
            max_message_length=int(os.getenv("MAX_MESSAGE_LENGTH", "4000")),
            max_history_turns=int(os.getenv("MAX_HISTORY_TURNS", "20")),
            cache_ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "120")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "10000")),
            cache_include_history=_env_bool("CACHE_INCLUDE_HISTORY"),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "60")),
            rate_limit_window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            cors_origins=origins,
            max_body_bytes=int(os.getenv("MAX_BODY_BYTES", str(5 * 1024 * 1024))),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
