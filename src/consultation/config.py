from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Base URL of the remote record service the consultation workflow talks to.
    record_service_url: str = os.getenv("RECORD_SERVICE_URL", "http://localhost:8000/api/v1")

    # Optional per-request timeout for record service calls. When unset the
    # httpx default applies.
    record_service_timeout_seconds: Optional[float] = (
        float(os.getenv("RECORD_SERVICE_TIMEOUT_SECONDS"))
        if os.getenv("RECORD_SERVICE_TIMEOUT_SECONDS")
        else None
    )

    # Quiet period after the last edit before the draft note is auto-saved.
    autosave_debounce_seconds: float = float(os.getenv("AUTOSAVE_DEBOUNCE_SECONDS", "3.0"))
    # Consecutive background save failures retried before auto-save waits for
    # the next edit. Errors that cannot heal (an expired session) are never retried.
    autosave_max_retries: int = int(os.getenv("AUTOSAVE_MAX_RETRIES", "3"))

    # Basic API authentication configuration for the reference record service.
    # When ENABLE_API_AUTH=true, requests without a valid key are redirected
    # to LOGIN_URL, the same way an expired browser session would be.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")
    login_url: str = os.getenv("LOGIN_URL", "/login")

    # Instant dispensing draws from on-site stock and is restricted to
    # emergency patients unless this is switched off.
    instant_dispensing_emergency_only: bool = (
        os.getenv("INSTANT_DISPENSING_EMERGENCY_ONLY", "true").lower() == "true"
    )

    # Load demo formulary, lab catalog and encounters into the reference
    # record service on startup.
    seed_demo_data: bool = os.getenv("SEED_DEMO_DATA", "false").lower() == "true"

    # CORS configuration: comma-separated origins (e.g. "https://app.example.com,https://admin.example.com").
    # Default is "*" (allow all) which is acceptable for local development but
    # should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
