from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from slotengine.clock import DEFAULT_BUSINESS_TIMEZONE


@dataclass(frozen=True)
class Settings:
    # Hosted data platform. Without a URL the CLI needs --snapshot.
    supabase_url: str | None = None
    supabase_key: str | None = None

    business_timezone: str = DEFAULT_BUSINESS_TIMEZONE

    # Per-call HTTP timeout and how many times a failed fetch is attempted.
    fetch_timeout_seconds: float = 10.0
    fetch_retry_attempts: int = 3

    # Whole-request deadline and station worker pool size.
    request_timeout_seconds: float = 30.0
    max_workers: int = 8

    default_slot_interval_minutes: int = 60
    # Booking window when calendar_settings has no value.
    default_open_days_ahead: int = 30

    log_level: str = "INFO"


def _int_env(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected number.") from e
    if value <= 0:
        raise RuntimeError(f"{name} must be > 0")
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    supabase_url = os.getenv("SUPABASE_URL", "").strip().rstrip("/") or None
    # The service role key bypasses row-level security; fall back to the anon key.
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY") or None
    if supabase_url and not supabase_key:
        raise RuntimeError(
            "Missing required environment variable: SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY"
        )

    return Settings(
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        business_timezone=os.getenv("BUSINESS_TIMEZONE", DEFAULT_BUSINESS_TIMEZONE).strip(),
        fetch_timeout_seconds=_float_env("FETCH_TIMEOUT_SECONDS", 10.0),
        fetch_retry_attempts=_int_env("FETCH_RETRY_ATTEMPTS", 3, minimum=1),
        request_timeout_seconds=_float_env("REQUEST_TIMEOUT_SECONDS", 30.0),
        max_workers=_int_env("MAX_WORKERS", 8, minimum=1),
        default_slot_interval_minutes=_int_env("DEFAULT_SLOT_INTERVAL_MINUTES", 60, minimum=1),
        default_open_days_ahead=_int_env("DEFAULT_OPEN_DAYS_AHEAD", 30, minimum=0),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
