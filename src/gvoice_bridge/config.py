"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class CorsSettings:
    """CORS configuration for the HTTP app."""

    enabled: bool
    origins: list[str]
    allow_credentials: bool
    allow_methods: list[str]
    allow_headers: list[str]


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class BrowserSettings:
    """Automation session settings.

    The ``*_ms`` values are the named synchronization points used while driving
    the web client. ``view_ready_timeout_ms`` and ``composer_ready_timeout_ms``
    bound a visibility poll; ``list_settle_ms``, ``compose_settle_ms`` and
    ``send_settle_ms`` are fixed delays used where the page exposes no
    completion signal. They are best-effort, not correctness guarantees.
    """

    base_url: str
    headless: bool
    executable_path: str | None
    channel: str | None
    user_data_dir: str
    args: list[str]
    wait_until: str  # "load" | "domcontentloaded" | "networkidle" | "commit"
    navigation_timeout_ms: int
    view_ready_timeout_ms: int
    list_settle_ms: int
    composer_ready_timeout_ms: int
    compose_settle_ms: int
    send_settle_ms: int


@dataclass(slots=True, frozen=True)
class SyncSettings:
    """Background inbox reconciliation settings."""

    enabled: bool
    interval_seconds: int
    initial_delay_seconds: int
    run_on_startup: bool
    account_count: int
    campaign_guard_enabled: bool


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    backend_id: str
    http: HttpSettings
    cors: CorsSettings
    database: DatabaseSettings
    browser: BrowserSettings
    sync: SyncSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _non_negative(value: str, *, default: int) -> int:
    parsed = _int(value, default=default)
    return parsed if parsed >= 0 else default


def _optional(value: str) -> str | None:
    text = str(value or "").strip()
    return text or None


def _wait_until(value: str) -> str:
    v = (value or "").strip().lower()
    if v in {"load", "domcontentloaded", "networkidle", "commit"}:
        return v
    return "domcontentloaded"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    def _csv(name: str, default: str) -> list[str]:
        raw = _decouple_config(name, default=default)
        return [part.strip() for part in raw.split(",") if part.strip()]

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="3000"), default=3000),
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    cors_settings = CorsSettings(
        enabled=_bool(_decouple_config("HTTP_CORS_ENABLED", default="true"), default=True),
        origins=_csv("HTTP_CORS_ORIGINS", default=""),
        allow_credentials=_bool(_decouple_config("HTTP_CORS_ALLOW_CREDENTIALS", default="false"), default=False),
        allow_methods=_csv("HTTP_CORS_ALLOW_METHODS", default="*"),
        allow_headers=_csv("HTTP_CORS_ALLOW_HEADERS", default="*"),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./gvoice_bridge.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    browser_settings = BrowserSettings(
        base_url=_decouple_config("VOICE_BASE_URL", default="https://voice.google.com").rstrip("/"),
        headless=_bool(_decouple_config("BROWSER_HEADLESS", default="false"), default=False),
        executable_path=_optional(_decouple_config("BROWSER_EXECUTABLE_PATH", default="")),
        channel=_optional(_decouple_config("BROWSER_CHANNEL", default="")),
        user_data_dir=_decouple_config("BROWSER_USER_DATA_DIR", default="./browser_data"),
        args=_csv("BROWSER_ARGS", default="--start-maximized"),
        wait_until=_wait_until(_decouple_config("BROWSER_WAIT_UNTIL", default="domcontentloaded")),
        navigation_timeout_ms=_non_negative(_decouple_config("BROWSER_NAVIGATION_TIMEOUT_MS", default="30000"), default=30000),
        view_ready_timeout_ms=_non_negative(_decouple_config("VIEW_READY_TIMEOUT_MS", default="7000"), default=7000),
        list_settle_ms=_non_negative(_decouple_config("LIST_SETTLE_MS", default="2000"), default=2000),
        composer_ready_timeout_ms=_non_negative(_decouple_config("COMPOSER_READY_TIMEOUT_MS", default="7000"), default=7000),
        compose_settle_ms=_non_negative(_decouple_config("COMPOSE_SETTLE_MS", default="1000"), default=1000),
        send_settle_ms=_non_negative(_decouple_config("SEND_SETTLE_MS", default="2000"), default=2000),
    )

    account_count = _int(_decouple_config("SYNC_ACCOUNT_COUNT", default="10"), default=10)
    sync_settings = SyncSettings(
        enabled=_bool(_decouple_config("SYNC_ENABLED", default="true"), default=True),
        interval_seconds=max(1, _int(_decouple_config("SYNC_INTERVAL_SECONDS", default="600"), default=600)),
        initial_delay_seconds=_non_negative(_decouple_config("SYNC_INITIAL_DELAY_SECONDS", default="10"), default=10),
        run_on_startup=_bool(_decouple_config("SYNC_RUN_ON_STARTUP", default="false"), default=False),
        account_count=account_count if account_count > 0 else 10,
        campaign_guard_enabled=_bool(_decouple_config("SYNC_CAMPAIGN_GUARD_ENABLED", default="true"), default=True),
    )

    return Settings(
        environment=environment,
        backend_id=_decouple_config("BACKEND_ID", default="default").strip() or "default",
        http=http_settings,
        cors=cors_settings,
        database=database_settings,
        browser=browser_settings,
        sync=sync_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
