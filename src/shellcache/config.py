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
    # Missing .env (CI/tests) falls back to an empty repository that only reads os.environ.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP front related settings."""

    host: str
    port: int
    # Prefix reserved for the front's own endpoints (health, commands)
    control_path: str
    upstream_timeout_seconds: float
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class CacheSettings:
    """Asset cache configuration.

    The three partition names mirror the worker's storage layout:
    staging holds the freshly installed shell, content is the durable
    working cache and the manifest partition keeps the last reconciled
    manifest snapshot.
    """

    origin: str
    manifest_path: str
    shell_path: str
    shell_keys: list[str]
    backend: str  # "memory" | "filesystem"
    root: str
    content_name: str
    staging_name: str
    manifest_name: str
    prefetch_concurrency: int


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class WebhookSettings:
    """Payments webhook relay settings."""

    secret: str | None
    tolerance_seconds: int

    @property
    def enabled(self) -> bool:
        return bool(self.secret)


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    cache: CacheSettings
    database: DatabaseSettings
    webhook: WebhookSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool


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


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _cache_backend(value: str) -> str:
    v = (value or "").strip().lower()
    if v in {"memory", "filesystem"}:
        return v
    return "filesystem"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    def _csv(name: str, default: str) -> list[str]:
        raw = _decouple_config(name, default=default)
        items = [part.strip() for part in raw.split(",") if part.strip()]
        return items

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8780"), default=8780),
        control_path="/" + _decouple_config("HTTP_CONTROL_PATH", default="__shellcache__").strip("/"),
        upstream_timeout_seconds=_float(_decouple_config("UPSTREAM_TIMEOUT_SECONDS", default="30"), default=30.0),
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    cache_settings = CacheSettings(
        origin=_decouple_config("ORIGIN_URL", default="http://127.0.0.1:8000").rstrip("/"),
        manifest_path=_decouple_config("MANIFEST_PATH", default="./build/web/asset_manifest.json"),
        shell_path=_decouple_config("SHELL_PATH", default=""),
        shell_keys=_csv("SHELL_KEYS", default="index.html"),
        backend=_cache_backend(_decouple_config("CACHE_BACKEND", default="filesystem")),
        # Default to a user-scoped cache directory outside the source tree
        root=_decouple_config("CACHE_ROOT", default="~/.shellcache"),
        content_name=_decouple_config("CACHE_CONTENT_NAME", default="app-cache"),
        staging_name=_decouple_config("CACHE_STAGING_NAME", default="app-temp-cache"),
        manifest_name=_decouple_config("CACHE_MANIFEST_NAME", default="app-manifest"),
        prefetch_concurrency=max(1, _int(_decouple_config("PREFETCH_CONCURRENCY", default="8"), default=8)),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./subscriptions.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    webhook_settings = WebhookSettings(
        secret=_decouple_config("STRIPE_WEBHOOK_SECRET", default="") or None,
        tolerance_seconds=_int(_decouple_config("STRIPE_WEBHOOK_TOLERANCE_SECONDS", default="300"), default=300),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        cache=cache_settings,
        database=database_settings,
        webhook=webhook_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
