from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Final, Optional

import jsonschema
import yaml

from .utils import (
    cfg,
    cfg_or_env_b,
    cfg_or_env_f,
    cfg_or_env_i,
    cfg_or_env_s,
    require_tz,
)

logger: Final = logging.getLogger(__name__)

PLATFORM_MIN_DAILY_BUDGET: Final[float] = 1.0
SIGNED_URL_MAX_TTL_SECONDS: Final[int] = 7 * 24 * 3600
SIGNED_URL_DEFAULT_TTL_SECONDS: Final[int] = 24 * 3600

MIN_VARIANTS: Final[int] = 2

SYNC_INTERVAL_MINUTES: Final[int] = 60
SYNC_DELAY_SECONDS: Final[float] = 1.0
SYNC_SWEEP_DEADLINE_SECONDS: Final[int] = 45 * 60
SYNC_LEASE_SECONDS: Final[int] = 15 * 60

TREND_THRESHOLD_PCT: Final[float] = 5.0

DEFAULT_LINK_URL: Final[str] = "https://example.com"
DEFAULT_TARGETING: Final[Dict[str, Any]] = {
    "geo_locations": {"countries": ["US"]},
    "age_min": 25,
    "age_max": 45,
}

DEFAULT_SETTINGS_PATH: Final[str] = "config/settings.yaml"
DEFAULT_SCHEMA_PATH: Final[str] = "config/schema.settings.yaml"


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.debug("Config file %s (missing)", path)
        return {}


@dataclass(frozen=True)
class MetaSettings:
    api_version: str = "v19.0"
    timeout_sec: float = 30.0
    retry_max: int = 4
    backoff_base: float = 0.5
    write_cooldown_sec: float = 0.0
    transport: str = "http"
    dry_run: bool = False


@dataclass(frozen=True)
class BuilderSettings:
    max_parallel_variants: int = 4
    variant_timeout_sec: float = 120.0
    signed_url_ttl_sec: int = SIGNED_URL_DEFAULT_TTL_SECONDS
    default_link_url: str = DEFAULT_LINK_URL
    default_targeting: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_TARGETING))
    upload_images: bool = True


@dataclass(frozen=True)
class SyncSettings:
    interval_minutes: int = SYNC_INTERVAL_MINUTES
    delay_seconds: float = SYNC_DELAY_SECONDS
    sweep_deadline_sec: float = float(SYNC_SWEEP_DEADLINE_SECONDS)
    track_variants: bool = False
    date_preset: str = "today"


@dataclass(frozen=True)
class Settings:
    timezone: str = "UTC"
    currency: str = "USD"
    platform_min_daily_budget: float = PLATFORM_MIN_DAILY_BUDGET
    sqlite_path: str = "data/adlab.sqlite"
    assets_backend: str = "local"
    assets_bucket: str = "creatives"
    meta: MetaSettings = field(default_factory=MetaSettings)
    builder: BuilderSettings = field(default_factory=BuilderSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)


def settings_from_dict(raw: Dict[str, Any]) -> Settings:
    """Build typed settings from the YAML mapping, letting env vars win."""
    meta = MetaSettings(
        api_version=cfg_or_env_s(raw, "meta.api_version", "META_API_VERSION", MetaSettings.api_version),
        timeout_sec=cfg_or_env_f(raw, "meta.timeout_sec", "META_TIMEOUT", MetaSettings.timeout_sec),
        retry_max=cfg_or_env_i(raw, "meta.retry_max", "META_RETRY_MAX", MetaSettings.retry_max),
        backoff_base=cfg_or_env_f(raw, "meta.backoff_base", "META_BACKOFF_BASE", MetaSettings.backoff_base),
        write_cooldown_sec=cfg_or_env_f(
            raw, "meta.write_cooldown_sec", "META_WRITE_COOLDOWN_SEC", MetaSettings.write_cooldown_sec
        ),
        transport=cfg_or_env_s(raw, "meta.transport", "META_TRANSPORT", MetaSettings.transport).lower(),
        dry_run=cfg_or_env_b(raw, "meta.dry_run", "DRY_RUN", MetaSettings.dry_run),
    )
    builder = BuilderSettings(
        max_parallel_variants=cfg_or_env_i(raw, "builder.max_parallel_variants", "BUILDER_MAX_PARALLEL", 4),
        variant_timeout_sec=cfg_or_env_f(raw, "builder.variant_timeout_sec", "BUILDER_VARIANT_TIMEOUT", 120.0),
        signed_url_ttl_sec=cfg_or_env_i(
            raw, "builder.signed_url_ttl_sec", "SIGNED_URL_TTL_SEC", SIGNED_URL_DEFAULT_TTL_SECONDS
        ),
        default_link_url=cfg_or_env_s(raw, "builder.default_link_url", "STORE_URL", DEFAULT_LINK_URL),
        default_targeting=dict(cfg(raw, "builder.default_targeting") or DEFAULT_TARGETING),
        upload_images=cfg_or_env_b(raw, "builder.upload_images", "BUILDER_UPLOAD_IMAGES", True),
    )
    sync = SyncSettings(
        interval_minutes=cfg_or_env_i(raw, "sync.interval_minutes", "SYNC_INTERVAL_MINUTES", SYNC_INTERVAL_MINUTES),
        delay_seconds=cfg_or_env_f(raw, "sync.delay_seconds", "SYNC_DELAY_SECONDS", SYNC_DELAY_SECONDS),
        sweep_deadline_sec=cfg_or_env_f(
            raw, "sync.sweep_deadline_sec", "SYNC_SWEEP_DEADLINE_SEC", float(SYNC_SWEEP_DEADLINE_SECONDS)
        ),
        track_variants=cfg_or_env_b(raw, "sync.track_variants", "SYNC_TRACK_VARIANTS", False),
        date_preset=cfg_or_env_s(raw, "sync.date_preset", "SYNC_DATE_PRESET", "today"),
    )
    return Settings(
        timezone=cfg_or_env_s(raw, "account.timezone", "ACCOUNT_TIMEZONE", "UTC"),
        currency=cfg_or_env_s(raw, "account.currency", "ACCOUNT_CURRENCY", "USD").upper(),
        platform_min_daily_budget=cfg_or_env_f(
            raw, "budget.platform_min_daily", "PLATFORM_MIN_DAILY_BUDGET", PLATFORM_MIN_DAILY_BUDGET
        ),
        sqlite_path=cfg_or_env_s(raw, "storage.sqlite_path", "ADLAB_SQLITE_PATH", "data/adlab.sqlite"),
        assets_backend=cfg_or_env_s(raw, "assets.backend", "ASSETS_BACKEND", "local").lower(),
        assets_bucket=cfg_or_env_s(raw, "assets.bucket", "CREATIVE_STORAGE_BUCKET", "creatives"),
        meta=meta,
        builder=builder,
        sync=sync,
    )


def validate_settings(settings: Settings) -> None:
    require_tz(settings.timezone)
    if settings.platform_min_daily_budget <= 0:
        raise ValueError("budget.platform_min_daily must be > 0")
    if settings.meta.transport not in ("http", "sdk"):
        raise ValueError(f"meta.transport must be 'http' or 'sdk', got {settings.meta.transport!r}")
    if settings.meta.timeout_sec <= 0:
        raise ValueError("meta.timeout_sec must be > 0")
    if settings.meta.retry_max < 0:
        raise ValueError("meta.retry_max must be >= 0")
    if not 0 < settings.builder.signed_url_ttl_sec <= SIGNED_URL_MAX_TTL_SECONDS:
        raise ValueError(
            f"builder.signed_url_ttl_sec must be within 1..{SIGNED_URL_MAX_TTL_SECONDS} (platform URL lifetime)"
        )
    if settings.builder.max_parallel_variants < 1:
        raise ValueError("builder.max_parallel_variants must be >= 1")
    if settings.sync.interval_minutes < 1:
        raise ValueError("sync.interval_minutes must be >= 1")
    if settings.sync.delay_seconds < 0:
        raise ValueError("sync.delay_seconds must be >= 0")
    if settings.assets_backend not in ("local", "supabase"):
        raise ValueError(f"assets.backend must be 'local' or 'supabase', got {settings.assets_backend!r}")


def load_settings(
    settings_path: str = DEFAULT_SETTINGS_PATH,
    schema_path: Optional[str] = DEFAULT_SCHEMA_PATH,
) -> Settings:
    raw = load_yaml(settings_path)
    if schema_path and os.path.exists(schema_path):
        schema = load_yaml(schema_path)
        if schema:
            jsonschema.validate(instance=raw, schema=schema)
    settings = settings_from_dict(raw)
    validate_settings(settings)
    return settings
