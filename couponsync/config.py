"""Configuration objects shared by the synchronization pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_STORAGE_ROOT = Path("storage")
DEFAULT_LOG_DIR = DEFAULT_STORAGE_ROOT / "logs"
DEFAULT_DB_URL = "sqlite:///storage/couponsync.db"

DEFAULT_USER_AGENT = "coupon-sync/1.0"
DEFAULT_MARKET = "SE"

DEFAULT_FALLBACK_TERMS = (
    "See full terms on website",
    "Terms and conditions apply",
)

_ENV_PREFIX = "COUPONSYNC_"


@dataclass(slots=True)
class RateLimitConfig:
    max_calls: int = 18
    window_seconds: float = 60.0


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 30.0
    enrichment_timeout: float = 60.0


@dataclass(slots=True)
class ScheduleConfig:
    """Time window and pacing for the nightly run."""

    window_start_hour: int = 0
    window_end_hour: int = 6
    batch_size: int = 10
    chunk_delay_seconds: float = 60.0
    lock_stale_after_seconds: float = 1800.0
    stuck_run_after_seconds: float = 7200.0
    timezone: str = "UTC"

    def hour_in_window(self, hour: int) -> bool:
        return self.window_start_hour <= hour < self.window_end_hour


@dataclass(slots=True)
class AddRevenueConfig:
    api_token: Optional[str] = None
    channel_id: str = "3454851"
    base_url: str = "https://addrevenue.io/api/v2/"

    def is_configured(self) -> bool:
        return bool(self.api_token)


@dataclass(slots=True)
class AwinConfig:
    api_token: Optional[str] = None
    publisher_id: Optional[str] = None
    base_url: str = "https://api.awin.com/"
    page_size: int = 150
    max_pages: int = 20
    region_codes: tuple[str, ...] = (DEFAULT_MARKET,)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    def is_configured(self) -> bool:
        return bool(self.api_token and self.publisher_id)


@dataclass(slots=True)
class PromptConfig:
    title: str = (
        "Generate a compelling and SEO-friendly coupon title (max 60 characters) "
        "based on this description:"
    )
    terms: str = (
        "Create exactly 3 concise, clear bullet points for coupon terms and conditions "
        "based on this description. Each point should be unique and under 100 characters."
    )
    brand_description: str = (
        '<h4 style="text-align: left">About [BRAND_NAME]</h4><p style="text-align: left">'
        "Write a compelling, SEO-optimized brand description (150-200 words) that highlights "
        "the brand's unique value proposition, products/services, and what makes them special. "
        "End with a call-to-action encouraging visitors to explore their offers.</p>"
    )
    why_we_love: str = (
        "Generate exactly 3 short phrases (maximum 3 words each) that explain why customers "
        "love this brand. Focus on key benefits like quality, service, value, etc. "
        "Return as a simple list format: phrase1, phrase2, phrase3"
    )


@dataclass(slots=True)
class EnrichmentConfig:
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1/"
    retry_delay_seconds: float = 3600.0
    recovered_text_ttl_seconds: float = 7 * 24 * 3600.0
    prompts: PromptConfig = field(default_factory=PromptConfig)
    fallback_terms: tuple[str, ...] = DEFAULT_FALLBACK_TERMS


@dataclass(slots=True)
class ShortenerConfig:
    """YOURLS endpoint used for brand affiliate links."""

    api_url: Optional[str] = None
    signature: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def is_configured(self) -> bool:
        return bool(self.api_url and (self.signature or (self.username and self.password)))


@dataclass(slots=True)
class BrandMatchConfig:
    similarity_threshold: float = 80.0


@dataclass(slots=True)
class NotificationConfig:
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_thread_id: Optional[int] = None
    max_stored: int = 50

    def has_telegram(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


@dataclass(slots=True)
class SyncConfig:
    db_url: str = DEFAULT_DB_URL
    user_agent: str = DEFAULT_USER_AGENT
    market: str = DEFAULT_MARKET
    log_dir: Path = DEFAULT_LOG_DIR
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    addrevenue: AddRevenueConfig = field(default_factory=AddRevenueConfig)
    awin: AwinConfig = field(default_factory=AwinConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    shortener: ShortenerConfig = field(default_factory=ShortenerConfig)
    brand_match: BrandMatchConfig = field(default_factory=BrandMatchConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    def ensure_directories(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    value = env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer {value!r} for {name}") from exc


def env_float(name: str, default: float) -> float:
    value = env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number {value!r} for {name}") from exc


def _split_lines(raw: str) -> tuple[str, ...]:
    # Settings forms store the literal two-character sequence as well as real newlines.
    normalized = raw.replace("\\n", "\n")
    return tuple(line.strip() for line in normalized.splitlines() if line.strip())


def load_sync_config() -> SyncConfig:
    """Build the pipeline configuration from ``COUPONSYNC_*`` environment variables."""

    p = _ENV_PREFIX
    config = SyncConfig()
    config.db_url = env_str(f"{p}DATABASE_URL", config.db_url)
    config.user_agent = env_str(f"{p}USER_AGENT", config.user_agent)
    config.market = env_str(f"{p}MARKET", config.market).upper()
    log_dir = env_str(f"{p}LOG_DIR")
    if log_dir:
        config.log_dir = Path(log_dir)

    config.timeout.request_timeout = env_float(f"{p}REQUEST_TIMEOUT", config.timeout.request_timeout)
    config.timeout.enrichment_timeout = env_float(
        f"{p}ENRICHMENT_TIMEOUT", config.timeout.enrichment_timeout
    )

    schedule = config.schedule
    schedule.window_start_hour = env_int(f"{p}WINDOW_START_HOUR", schedule.window_start_hour)
    schedule.window_end_hour = env_int(f"{p}WINDOW_END_HOUR", schedule.window_end_hour)
    schedule.batch_size = max(1, env_int(f"{p}BATCH_SIZE", schedule.batch_size))
    schedule.chunk_delay_seconds = env_float(f"{p}CHUNK_DELAY", schedule.chunk_delay_seconds)
    schedule.lock_stale_after_seconds = env_float(
        f"{p}LOCK_STALE_AFTER", schedule.lock_stale_after_seconds
    )
    schedule.stuck_run_after_seconds = env_float(
        f"{p}STUCK_RUN_AFTER", schedule.stuck_run_after_seconds
    )
    schedule.timezone = env_str(f"{p}TIMEZONE", schedule.timezone)

    config.addrevenue.api_token = env_str(f"{p}ADDREVENUE_TOKEN")
    config.addrevenue.channel_id = env_str(f"{p}ADDREVENUE_CHANNEL_ID", config.addrevenue.channel_id)

    config.awin.api_token = env_str(f"{p}AWIN_TOKEN")
    config.awin.publisher_id = env_str(f"{p}AWIN_PUBLISHER_ID")
    config.awin.region_codes = (config.market,)
    config.awin.rate_limit.max_calls = max(
        1, env_int(f"{p}RATE_LIMIT_CALLS", config.awin.rate_limit.max_calls)
    )
    config.awin.rate_limit.window_seconds = env_float(
        f"{p}RATE_LIMIT_WINDOW", config.awin.rate_limit.window_seconds
    )

    enrichment = config.enrichment
    enrichment.api_key = env_str(f"{p}OPENAI_API_KEY")
    enrichment.model = env_str(f"{p}OPENAI_MODEL", enrichment.model)
    enrichment.base_url = env_str(f"{p}OPENAI_BASE_URL", enrichment.base_url)
    enrichment.retry_delay_seconds = env_float(f"{p}RETRY_DELAY", enrichment.retry_delay_seconds)
    enrichment.recovered_text_ttl_seconds = env_float(
        f"{p}RECOVERED_TEXT_TTL", enrichment.recovered_text_ttl_seconds
    )
    fallback_raw = env_str(f"{p}FALLBACK_TERMS")
    if fallback_raw:
        enrichment.fallback_terms = _split_lines(fallback_raw)

    config.shortener.api_url = env_str(f"{p}YOURLS_URL")
    config.shortener.signature = env_str(f"{p}YOURLS_SIGNATURE")
    config.shortener.username = env_str(f"{p}YOURLS_USERNAME")
    config.shortener.password = env_str(f"{p}YOURLS_PASSWORD")

    config.brand_match.similarity_threshold = env_float(
        f"{p}BRAND_MATCH_THRESHOLD", config.brand_match.similarity_threshold
    )

    notifications = config.notifications
    notifications.telegram_bot_token = env_str(f"{p}NOTIFY_TELEGRAM_BOT_TOKEN")
    notifications.telegram_chat_id = env_str(f"{p}NOTIFY_TELEGRAM_CHAT_ID")
    thread_raw = env_str(f"{p}NOTIFY_TELEGRAM_THREAD_ID")
    if thread_raw:
        try:
            notifications.telegram_thread_id = int(thread_raw)
        except ValueError as exc:
            raise ValueError(f"Invalid Telegram thread ID {thread_raw!r}") from exc
    return config


__all__ = [
    "AddRevenueConfig",
    "AwinConfig",
    "BrandMatchConfig",
    "EnrichmentConfig",
    "NotificationConfig",
    "PromptConfig",
    "RateLimitConfig",
    "ScheduleConfig",
    "ShortenerConfig",
    "SyncConfig",
    "TimeoutConfig",
    "env_bool",
    "env_float",
    "env_int",
    "env_str",
    "load_sync_config",
]
