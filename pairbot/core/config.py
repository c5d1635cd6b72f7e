from functools import lru_cache
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "pairbot"
    env: str = "dev"
    log_level: str = "INFO"

    host: str = "0.0.0.0"
    port: int = 8000

    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_use_webhook: bool = False
    telegram_webhook_url: str = ""
    telegram_webhook_path: str = "/telegram/webhook"
    telegram_webhook_secret: str = ""
    enable_new_member_welcome: bool = Field(default=True, alias="ENABLE_NEW_MEMBER_WELCOME")

    # Generative model: one provider is selected at startup
    ai_provider: str = Field(default="openai", alias="AI_PROVIDER")
    ai_api_key: str = Field(default="", alias="AI_API_KEY")
    ai_base_url: str = Field(default="", alias="AI_BASE_URL")
    ai_model: str = Field(default="gpt-4.1-mini", alias="AI_MODEL")
    ai_router_model: str = Field(default="", alias="AI_ROUTER_MODEL")
    ai_classify_max_tokens: int = Field(default=500, alias="AI_CLASSIFY_MAX_TOKENS")
    ai_analysis_max_tokens: int = Field(default=8000, alias="AI_ANALYSIS_MAX_TOKENS")
    ai_analysis_temperature: float = Field(default=0.3, alias="AI_ANALYSIS_TEMPERATURE")
    ai_request_timeout_sec: float = Field(default=120.0, alias="AI_REQUEST_TIMEOUT_SEC")

    redis_url: str = "redis://redis:6379/0"

    binance_base_url: str = Field(default="https://api.binance.com", alias="BINANCE_BASE_URL")
    binance_futures_base_url: str = Field(default="https://fapi.binance.com", alias="BINANCE_FUTURES_BASE_URL")
    catalog_timeout_sec: float = Field(default=10.0, alias="CATALOG_TIMEOUT_SEC")
    probe_timeout_sec: float = Field(default=3.0, alias="PROBE_TIMEOUT_SEC")
    universe_ttl_min: int = Field(default=360, alias="UNIVERSE_TTL_MIN")
    kline_intervals: str = Field(default="15m,1h,4h,1d,1w,1M", alias="KLINE_INTERVALS")
    kline_limit: int = Field(default=100, alias="KLINE_LIMIT")

    prefer_spot_on_overlap: bool = Field(default=True, alias="PREFER_SPOT_ON_OVERLAP")
    grounding_quote: str = Field(default="USDT", alias="GROUNDING_QUOTE")
    grounding_primary_cap: int = Field(default=1000, alias="GROUNDING_PRIMARY_CAP")
    grounding_secondary_cap: int = Field(default=500, alias="GROUNDING_SECONDARY_CAP")

    max_concurrent_analysis: int = Field(default=3, alias="MAX_CONCURRENT_ANALYSIS")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    universe_warm_interval_min: int = Field(default=60, alias="UNIVERSE_WARM_INTERVAL_MIN")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"invalid log level: {value}")
        return level

    @field_validator("ai_provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        provider = value.strip().lower()
        if provider not in {"openai", "gemini"}:
            raise ValueError(f"unsupported AI provider: {value}")
        return provider

    @field_validator("max_concurrent_analysis")
    @classmethod
    def _check_concurrency(cls, value: int) -> int:
        if value < 1 or value > 100:
            raise ValueError(f"max concurrent analysis must be between 1 and 100, got {value}")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"invalid timezone: {value}") from exc
        return value

    def kline_intervals_list(self) -> List[str]:
        out: List[str] = []
        for item in self.kline_intervals.split(","):
            tf = item.strip()
            if tf and tf not in out:
                out.append(tf)
        return out or ["1h"]

    def classify_model(self) -> str:
        return self.ai_router_model or self.ai_model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
