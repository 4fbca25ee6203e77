from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "News Edition Cache"
    app_version: str = "0.1.0"

    wordpress_base_url_template: str = "https://{country}.example-news.com"
    wordpress_base_urls: dict[str, str] = Field(default_factory=dict)
    wordpress_timeout_seconds: float = 15.0
    wordpress_retry_attempts: int = 2
    wordpress_backoff_base_seconds: float = 0.5
    wordpress_rest_max_per_page: int = Field(default=100, ge=1, le=100)
    wordpress_rest_throttle_seconds: float = 0.15

    default_country: str = "sz"
    supported_countries: list[str] = Field(default_factory=lambda: ["sz", "za", "ng", "ke", "tz", "eg", "gh"])

    cache_max_entries: int = Field(default=1000, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, ge=0)
    cache_stale_seconds: float = Field(default=600.0, ge=0)

    related_cache_max_entries: int = Field(default=750, ge=1)
    related_cache_max_bytes: int = Field(default=15 * 1024 * 1024, ge=1024)
    related_cache_ttl_seconds: float = 1200.0

    aggregate_concurrency: int = Field(default=4, ge=1)
    aggregate_timeout_seconds: float = 8.0

    preload_max_concurrent: int = Field(default=3, ge=1)
    preload_batch_size: int | None = Field(default=None, ge=1)
    preload_batch_delay_seconds: float = 0.1
    preload_related_limit: int = Field(default=6, ge=1, le=100)
    preload_timeout_seconds: float = 10.0

    revalidation_secret: str | None = None
    wordpress_webhook_secret: str | None = None

    @model_validator(mode="after")
    def validate_cache_windows(self) -> "Settings":
        if self.cache_stale_seconds < self.cache_ttl_seconds:
            raise ValueError("cache_stale_seconds must be greater than or equal to cache_ttl_seconds.")
        self.default_country = self.default_country.strip().lower()
        self.supported_countries = list(
            dict.fromkeys(code.strip().lower() for code in self.supported_countries if code.strip())
        )
        if self.default_country not in self.supported_countries:
            self.supported_countries.append(self.default_country)
        return self

    def wordpress_base_url(self, country: str) -> str:
        override = self.wordpress_base_urls.get(country)
        if override:
            return override.rstrip("/")
        return self.wordpress_base_url_template.format(country=country).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
