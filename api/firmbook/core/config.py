from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "firmbook-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    maintenance_token: str | None = None
    jobs_min_delay_ms: int = 1200
    jobs_max_batch_size: int = 50
    jobs_rate_limit_backoff_seconds: int = 60
    jobs_auth_backoff_seconds: int = 6 * 60 * 60
    upstream_timeout_seconds: float = 30.0
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    perplexity_api_key: str | None = None
    perplexity_model: str = "sonar"
    perplexity_base_url: str = "https://api.perplexity.ai"
    records_list_limit: int = 2000
    otel_enabled: bool = True
    otel_service_name: str = "firmbook-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="FB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
