from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    app_name: str = "Velora Follow-Up Radar"
    debug: bool = False
    api_prefix: str = "/api"
    cors_origins: list[str] = [
        "http://localhost:3000",
        "https://velora.cc",
    ]

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # JSON lines with request ids

    # Database
    database_url: str = "sqlite+aiosqlite:///./velora.db"

    # Timezone used for "today" boundaries and YYYYMMDD cost keys
    timezone: str = "America/Los_Angeles"

    # Every store / LLM call is bounded by this timeout (seconds)
    remote_call_timeout: float = 10.0

    # LLM (draft generation + detection fallback)
    openai_api_key: Optional[str] = None  # Set via OPENAI_API_KEY env var
    draft_model: str = "gpt-5-mini"
    draft_max_tokens: int = 150
    detection_max_tokens: int = 200
    llm_max_retries: int = 3

    # Rate limits (followup creation / reminder emails)
    rate_limit_per_minute: int = 3
    rate_limit_per_hour: int = 10
    rate_limit_per_day: int = 50

    # Pricing (USD)
    email_cost_per_1k: float = 0.50
    llm_cost_per_1k_tokens: dict[str, float] = {
        "gpt-5-mini": 0.001,
        "gpt-5": 0.005,
    }
    llm_default_cost_per_1k_tokens: float = 0.005
    datastore_read_cost_per_100k: float = 0.36
    datastore_write_cost_per_100k: float = 1.08
    pro_arpu: float = 15.00  # Pro plan monthly revenue per user
    target_cogs_percentage: float = 0.30
    critical_cogs_percentage: float = 0.50

    # Action links in reminder emails
    jwt_secret: str = "velora-radar-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    action_link_issuer: str = "velora-radar"
    action_link_audience: str = "velora-users"
    action_link_expire_minutes: int = 15
    public_base_url: str = "http://localhost:3000"

    # Inbound email
    inbound_webhook_secret: Optional[str] = None
    alias_domains: list[str] = ["in.velora.cc", "velora.cc"]
    default_due_days: int = 2

    # Scheduler (rate limit counter cleanup)
    enable_scheduler: bool = True
    rate_limit_cleanup_minutes: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
