from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Membership Billing Pipeline"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "membership_billing"
    postgres_user: str = "membership_billing"
    postgres_password: str = "membership_billing"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 20
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    admin_api_token: str | None = None

    hotmart_webhook_token: str | None = None
    kiwify_webhook_secret: str | None = None
    caktor_webhook_secret: str | None = None
    stripe_webhook_secret: str | None = None
    generic_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    webhook_replay_window_seconds: int = 300
    webhook_allow_unverified: bool = False

    billing_downgrade_on_revoke: bool = True
    billing_free_plan_tier: str = "free"

    inbound_max_processing_attempts: int = 5
    inbound_stall_seconds: int = 120

    outbound_backoff_strategy: str = "exponential"
    outbound_retry_base_seconds: int = 1
    outbound_retry_max_delay_seconds: int = 300
    outbound_max_attempts: int = 5
    outbound_timeout_seconds: float = 5.0
    outbound_max_concurrency: int = 10
    outbound_batch_size: int = 100
    outbound_max_event_age_seconds: int = 7 * 24 * 3600
    outbound_auto_deactivate_after_failures: int = 0
    outbound_user_agent: str = "Membership-Webhooks/1.0"

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
