from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str
    redis_url: str
    cron_secret: str

    record_dlq: str = "record_dlq"

    # cycle tuning
    batch_size: int = 5
    max_attempts: int = 3
    lease_seconds: int = 300
    cycle_deadline_seconds: float = 240.0
    generation_timeout_seconds: float = 60.0
    generation_concurrency: int = 5

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"

    trigger_url: str = "http://localhost:8000"
    trigger_interval_seconds: float = 20.0

    log_level: str = "INFO"

settings = Settings()
