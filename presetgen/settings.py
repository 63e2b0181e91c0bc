from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./presetgen.db"
    redis_url: str = "redis://localhost:6379/0"

    job_queue: str = "example_generation:queue"
    job_processing: str = "example_generation:processing"
    job_dlq: str = "example_generation:dlq"
    job_delayed: str = "example_generation:delayed"
    reservation_prefix: str = "example_generation:reserved"

    log_level: str = "INFO"

    # worker pool
    worker_concurrency: int = 2
    worker_poll_seconds: float = 1.0
    reaper_interval_seconds: float = 30.0
    stall_timeout_seconds: float = 600.0

    # retry policy
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 60.0

    # bounded retention of finished jobs
    retention_completed: int = 100
    retention_failed: int = 100

    reservation_ttl_seconds: int = 900

    models_file: str = "models.json"
    output_dir: str = "./generated"
    public_base_url: str = "http://localhost:8000/generated"

    # provider
    default_provider: str = "replicate"
    replicate_api_token: str | None = None
    replicate_model: str = "google/nano-banana"
    provider_timeout_seconds: float = 120.0
    download_timeout_seconds: float = 60.0
    default_prompt: str = "Studio portrait of the reference person, natural light"

settings = Settings()
