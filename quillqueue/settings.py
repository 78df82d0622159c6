from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./quillqueue.db"
    redis_url: str = "redis://localhost:6379/0"

    # "redis" in production, "memory" for a single process (api + workers)
    queue_backend: str = "redis"
    queue_prefix: str = "quill"

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_temperature: float = 0.7
    ai_timeout_seconds: float = 120.0

    title_concurrency: int = 5
    outline_concurrency: int = 5
    blog_concurrency: int = 3

    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 60.0

    worker_poll_seconds: float = 0.5
    # a PROCESSING job older than this is treated as abandoned by a dead worker
    stall_seconds: float = 600.0
    run_workers: bool = False
    auto_advance_outlines: bool = True

    log_level: str = "INFO"

settings = Settings()
