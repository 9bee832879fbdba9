from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="CONVOFLOW_", extra="ignore")

    app_env: str = "dev"
    database_url: str = "sqlite:///./convoflow.db"
    log_level: str = "INFO"

    # sessions
    idle_timeout_hours: float = 24.0
    lock_ttl_seconds: float = 30.0
    lock_wait_seconds: float = 5.0
    max_steps_per_run: int = 100

    # webhook steps
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_backoff_seconds: float = 0.5

    # code_execution steps
    sandbox_timeout_seconds: float = 5.0
    sandbox_memory_mb: int = 256
    sandbox_network_timeout_seconds: float = 5.0

    # background jobs
    sweep_interval_seconds: int = 300
    timer_interval_seconds: int = 5

    # 64 hex chars (32 bytes); required only when encrypted variables are written
    variable_encryption_key: str | None = None


settings = Settings()  # reads from env
