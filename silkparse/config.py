import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage Configuration
    data_dir: str = "./data"
    upload_dir: str = "./uploads"

    # Queue Configuration
    queue_name: str = "parse_jobs"
    max_job_attempts: int = 3
    backoff_delay_ms: int = 5000
    job_timeout_ms: int = 300000
    stalled_interval_ms: int = 30000
    max_stalled_count: int = 1
    remove_on_complete: int = 10
    remove_on_fail: int = 5

    # Worker Configuration
    worker_concurrency: int = 3
    job_poll_interval: float = 1.0
    shutdown_deadline_seconds: float = 60.0
    shutdown_poll_interval: float = 2.0
    status_log_interval: float = 30.0
    monitor_port: int = 8001

    # Analyzer Configuration
    default_dpi: int = 600
    enable_ocg: bool = True
    extract_vector: bool = True
    render_timeout_seconds: float = 60.0
    min_mask_bytes: int = 1000
    alpha_threshold: int = 50

    # Maintenance Configuration
    ttl_days: int = 30
    health_url: str = "http://localhost:8000/health"

    environment: str = "development"

    # Logging Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sqlite_path(self) -> str:
        """Return path to SQLite database."""
        return os.path.join(self.data_dir, "silkparse.db")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


# Global settings instance
settings = Settings()
