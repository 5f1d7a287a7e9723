from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_dir: Path = Path.home() / ".vocabdrill" / "data"
    sqlite_filename: str = "vocabdrill.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # Busy timeout for the grading transaction; expiry surfaces as a persistence failure
    transaction_timeout_seconds: float = 5.0
    # Batch idempotency records older than this are swept
    idempotency_retention_hours: int = 24

    distractor_count: int = 3
    distractor_retry_budget: int = 5
    matching_batch_size: int = 5
    matching_min_items: int = 4

    due_feed_limit: int = 200
    reset_recent_default: int = 50

    model_config = {"env_prefix": "VOCABDRILL_"}


settings = Settings()
