from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings

BACKEND_KINDS = ("file", "sqlite", "mysql", "postgresql", "timescaledb")


class Settings(BaseSettings):
    """Configuration settings for the APM pipeline."""

    # Source store (written by collectors, drained by the worker)
    APM_SOURCE_TYPE: str = "sqlite"
    APM_SOURCE_URL: Optional[str] = None
    APM_SOURCE_FILE_PATH: str = "/tmp/apm_metrics_log.sqlite"
    APM_SOURCE_TABLE: str = "apm_metrics_log"

    # Destination store (normalized schema read by the dashboard)
    APM_DEST_TYPE: str = "sqlite"
    APM_DEST_URL: Optional[str] = None
    APM_DEST_FILE_PATH: str = "/tmp/apm_metrics.sqlite"

    APM_SAMPLE_RATE: float = 1.0
    APM_MASK_IP_ADDRESSES: bool = False
    APM_FALLBACK_LOG_PATH: str = "/tmp/apm_fallback.log"
    APM_DEAD_LETTER_PATH: Optional[str] = "/tmp/apm_dead_letter.log"

    APM_BATCH_SIZE: int = 100
    APM_TIMEOUT: int = 0
    APM_MAX_MESSAGES: int = 0
    APM_DAEMON: bool = False
    APM_IDLE_SLEEP_SECONDS: float = 1.0
    APM_BACKOFF_SECONDS: float = 5.0

    APM_MAX_CANDIDATE_REQUESTS: int = 500
    APM_RUN_WORKER_IN_PROCESS: bool = False
    APM_PURGE_DAYS: int = 30

    @model_validator(mode="after")
    def build_storage_urls(self) -> "Settings":
        """Validate backend kinds and derive SQLite URLs from file paths when unset."""
        self.APM_SOURCE_TYPE = self.APM_SOURCE_TYPE.strip().lower()
        self.APM_DEST_TYPE = self.APM_DEST_TYPE.strip().lower()
        for label, kind in (("APM_SOURCE_TYPE", self.APM_SOURCE_TYPE), ("APM_DEST_TYPE", self.APM_DEST_TYPE)):
            if kind not in BACKEND_KINDS:
                raise ValueError(f"{label} must be one of {', '.join(BACKEND_KINDS)}, got {kind!r}")

        if not 0.0 <= self.APM_SAMPLE_RATE <= 1.0:
            raise ValueError(f"APM_SAMPLE_RATE must be within [0, 1], got {self.APM_SAMPLE_RATE}")

        if not self.APM_SOURCE_URL and self.APM_SOURCE_TYPE == "sqlite":
            self.APM_SOURCE_URL = f"sqlite:///{self.APM_SOURCE_FILE_PATH}"
        if not self.APM_DEST_URL and self.APM_DEST_TYPE == "sqlite":
            self.APM_DEST_URL = f"sqlite:///{self.APM_DEST_FILE_PATH}"
        return self

    class Config:
        """Pydantic config."""

        case_sensitive = True


settings = Settings()
