"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestration core settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "civicflow_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # Routing (fixed interval: department outages, not network blips)
    routing_max_attempts: int = 3
    routing_retry_interval_seconds: float = 300.0
    routing_attempt_timeout_seconds: float = 30.0

    # Transient network operations (uploads, draft submissions)
    upload_retry_base_seconds: float = 1.0
    upload_retry_factor: float = 2.0
    upload_retry_max_attempts: int = 3
    upload_attempt_timeout_seconds: float = 60.0

    # Persistence writes
    persistence_retry_base_seconds: float = 0.5
    persistence_retry_max_attempts: int = 3
    persistence_attempt_timeout_seconds: float = 10.0

    # Offline submissions are de-duplicated on local_id for this long
    dedup_retention_hours: int = 24

    # Confidence gate
    manual_review_confidence_threshold: float = 0.6

    # Department work-order endpoints
    department_endpoint_base_url: str = "http://localhost:9000"
    department_endpoint_timeout_seconds: float = 20.0

    # Notification delivery collaborator
    notification_webhook_url: str = "http://localhost:9100/notifications"
    notification_timeout_seconds: float = 10.0

    # Offline reconciliation
    reconciliation_interval_seconds: int = 60

    # Administrators notified when routing escalates to the manual queue
    admin_recipients: str = "routing-admins@city.example"

    # Environment
    environment: str = "development"

    @property
    def admin_recipients_list(self) -> List[str]:
        """Parse admin recipients string to list"""
        return [r.strip() for r in self.admin_recipients.split(",") if r.strip()]

    @property
    def dedup_retention_seconds(self) -> int:
        """Idempotency window in seconds"""
        return self.dedup_retention_hours * 3600


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
