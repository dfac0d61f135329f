from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/imports.db"
    secret_key: str = "dev-secret-key-change-in-production"
    log_level: str = "INFO"

    # Redis configuration (distributed job locks)
    redis_url: str = "redis://localhost:6379"

    # Celery configuration
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    # Upload handling
    upload_dir: str = "./data/uploads"
    max_upload_bytes: int = 50 * 1024 * 1024
    accepted_media_types: List[str] = [
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ]

    # Extraction/classification service
    extraction_service_url: str = ""
    extraction_cancel_url: str = ""
    extraction_auth_type: str = "none"  # none, api_key, bearer
    extraction_api_key: str = ""
    extraction_bearer_token: str = ""
    extraction_timeout_seconds: float = 30.0
    extraction_max_retries: int = 3
    extraction_retry_delay_seconds: int = 30

    # Callbacks from the extraction service
    callback_base_url: str = ""
    callback_token: str = ""

    # Classification
    default_taxonomy_name: str = "CSHSE Standards"
    mapping_confidence_threshold: float = 50.0
    recent_events_limit: int = 20

    # Per-job single-writer locks: "memory" or "redis"
    job_lock_backend: str = "memory"
    job_lock_timeout_seconds: float = 30.0

    # Target document collaborator: "local" or "http"
    target_document_backend: str = "local"
    target_document_url: str = ""
    target_document_timeout_seconds: float = 15.0

    # Stale job sweep
    processing_timeout_minutes: int = 60
    completion_grace_seconds: int = 120
    sweep_interval_seconds: int = 60

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
