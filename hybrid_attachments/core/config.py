from typing import List, Union, Optional
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "Hybrid Attachments"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./attachments.db"

    # CORS
    BACKEND_CORS_ORIGINS: List[Union[str, AnyHttpUrl]] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Remote object storage
    STORAGE_BACKEND: str = "s3"  # s3, memory
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "ap-northeast-2"
    S3_BUCKET_NAME: str = "hybrid-attachments"
    S3_ENDPOINT_URL: Optional[str] = None  # MinIO or other S3-compatible hosts
    S3_PUBLIC_BASE_URL: Optional[str] = None  # CDN origin serving the bucket
    STORAGE_ROOT_FOLDER: str = "oneflow"

    # Remote call timeouts (seconds)
    REMOTE_UPLOAD_TIMEOUT_SECONDS: float = 120.0
    REMOTE_EXISTS_TIMEOUT_SECONDS: float = 30.0
    REMOTE_DELETE_TIMEOUT_SECONDS: float = 30.0

    # Upload and backup limits (bytes)
    MAX_FILE_SIZE: int = 10 * 1024 * 1024
    MAX_BACKUP_SIZE: int = 200 * 1024
    FALLBACK_MAX_BACKUP_SIZE: int = 5 * 1024 * 1024

    # Preview generation
    PREVIEW_MAX_DIMENSION: int = 200
    PREVIEW_IMAGE_QUALITY: int = 70
    FALLBACK_IMAGE_QUALITY: int = 60
    PREVIEW_TEXT_PREFIX_BYTES: int = 50 * 1024
    PREVIEW_SNIPPET_BYTES: int = 10 * 1024

    # Outbox processing
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BACKOFF_BASE_SECONDS: int = 30
    OUTBOX_BACKOFF_MAX_SECONDS: int = 3600
    OUTBOX_RETENTION_DAYS: int = 30
    OUTBOX_SCHEDULER_ENABLED: bool = True
    OUTBOX_PROCESS_INTERVAL_SECONDS: int = 300

    # Monitoring & Performance Settings
    SLOW_REQUEST_THRESHOLD_MS: float = 1000.0  # Log requests slower than this (milliseconds)
    SLOW_QUERY_THRESHOLD_MS: float = 100.0  # Log queries slower than this (milliseconds)
    ENABLE_STRUCTURED_LOGGING: bool = True  # Use JSON structured logging
    ENABLE_PROMETHEUS_METRICS: bool = True  # Enable Prometheus metrics collection

    @property
    def s3_configured(self) -> bool:
        """Check if explicit S3 credentials are configured."""
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)


settings = Settings()
