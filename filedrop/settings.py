from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    API_KEY: str = "change-me"
    API_KEY_HEADER: str = "X-API-Key"
    AUTH_ENABLED: bool = False

    # blob store: "local", "s3" or "cdn"
    BLOB_BACKEND: str = "local"
    STORAGE_DIR: Path = Path("./uploads")
    BLOB_WRITE_TIMEOUT: float = 60.0
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024
    ALLOWED_EXTENSIONS: List[str] = [".pdf", ".doc", ".docx", ".xls", ".xlsx", ".csv"]

    S3_BUCKET: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: Optional[str] = None
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None
    S3_PRESIGN_SECONDS: int = 3600

    CDN_UPLOAD_URL: Optional[str] = None
    CDN_API_KEY: Optional[str] = None
    CDN_URL_FIELD: str = "url"

    # metadata index: "json" sidecar file or "sql" table
    INDEX_BACKEND: str = "json"
    METADATA_FILE: Optional[Path] = None

    # Support either a full DATABASE_URL or individual PG_* settings
    DATABASE_URL: Optional[str] = None
    PG_USER: str = "postgres"
    PG_PASSWORD: str = "password"
    PG_HOST: str = "postgres"
    PG_PORT: int = 5432
    PG_DB: str = "filedrop"

    PUSH_ENDPOINT: Optional[str] = None
    PUSH_TOKEN: Optional[str] = None
    PUSH_TOPIC: str = "allUsers"
    NOTIFY_QUEUE_SIZE: int = 1000

    KEEPALIVE_URL: Optional[str] = None
    KEEPALIVE_MIN_MINUTES: int = 2
    KEEPALIVE_MAX_MINUTES: int = 7

    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["*"]

    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[Path] = Path("./logs")

    # Allow extra env vars to be ignored and load from .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def __init__(self, **values):
        super().__init__(**values)
        # Build a Postgres URL when DATABASE_URL not provided
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+psycopg2://{self.PG_USER}:"
                f"{self.PG_PASSWORD}@{self.PG_HOST}:{self.PG_PORT}/{self.PG_DB}"
            )
        if self.METADATA_FILE is None:
            self.METADATA_FILE = self.STORAGE_DIR / "metadata.json"
        self.ALLOWED_EXTENSIONS = [ext.lower() for ext in self.ALLOWED_EXTENSIONS]


@lru_cache
def get_settings() -> Settings:
    return Settings()
