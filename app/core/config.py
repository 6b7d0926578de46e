from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    ENV: str = "local"
    SERVICE_PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    REDIS_ADDR: str = "localhost:6379"
    REDIS_PASSWORD: str = ""
    REDIS_DB: int = 0

    # Single-shot uploads land directly here
    UPLOAD_DIR: str = "uploads"
    # One blob per (session id, chunk number)
    CHUNK_DIR: str = "uploads/chunks"
    # Merged artifacts, named by the client-supplied file name
    COMPLETED_DIR: str = "uploads/completed"

    CHUNK_INDEX_PREFIX: str = "upload_status:"
    SESSION_PREFIX: str = "upload_session:"
    MERGE_JOB_PREFIX: str = "upload_merge:"

    SESSION_TTL_SECONDS: int = 86400
    CLEANUP_INTERVAL_SECONDS: int = 3600  # 0 disables the sweeper

    MERGE_BUFFER_SIZE: int = 1024 * 1024
    IO_WORKERS: int = 4

    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_ADDR}/{self.REDIS_DB}"

settings = Settings()
