"""Application settings from environment variables."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # Supabase (empty means in-memory collaborators)
    supabase_url: str = ""
    supabase_key: str = ""

    # Configuration
    log_level: str = "INFO"
    history_retry_attempts: int = 3
    base_delay_seconds: float = 1.0

    # Encoder
    ffmpeg_path: str = "ffmpeg"
    media_root: str = "public/uploads/videos"

    # Orchestration
    scheduler_tick_seconds: float = Field(default=10.0, ge=1.0, le=3600.0)
    stop_grace_seconds: float = Field(default=5.0, gt=0.0)
    stop_streams_on_shutdown: bool = True

    # Uploads
    max_concurrent_uploads: int = Field(default=3, ge=1)
    upload_rate_limit: int = Field(default=10, ge=1)
    upload_rate_window_seconds: float = Field(default=3600.0, gt=0.0)

    # Server
    host: str = "0.0.0.0"
    port: int = 7575

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
