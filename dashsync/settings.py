import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Source configuration
    sources_path: str = Field(default="sources.yaml", alias="DASHSYNC_SOURCES_PATH")
    snapshot_root: str = Field(default="public", alias="DASHSYNC_SNAPSHOT_ROOT")

    # Refresh configuration
    refresh_interval_seconds: int = Field(default=300, alias="DASHSYNC_REFRESH_INTERVAL")
    max_concurrency: int | None = Field(default=None, alias="DASHSYNC_MAX_CONCURRENCY")

    # HTTP configuration
    http_timeout: float = Field(default=30.0, alias="DASHSYNC_HTTP_TIMEOUT")

    # Cache persistence (path inside the snapshot root)
    cache_snapshot_path: str | None = Field(
        default=None, alias="DASHSYNC_CACHE_SNAPSHOT_PATH"
    )

    log_level: str = Field(default="INFO", alias="DASHSYNC_LOG_LEVEL")


def load_settings() -> Settings:
    """Build settings from the process environment (after .env is loaded)."""
    fields = {
        field.alias: os.environ[field.alias]
        for field in Settings.model_fields.values()
        if field.alias and field.alias in os.environ
    }
    return Settings(**fields)


global_settings = load_settings()
