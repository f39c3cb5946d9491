"""Waypoint configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so WAYPOINT_* overrides are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

DEFAULT_CONFIG_PATH = Path.home() / ".config/waypoint/config.toml"


class GeneralSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WAYPOINT_")
    db_url: str = Field(default="postgresql+asyncpg://localhost/waypoint")
    log_level: str = "INFO"


class ApiSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WAYPOINT_API_")
    host: str = "127.0.0.1"
    port: int = 5402
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"])


class PrioritySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WAYPOINT_PRIORITY_")
    # Project slug that gets the fixed tooling bonus when ranking
    tooling_slug: str = "kodiack-dashboard-5500"


class WatcherSettings(BaseSettings):
    """Settings for the TODO watcher."""

    model_config = SettingsConfigDict(env_prefix="WAYPOINT_WATCHER_")
    enabled: bool = True
    interval_seconds: float = 300.0
    cycle_timeout_seconds: float = 60.0
    auto_revisit: bool = False
    analysis_source: str = "waypoint:todo-watcher"


class StoreSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WAYPOINT_STORE_")
    # False for stores that cannot express "sort_order = sort_order + 1"
    relative_updates: bool = True


class Settings(BaseSettings):
    """All Waypoint settings, one section per TOML table."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    priority: PrioritySettings = Field(default_factory=PrioritySettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Read ``config_path`` (default ~/.config/waypoint/config.toml); missing file means defaults."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                api=ApiSettings(**data.get("api", {})),
                priority=PrioritySettings(**data.get("priority", {})),
                watcher=WatcherSettings(**data.get("watcher", {})),
                store=StoreSettings(**data.get("store", {})),
            )

        return cls()


# Loaded lazily by get_settings()
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
