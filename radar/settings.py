import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from radar.analysis.config import RadarConfig, load_radar_config

load_dotenv()


class Settings(BaseModel):
    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./xradar.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Pipeline Configuration
    radar_config_path: str = Field(default="config/radar.yaml", alias="RADAR_CONFIG_PATH")
    tick_interval_seconds: int = Field(default=30, ge=1, alias="TICK_INTERVAL_SECONDS")
    store_write_timeout: float = Field(default=2.0, gt=0, alias="STORE_WRITE_TIMEOUT")
    snapshot_every_ticks: int = Field(default=10, ge=1, alias="SNAPSHOT_EVERY_TICKS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    def load_radar_config(self) -> RadarConfig:
        return load_radar_config(self.radar_config_path)


global_settings = Settings.model_validate(dict(os.environ))
