# gas_relayer/config.py
from typing import Literal, Tuple

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gas_relayer.errors import StartupError, StartupErrorKind


class Settings(BaseSettings):
    # App
    APP_ENVIRONMENT: Literal["Local", "Production"] = "Local"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = Field(default=8080, ge=1, le=65535)
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Database
    DATABASE_URL: str
    MAX_DB_CONNECTION: int = Field(default=5, ge=1)
    DB_SLOW_THRESHOLD_MS: float = Field(default=500.0, gt=0)

    # Observability
    METRICS_PREFIX: str = "gas_relayer"
    HEALTH_PROBE_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)

    # Lifecycle
    SHUTDOWN_GRACE_SECONDS: float = Field(default=10.0, ge=0)

    # read .env and ignore any extra keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @property
    def listening_addr(self) -> Tuple[str, int]:
        return self.APP_HOST, self.APP_PORT


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise StartupError(StartupErrorKind.CONFIGURATION, problems) from e
