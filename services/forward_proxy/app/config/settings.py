from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseSettings):
    LISTEN: str = "127.0.0.1:9999"
    PROXY_TO: str
    VIA_PROXY: Optional[str] = None

    # Refuse to start when VIA_PROXY is set but unparsable, instead of
    # falling back to direct forwarding.
    VIA_PROXY_STRICT: bool = False

    # Send the caller's Host header downstream instead of the downstream authority.
    PRESERVE_HOST: bool = False

    # Seconds; None leaves outbound requests without a timeout.
    PROXY_TIMEOUT: Optional[float] = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("LOG_LEVEL")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}")
        return level


@lru_cache
def get_settings() -> Settings:
    return Settings()
