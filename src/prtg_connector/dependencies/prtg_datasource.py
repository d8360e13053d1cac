import logging
from functools import lru_cache

from fastapi import Request
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prtg_connector.schemas.settings_schemas import DEFAULT_CACHE_TIME_SECONDS, PluginSettings
from prtg_connector.services.datasource import PrtgDatasource
from prtg_connector.services.datetime_normalizer import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    prtg_host: str = ""
    prtg_api_token: SecretStr = SecretStr("")
    prtg_cache_time: float = DEFAULT_CACHE_TIME_SECONDS
    prtg_timezone: str = DEFAULT_TIMEZONE
    prtg_request_timeout: float = 10.0
    app_name: str = "PRTG Connector"
    debug: bool = False
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("debug", mode="before")
    @classmethod
    def _coerce_debug(cls, value):
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"1", "true", "yes", "on"}:
                return True
            if normalized in {"0", "false", "no", "off"}:
                return False
            # Logging level names are not debug switches.
            if normalized in {"warn", "warning", "info", "error", "critical"}:
                return False
        return value

    @field_validator("prtg_cache_time", mode="before")
    @classmethod
    def _coerce_cache_time(cls, value):
        if value in (None, ""):
            return DEFAULT_CACHE_TIME_SECONDS
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def plugin_settings(self) -> PluginSettings:
        return PluginSettings.from_instance_settings(
            {"path": self.prtg_host, "cacheTime": self.prtg_cache_time, "timeZone": self.prtg_timezone},
            {"apiKey": self.prtg_api_token.get_secret_value()},
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def build_datasource(settings: Settings) -> PrtgDatasource:
    plugin_settings = settings.plugin_settings()
    logger.info(
        "PRTG datasource configured: base_url=%s cache_time=%.0fs timezone=%s",
        plugin_settings.base_url,
        plugin_settings.cache_time,
        plugin_settings.timezone,
    )
    return PrtgDatasource(plugin_settings, request_timeout=settings.prtg_request_timeout)


def get_datasource(request: Request) -> PrtgDatasource:
    """Datasource owned by the running application."""
    return request.app.state.datasource
