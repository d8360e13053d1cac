import logging
from collections.abc import Mapping
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from prtg_connector.services.datetime_normalizer import DEFAULT_TIMEZONE, resolve_timezone

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TIME_SECONDS = 30.0


class ConfigurationError(Exception):
    """Instance settings cannot be loaded; the datasource cannot be built."""


class PluginSettings(BaseModel):
    """Connection parameters for one PRTG datasource instance."""

    path: str = ""
    cache_time: float = Field(default=DEFAULT_CACHE_TIME_SECONDS, alias="cacheTime")
    timezone: str = Field(default=DEFAULT_TIMEZONE, alias="timeZone")
    api_key: SecretStr = Field(default=SecretStr(""), alias="apiKey")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("cache_time", mode="before")
    @classmethod
    def _default_cache_time(cls, value: Any) -> Any:
        if value in (None, ""):
            return DEFAULT_CACHE_TIME_SECONDS
        return value

    @field_validator("cache_time")
    @classmethod
    def _positive_cache_time(cls, value: float) -> float:
        return value if value > 0 else DEFAULT_CACHE_TIME_SECONDS

    @field_validator("timezone", mode="before")
    @classmethod
    def _valid_timezone(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_TIMEZONE
        if isinstance(value, str):
            # resolve_timezone logs the fallback for unknown names
            return resolve_timezone(value).key
        return value

    @property
    def base_url(self) -> str:
        path = self.path.strip().rstrip("/")
        if "://" in path:
            return path
        return f"https://{path}"

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key.get_secret_value())

    @classmethod
    def from_instance_settings(
        cls, json_data: bytes | str | Mapping[str, Any] | None, secure_json_data: Mapping[str, str] | None = None
    ) -> "PluginSettings":
        """Build settings from the host's JSON blob plus its decrypted secrets."""
        if json_data is None or json_data in (b"", ""):
            payload: Any = {}
        elif isinstance(json_data, Mapping):
            payload = dict(json_data)
        else:
            try:
                payload = orjson.loads(json_data)
            except orjson.JSONDecodeError as exc:
                raise ConfigurationError(f"could not unmarshal PluginSettings json: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigurationError("could not unmarshal PluginSettings json: expected an object")

        payload.pop("apiKey", None)
        secrets = secure_json_data or {}
        try:
            return cls.model_validate({**payload, "apiKey": secrets.get("apiKey", "")})
        except ValidationError as exc:
            raise ConfigurationError(f"invalid PluginSettings: {exc.error_count()} error(s)") from exc
