"""
Process configuration loaded with Dynaconf and validated with Pydantic.

This covers how the service itself runs (data directory, bind address,
outbound timeouts, environment-derived server identity).  Module settings
edited through the dashboard live in the ``SettingsStore`` document instead.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
ENVVAR_PREFIX = "MESHADMIN"

# Environment names used by the docker-compose deployment.
LEGACY_ENVIRONMENT = (
    "DATA_PATH",
    "PORT",
    "SERVER_DOMAIN",
    "SERVER_IP",
    "NGINX_HTTP_PORT",
    "NGINX_HTTPS_PORT",
    "ADMIN_PORT",
    "TZ",
)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class AppSettings(BaseModel):
    """Validated runtime configuration for the admin service."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    data_path: Path = Field(default=Path("data"), validation_alias=_alias("data_path", "DATA_PATH"))
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, validation_alias=_alias("port", "PORT"))
    server_domain: str = Field(
        default="localhost", validation_alias=_alias("server_domain", "SERVER_DOMAIN")
    )
    server_ip: str = Field(default="", validation_alias=_alias("server_ip", "SERVER_IP"))
    http_port: str = Field(default="80", validation_alias=_alias("http_port", "NGINX_HTTP_PORT"))
    https_port: str = Field(
        default="443", validation_alias=_alias("https_port", "NGINX_HTTPS_PORT")
    )
    admin_port: str = Field(default="3001", validation_alias=_alias("admin_port", "ADMIN_PORT"))
    timezone: str = Field(default="UTC", validation_alias=_alias("timezone", "TZ"))
    log_level: str = Field(default="INFO")
    log_file: Path | None = Field(default=None)
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    branding_dir: Path | None = Field(default=None)
    uploads_dir: Path | None = Field(default=None)

    @field_validator("http_port", "https_port", "admin_port", mode="before")
    @classmethod
    def _port_as_text(cls, value: Any) -> str:
        return str(value).strip()

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def log_path(self) -> Path:
        return self.log_file or self.data_path / "meshadmin.log"

    @property
    def branding_path(self) -> Path:
        return self.branding_dir or self.data_path / "branding"

    @property
    def uploads_path(self) -> Path:
        return self.uploads_dir or self.data_path / "uploads"


def _legacy_environment() -> dict[str, str]:
    return {name: os.environ[name] for name in LEGACY_ENVIRONMENT if os.environ.get(name)}


def load_app_settings(
    *,
    config_dir: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    settings: Dynaconf | None = None,
) -> AppSettings:
    """
    Build ``AppSettings`` from optional YAML files, ``MESHADMIN_*`` env vars,
    the legacy deployment env vars and explicit ``overrides`` (highest wins).
    """
    if settings is None:
        files: list[str] = []
        if config_dir is not None:
            files = [
                str(Path(config_dir) / name)
                for name in CONFIG_FILENAMES
                if (Path(config_dir) / name).exists()
            ]
        settings = Dynaconf(
            envvar_prefix=ENVVAR_PREFIX,
            settings_files=files,
            load_dotenv=True,
            environments=False,
        )
    layered = {str(key).lower(): value for key, value in settings.as_dict().items()}
    raw: dict[str, Any] = {**_legacy_environment(), **layered}
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value
    try:
        return AppSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid service configuration: {exc}") from exc


__all__ = [
    "AppSettings",
    "CONFIG_FILENAMES",
    "ENVVAR_PREFIX",
    "LEGACY_ENVIRONMENT",
    "load_app_settings",
]
