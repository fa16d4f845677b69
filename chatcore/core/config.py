from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Type, Union

import yaml
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .errors import InvalidArgument

log = logging.getLogger("chatcore.core.config")


def _env(name: str) -> AliasChoices:
    # file keys and keyword arguments use the field name, the environment the upper-case variable
    return AliasChoices(name, name.upper())


class Settings(BaseSettings):
    """Server settings: YAML file values overlaid by environment variables.

    ``HOST``, ``PORT``, ``USER_SERVICE_ADDR``, ``JWT_SECRET``, ``DB_*`` and
    ``LOG_LEVEL`` are the documented variables. Tuning keys can be set the
    same way through their upper-case names. Empty variables are ignored.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )

    host: str = Field("0.0.0.0", validation_alias=_env("host"))
    port: int = Field(50054, ge=0, le=65535, validation_alias=_env("port"))
    user_service_addr: str = Field("", validation_alias=_env("user_service_addr"))
    jwt_secret: str = Field("", validation_alias=_env("jwt_secret"))
    db_host: str = Field("", validation_alias=_env("db_host"))
    db_port: int = Field(0, ge=0, le=65535, validation_alias=_env("db_port"))
    db_user: str = Field("", validation_alias=_env("db_user"))
    db_password: str = Field("", validation_alias=_env("db_password"))
    db_name: str = Field("chatcore.db", validation_alias=_env("db_name"))
    log_level: str = Field("INFO", validation_alias=_env("log_level"))

    shard_count: int = Field(16, gt=0)
    sink_capacity: int = Field(256, gt=0)
    slow_consumer_grace_secs: float = Field(5.0, gt=0)
    idle_backpressure_secs: float = Field(1.0, gt=0)
    drain_deadline_secs: float = Field(2.0, gt=0)
    heartbeat_secs: float = Field(15.0, gt=0)
    idle_threshold_secs: float = Field(45.0, gt=0)
    membership_ttl_secs: float = Field(30.0, ge=0)
    rpc_timeout_secs: float = Field(5.0, gt=0)
    inbox_capacity: int = Field(64, gt=0)

    @field_validator("shard_count")
    @classmethod
    def shard_count_power_of_two(cls, value: int) -> int:
        if value & (value - 1):
            raise ValueError(f"must be a power of two, got {value}")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # the environment outranks values read from the config file
        return env_settings, init_settings

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Settings":
        """Build settings from an optional YAML file, then apply env overrides."""

        raw: Any = {}
        if path is not None:
            raw = yaml.safe_load(Path(path).read_text()) or {}
            if not isinstance(raw, dict):
                raise InvalidArgument(f"config file {path} must contain a mapping")
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: Mapping[Any, Any]) -> "Settings":
        known = {}
        for key, value in raw.items():
            if key not in cls.model_fields:
                log.warning("Ignoring unknown config key %r", key)
                continue
            known[key] = value
        try:
            return cls(**known)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise InvalidArgument(f"invalid configuration: {problems}") from exc

    @property
    def listen(self) -> str:
        return f"{self.host}:{self.port}"


__all__ = ["Settings"]
