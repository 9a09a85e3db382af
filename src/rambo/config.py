"""Policy resolution: CLI overrides > environment > TOML file > defaults."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from rambo.errors import ConfigurationError
from rambo.models import PolicyConfig

CONFIG_ENV_VAR = "RAMBO_CONFIG"


def default_config_path() -> Path:
    """$RAMBO_CONFIG, else $XDG_CONFIG_HOME/rambo/config.toml."""
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit)
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "rambo" / "config.toml"


class RamboSettings(BaseSettings):
    """Settings loaded from init kwargs, RAMBO_* variables and the TOML file."""

    rss_threshold_mb: int = Field(default=50, ge=0)
    enable_terminate: bool = False
    require_confirmation: bool = True
    throttle_interval_seconds: float = Field(default=300.0, ge=0)
    # NOTE: NoDecode keeps env values as plain strings; the validator splits commas.
    allow_list: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["kernel_task", "launchd", "WindowServer"]
    )
    deny_list: Annotated[list[str], NoDecode] = Field(default_factory=list)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    active_cpu_percent: float = Field(default=5.0, ge=0)
    safe_rss_multiplier: float = Field(default=4.0, ge=1.0)
    log_backend: Literal["jsonl", "sqlite"] = "jsonl"
    log_retention_days: int = Field(default=30, ge=0)
    log_dir: str = ""
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="RAMBO_", extra="ignore")

    @field_validator("allow_list", "deny_list", mode="before")
    @classmethod
    def _split_names(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_path = settings_cls.model_config.get("toml_file") or default_config_path()
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_path),
        )

    def to_policy(self) -> PolicyConfig:
        """Freeze into the immutable policy the engine uses."""
        return PolicyConfig(
            rss_threshold_mb=self.rss_threshold_mb,
            enable_terminate=self.enable_terminate,
            require_confirmation=self.require_confirmation,
            throttle_interval_seconds=self.throttle_interval_seconds,
            allow_list=frozenset(self.allow_list),
            deny_list=frozenset(self.deny_list),
            poll_interval_seconds=self.poll_interval_seconds,
            active_cpu_percent=self.active_cpu_percent,
            safe_rss_multiplier=self.safe_rss_multiplier,
            log_backend=self.log_backend,
            log_retention_days=self.log_retention_days,
            log_dir=self.log_dir,
        )


def _settings_class(config_file: Path | str | None) -> type[RamboSettings]:
    if config_file is None:
        return RamboSettings

    class FileSettings(RamboSettings):
        model_config = SettingsConfigDict(toml_file=Path(config_file))

    return FileSettings


def load_settings(config_file: Path | str | None = None, **overrides: Any) -> RamboSettings:
    """
    Resolve settings.

    Args:
        config_file: TOML file to read; defaults to default_config_path().
        **overrides: Command-line values. None values are ignored so unset
            flags fall through to lower-precedence sources.

    Raises:
        ConfigurationError: a source held an invalid value.
    """
    explicit = {key: value for key, value in overrides.items() if value is not None}
    try:
        return _settings_class(config_file)(**explicit)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}", cause=e) from e
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read configuration: {e}", cause=e) from e


def load_policy(config_file: Path | str | None = None, **overrides: Any) -> PolicyConfig:
    """Resolved, frozen policy."""
    return load_settings(config_file, **overrides).to_policy()
