"""Configuration loader — reads config.yaml, overlays environment, validates with Pydantic.

Built once at startup and passed explicitly to whatever needs it. Secrets
usually come from the environment (or a ``.env`` file) via pydantic-settings;
everything else can live in the YAML file.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.errors import configuration_error
from relay.resilience import Backoff, ConstantBackoff, ExponentialBackoff, NoBackoff

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


class EnvSettings(BaseSettings):
    """Settings read from the environment. Set values win over config.yaml."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    openrouter_base_url: str | None = Field(default=None, validation_alias="OPENROUTER_BASE_URL")
    site_url: str | None = Field(default=None, validation_alias="SITE_URL")
    scopestack_api_token: str | None = Field(default=None, validation_alias="SCOPESTACK_API_TOKEN")
    scopestack_api_url: str | None = Field(default=None, validation_alias="SCOPESTACK_API_URL")
    scopestack_account_slug: str | None = Field(default=None, validation_alias="SCOPESTACK_ACCOUNT_SLUG")
    relay_api_key: str | None = Field(default=None, validation_alias="RELAY_API_KEY")
    relay_log_level: str | None = Field(default=None, validation_alias="RELAY_LOG_LEVEL")

    @classmethod
    def from_mapping(cls, environ: Mapping[str, str]) -> EnvSettings:
        """Read from ``environ`` only; the process environment and .env are ignored."""
        names = {field.validation_alias for field in cls.model_fields.values()}
        return _MappingEnvSettings(**{k: v for k, v in environ.items() if k in names and v})

    def overrides(self) -> dict[str, Any]:
        """Set values shaped like config.yaml, ready to merge over it."""
        sections = {
            "openrouter": {
                "api_key": self.openrouter_api_key,
                "base_url": self.openrouter_base_url,
                "site_url": self.site_url,
            },
            "scopestack": {
                "api_token": self.scopestack_api_token,
                "api_url": self.scopestack_api_url,
                "account_slug": self.scopestack_account_slug,
            },
        }
        out: dict[str, Any] = {}
        for section, values in sections.items():
            present = {k: v for k, v in values.items() if v is not None}
            if present:
                out[section] = present
        if self.relay_api_key is not None:
            out["api_key"] = self.relay_api_key
        if self.relay_log_level is not None:
            out["log_level"] = self.relay_log_level
        return out


class _MappingEnvSettings(EnvSettings):
    """``EnvSettings`` fed from init kwargs alone."""

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        return (init_settings,)


class RetryPolicy(BaseModel):
    """Attempt ceiling and backoff between attempts."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff: Literal["exponential", "constant", "none"] = "exponential"
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def build_backoff(self) -> Backoff:
        match self.backoff:
            case "exponential":
                return ExponentialBackoff(
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    multiplier=self.multiplier,
                    jitter=self.jitter,
                )
            case "constant":
                return ConstantBackoff(delay=self.base_delay)
            case "none":
                return NoBackoff()
            case _:
                raise ValueError(f"Unknown backoff: {self.backoff}")


class OpenRouterConfig(BaseModel):
    """Chat-completion upstream."""

    api_key: str | None = None
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-3.5-sonnet"
    site_url: str = "http://localhost:3000"
    app_title: str = "ScopeStack Content Engine"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.7, ge=0, le=2)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def require_api_key(self) -> str:
        if not self.api_key:
            raise configuration_error("OPENROUTER_API_KEY")
        return self.api_key


class ScopeStackConfig(BaseModel):
    """PSA upstream."""

    api_token: str | None = None
    api_url: str = "https://api.scopestack.io"
    account_slug: str | None = None
    app_url: str | None = "https://app.scopestack.io"  # links to pushed projects
    timeout_seconds: float = Field(default=15.0, gt=0)

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def require_api_token(self) -> str:
        if not self.api_token:
            raise configuration_error("SCOPESTACK_API_TOKEN")
        return self.api_token


class ScheduleConfig(BaseModel):
    """Cron-style schedule for probes."""

    frequency: Literal["daily", "weekly", "monthly"]
    hour: int = Field(ge=0, le=23)
    day_of_week: str | None = None  # required for weekly (e.g. "mon", "0")
    day_of_month: int | None = None  # required for monthly (1-31)

    @model_validator(mode="after")
    def validate_schedule_fields(self) -> ScheduleConfig:
        if self.frequency == "weekly" and self.day_of_week is None:
            raise ValueError("day_of_week is required for weekly schedules")
        if self.frequency == "monthly" and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly schedules")
        return self


class ProbeConfig(BaseModel):
    """A scheduled reachability check against one upstream."""

    target: Literal["scopestack_auth", "openrouter"]
    schedule: ScheduleConfig


class RelayConfig(BaseModel):
    """Top-level service configuration."""

    openrouter: OpenRouterConfig = Field(default_factory=OpenRouterConfig)
    scopestack: ScopeStackConfig = Field(default_factory=ScopeStackConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    probes: list[ProbeConfig] = []

    # Auth & CORS
    api_key: str | None = None
    allowed_origins: list[str] = ["*"]

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level '{v}'")
        return level

    def settings_presence(self) -> dict[str, bool]:
        """Which settings are set, without exposing their values."""
        return {
            "OPENROUTER_API_KEY": bool(self.openrouter.api_key),
            "SCOPESTACK_API_TOKEN": bool(self.scopestack.api_token),
            "SCOPESTACK_API_URL": bool(self.scopestack.api_url),
            "SCOPESTACK_ACCOUNT_SLUG": bool(self.scopestack.account_slug),
            "RELAY_API_KEY": bool(self.api_key),
        }




def apply_env_overrides(raw: dict[str, Any], env: EnvSettings) -> dict[str, Any]:
    """Return a copy of ``raw`` with the set environment values merged in.

    An empty YAML section (``openrouter:`` with nothing under it) counts as
    absent.
    """
    merged = {k: v for k, v in raw.items() if v is not None}
    for key, value in env.overrides().items():
        if isinstance(value, dict):
            section = merged.get(key, {})
            if not isinstance(section, dict):
                raise ValueError(f"Config section '{key}' must be a mapping, got {type(section).__name__}")
            merged[key] = {**section, **value}
        else:
            merged[key] = value
    return merged


def load_config(
    path: str | Path = DEFAULT_CONFIG_PATH,
    environ: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Read ``path`` if it exists, overlay the environment, and validate.

    With ``environ`` given, only that mapping is consulted; otherwise the
    process environment and ``.env`` are read through pydantic-settings.
    A missing file is not an error; the environment alone can configure
    the service.
    """
    config_file = Path(path)
    raw: dict[str, Any] = {}
    if config_file.exists():
        raw = yaml.safe_load(config_file.read_text()) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")
    else:
        logger.info(f"No config file at {config_file.resolve()}, using defaults and environment")

    env = EnvSettings() if environ is None else EnvSettings.from_mapping(environ)
    config = RelayConfig(**apply_env_overrides(raw, env))
    logger.info(
        f"Loaded config: retry={config.retry.max_attempts}x{config.retry.backoff}, "
        f"probes={len(config.probes)}, auth={'enabled' if config.api_key else 'disabled'}"
    )
    return config
