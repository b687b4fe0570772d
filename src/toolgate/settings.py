"""Governance settings: configuration for every pipeline component.

Section settings are plain pydantic models. ``GovernanceSettings`` is a
pydantic-settings ``BaseSettings``, so it can be built from a dict, loaded
from a JSON file, or read from ``TOOLGATE_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "TOOLGATE_"


class ServiceCircuitSettings(BaseModel):
    """Per-service circuit breaker overrides. Unset values use the defaults."""

    threshold: int | None = Field(default=None, ge=1)
    reset_timeout: int | None = Field(default=None, ge=0)
    failure_window: int | None = Field(default=None, ge=1)


class CircuitBreakerSettings(BaseModel):
    default_threshold: int = Field(default=5, ge=1)
    default_reset_timeout: int = Field(default=60, ge=0)
    default_failure_window: int = Field(default=120, ge=1)
    trial_lock_ttl: int = Field(default=30, ge=1)
    counter_ttl: int = Field(default=300, ge=1)
    state_ttl: int = Field(default=86400, ge=1)
    services: dict[str, ServiceCircuitSettings] = Field(default_factory=dict)

    def threshold_for(self, service: str) -> int:
        override = self.services.get(service)
        if override and override.threshold is not None:
            return override.threshold
        return self.default_threshold

    def reset_timeout_for(self, service: str) -> int:
        override = self.services.get(service)
        if override and override.reset_timeout is not None:
            return override.reset_timeout
        return self.default_reset_timeout

    def failure_window_for(self, service: str) -> int:
        override = self.services.get(service)
        if override and override.failure_window is not None:
            return override.failure_window
        return self.default_failure_window


class RateLimitSettings(BaseModel):
    calls_per_minute: int = Field(default=60, ge=1)
    window_seconds: int = Field(default=60, ge=1)
    tools: dict[str, int] = Field(default_factory=dict)

    def limit_for(self, tool_name: str) -> int:
        return self.tools.get(tool_name, self.calls_per_minute)


class AuditSettings(BaseModel):
    chunk_size: int = Field(default=1000, ge=1)
    sensitive_tools_cache_ttl: int = Field(default=300, ge=1)
    # Whether pre-execution rejections are written to the chain as failed calls.
    audit_rejections: bool = False


class DependencySettings(BaseModel):
    session_history_ttl: int = Field(default=86400, ge=1)
    # An unregistered CUSTOM validator passes when True (logged at WARNING).
    fail_open_custom: bool = True
    register_defaults: bool = True
    # Host database holding agent_plans, agent_sessions and agent_phases.
    # None leaves ENTITY_EXISTS checks unknown (they pass with a WARNING).
    entities_url: str | None = None


class DatabaseSettings(BaseModel):
    url: str = "toolgate.db"
    # Connection for query_database, opened read-only. None shares ``url``.
    query_url: str | None = None
    use_whitelist: bool = True
    whitelist_patterns: list[str] = Field(default_factory=list)
    blocked_tables: list[str] = Field(default_factory=list)
    max_rows: int = Field(default=1000, ge=1)


class StoreSettings(BaseModel):
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    lock_ttl: int = Field(default=5, ge=1)
    lock_wait: float = Field(default=3.0, gt=0)


class WebhookSettings(BaseModel):
    url: str | None = None
    secret: str | None = None
    timeout: float = Field(default=5.0, gt=0)


class GovernanceSettings(BaseSettings):
    """Top-level configuration for the governance pipeline.

    Constructing it reads ``TOOLGATE_<SECTION>__<FIELD>`` environment
    variables, e.g. ``TOOLGATE_RATE_LIMIT__CALLS_PER_MINUTE=30``. List and
    dict fields take JSON values. ``TOOLGATE_SETTINGS_FILE`` names a JSON
    file applied underneath the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )

    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    dependencies: DependencySettings = Field(default_factory=DependencySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        settings_file = os.environ.get(f"{ENV_PREFIX}SETTINGS_FILE")
        return (
            init_settings,
            env_settings,
            JsonConfigSettingsSource(settings_cls, json_file=settings_file),
        )

    @classmethod
    def load(cls, path: str | Path) -> GovernanceSettings:
        """Load settings from a JSON file only. Returns defaults if the file doesn't exist."""
        settings_path = Path(path)
        if not settings_path.exists():
            logger.info("Settings file %s not found, using defaults", settings_path)
            return cls.model_validate({})
        return cls.model_validate_json(settings_path.read_text())

    def save(self, path: str | Path) -> None:
        Path(path).write_text(self.model_dump_json(indent=2))

    @classmethod
    def from_env(cls) -> GovernanceSettings:
        """Settings from the environment (and ``TOOLGATE_SETTINGS_FILE``) over defaults."""
        return cls()
