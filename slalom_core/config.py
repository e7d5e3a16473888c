"""
Configuration models using Pydantic v2
Bounds are enforced at construction time; unknown keys are rejected
"""

import logging
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

RECORDING_SOURCES = ("tcp", "ws", "udp27333", "udp10600")


class ReconnectConfig(BaseModel):
    """Reconnect/backoff policy of a live transport"""

    auto_reconnect: bool = True
    initial_delay: float = Field(1.0, gt=0, le=300, description="Backoff floor, seconds")
    max_delay: float = Field(30.0, gt=0, le=3600, description="Backoff ceiling, seconds")
    backoff_factor: float = Field(2.0, ge=1.0, le=10.0)
    connect_timeout: float = Field(10.0, gt=0, le=300)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_delay_bounds(self):
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class EngineConfig(BaseModel):
    """Timing windows of the reconciliation engine"""

    highlight_duration: float = Field(3.0, gt=0, le=600, description="Seconds")
    departing_timeout: float = Field(3.0, gt=0, le=600, description="Seconds")
    max_provider_errors: int = Field(10, ge=1, le=1000)
    best_run_refresh: float = Field(1.0, gt=0, le=300, description="Debounce of the BR2 first-run re-fetch, seconds")

    model_config = ConfigDict(extra="forbid")


class ReplayConfig(BaseModel):
    """Playback options of the replay provider"""

    speed: float = Field(1.0, ge=0, le=1000, description="0 = dispatch everything instantly")
    sources: List[str] = Field(default_factory=lambda: ["ws"])
    auto_play: bool = True
    loop: bool = False
    pause_after: Optional[int] = Field(None, ge=1)
    strict: bool = Field(False, description="Fail to load on the first invalid line instead of reporting it")

    model_config = ConfigDict(extra="forbid")

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v):
        unknown = [s for s in v if s not in RECORDING_SOURCES]
        if unknown:
            raise ValueError(f"unknown recording sources: {', '.join(unknown)}")
        if not v:
            raise ValueError("at least one recording source is required")
        return v


class ApiConfig(BaseModel):
    """REST client options"""

    timeout: float = Field(5.0, gt=0, le=120, description="Request timeout, seconds")

    model_config = ConfigDict(extra="forbid")


class SlalomConfig(BaseModel):
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    replay: ReplayConfig = Field(default_factory=ReplayConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = ConfigDict(extra="forbid")


def load_config(data: Optional[Mapping[str, Any]] = None) -> SlalomConfig:
    """
    Build the aggregate config from a plain mapping (e.g. a parsed settings file).

    Missing sections use their defaults.

    Raises:
        pydantic.ValidationError: on unknown keys or out-of-range values
    """
    config = SlalomConfig(**dict(data or {}))
    logger.debug(f"Loaded config: {config.model_dump()}")
    return config


__all__ = [
    "RECORDING_SOURCES",
    "ReconnectConfig",
    "EngineConfig",
    "ReplayConfig",
    "ApiConfig",
    "SlalomConfig",
    "load_config",
]
