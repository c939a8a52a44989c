"""Pydantic models used across the listing-tracker configuration flow."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def _coerce_range(value: Any, *, name: str) -> tuple[float, float]:
    if value in (None, ""):
        return (0.0, 0.0)
    if isinstance(value, (list, tuple)) and len(value) == 2:
        low, high = float(value[0]), float(value[1])
        if low < 0 or high < 0:
            raise ValueError(f"{name} values must be non-negative")
        if high < low:
            raise ValueError(f"{name} upper bound must be >= lower bound")
        return (low, high)
    raise ValueError(f"{name} expects a two-item list or tuple")


class ScheduleType(str, Enum):
    """Scheduler modes for discovery and sweep jobs."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleConfig(BaseModel):
    """Configuration describing when a scheduled job should run."""

    type: ScheduleType = Field(default=ScheduleType.ONCE)
    value: Any = Field(
        default=None,
        description="Cron expression, interval seconds or ISO datetime, depending on type.",
    )

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL and not isinstance(self.value, (int, float, dict)):
            raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
        if (
            self.type is ScheduleType.ONCE
            and self.value is not None
            and not isinstance(self.value, str)
        ):
            raise ValueError("Once schedule expects ISO datetime string or null")
        return self


class BoundingBox(BaseModel):
    """Geographic viewport in decimal degrees."""

    north: float
    south: float
    east: float
    west: float

    @model_validator(mode="after")
    def _validate_edges(self) -> "BoundingBox":
        if self.north <= self.south:
            raise ValueError("north must be greater than south")
        if self.east <= self.west:
            raise ValueError("east must be greater than west")
        return self


class Location(BaseModel):
    """A discovery target: an enumerated city or a generated grid cell."""

    name: str
    lat: float | None = None
    lng: float | None = None
    viewport: BoundingBox | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("location name cannot be empty")
        return value.strip()


class GridConfig(BaseModel):
    """Grid tiling used by geo-bounded discovery feeds."""

    cell_size_degrees: float = 0.5
    bounding_box: BoundingBox

    @field_validator("cell_size_degrees")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("cell_size_degrees must be > 0")
        return value


class DiscoveryConfig(BaseModel):
    """Coordinator paging, pacing and location settings."""

    strategy: Literal["locations", "grid"] = "locations"
    page_size: int = 100
    max_pages: int = 50
    page_delay_range: tuple[float, float] = (1.0, 2.0)
    location_delay_range: tuple[float, float] = (1.0, 2.0)
    progress_every: int = 10
    locations: list[Location] = Field(default_factory=list)
    grid: GridConfig | None = None
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @field_validator("page_delay_range", "location_delay_range", mode="before")
    @classmethod
    def _coerce_delay(cls, value: Any) -> tuple[float, float]:
        return _coerce_range(value, name="Delay range")

    @model_validator(mode="after")
    def _validate_strategy(self) -> "DiscoveryConfig":
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.progress_every < 1:
            raise ValueError("progress_every must be >= 1")
        if self.strategy == "grid" and self.grid is None:
            raise ValueError("grid strategy requires a grid section")
        return self


class WorkerConfig(BaseModel):
    """Timing and retry policy shared by workers and verifiers."""

    concurrency: int = 1
    poll_timeout_seconds: float = 5.0
    max_empty_checks: int = 10
    delay_range: tuple[float, float] = (1.2, 3.2)
    error_backoff_range: tuple[float, float] = (5.0, 10.0)
    max_retries: int = 3
    max_consecutive_errors: int = 20
    log_every: int = 10

    @field_validator("delay_range", "error_backoff_range", mode="before")
    @classmethod
    def _coerce_delay(cls, value: Any) -> tuple[float, float]:
        return _coerce_range(value, name="Delay range")

    @model_validator(mode="after")
    def _validate_limits(self) -> "WorkerConfig":
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.poll_timeout_seconds <= 0:
            raise ValueError("poll_timeout_seconds must be > 0")
        if self.max_empty_checks < 1:
            raise ValueError("max_empty_checks must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be >= 1")
        if self.log_every < 1:
            raise ValueError("log_every must be >= 1")
        return self


class StalenessConfig(BaseModel):
    """Staleness sweep threshold and its independent schedule."""

    threshold_hours: float = 12.0
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @field_validator("threshold_hours")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("threshold_hours must be > 0")
        return value


class SinkConfig(BaseModel):
    """Downstream ingestion target."""

    type: Literal["file", "http", "sqlite"] = "file"
    api_url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 10.0
    path: Path | None = None

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path | None:
        if value in (None, ""):
            return None
        return Path(value)

    @model_validator(mode="after")
    def _validate_target(self) -> "SinkConfig":
        if self.type == "http" and not self.api_url:
            raise ValueError("http sink requires api_url")
        return self


class CollaboratorsConfig(BaseModel):
    """Import paths (``module:attribute``) of the portal-specific glue."""

    discoverer: str | None = None
    fetcher: str | None = None
    transformer: str = "listing_tracker.engine.collaborators:PassthroughTransformer"
    options: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Constructor keyword arguments keyed by role (discoverer, fetcher, transformer).",
    )

    def options_for(self, role: str) -> dict[str, Any]:
        return dict(self.options.get(role, {}))

    @field_validator("discoverer", "fetcher", "transformer")
    @classmethod
    def _validate_path(cls, value: str | None) -> str | None:
        if value is not None and ":" not in value:
            raise ValueError(f"Collaborator path must look like 'package.module:attr': {value}")
        return value


class PortalConfig(BaseModel):
    """Full definition of one portal namespace."""

    portal: str
    country: str = ""
    key_prefix: str = "listings"
    store_payloads: bool = False
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    staleness: StalenessConfig = Field(default_factory=StalenessConfig)
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)

    @field_validator("portal")
    @classmethod
    def _validate_portal(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("portal cannot be empty")
        if ":" in cleaned or " " in cleaned:
            raise ValueError("portal must not contain spaces or ':'")
        return cleaned


class GlobalConfig(BaseModel):
    """Global controls shared across portals."""

    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 30.0
    audit_enabled: bool = True
    audit_db_path: Path = Field(default=Path("data/audit/history.db"))
    outputs_dir: Path = Field(default=Path("data/outputs"))
    portals_dir: Path = Field(default=Path("data/portals"))

    @field_validator("audit_db_path", "outputs_dir", "portals_dir", mode="before")
    @classmethod
    def _coerce_dirs(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("redis_url")
    @classmethod
    def _validate_redis_url(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must use redis://, rediss:// or unix://")
        return value

    def resolve(self, path: Path, base_dir: Path) -> Path:
        """Return ``path`` relative to the project root when not absolute."""

        if not path.is_absolute():
            return (base_dir / path).resolve()
        return path


__all__ = [
    "BoundingBox",
    "CollaboratorsConfig",
    "DiscoveryConfig",
    "GlobalConfig",
    "GridConfig",
    "Location",
    "PortalConfig",
    "ScheduleConfig",
    "ScheduleType",
    "SinkConfig",
    "StalenessConfig",
    "WorkerConfig",
]
