"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    BoundingBox,
    CollaboratorsConfig,
    DiscoveryConfig,
    GlobalConfig,
    GridConfig,
    Location,
    PortalConfig,
    ScheduleConfig,
    ScheduleType,
    SinkConfig,
    StalenessConfig,
    WorkerConfig,
)

__all__ = [
    "BoundingBox",
    "CollaboratorsConfig",
    "ConfigLocator",
    "ConfigRepository",
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
