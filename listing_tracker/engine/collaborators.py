"""Service provider interfaces for the portal-specific glue.

A portal plugs into the pipeline by implementing a discoverer and a fetcher;
the transformer and sink default to pass-through and the configured sink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..config import Location


@dataclass(slots=True)
class DiscoveryPage:
    """One page of identifiers returned by a discovery feed."""

    ids: list[str] = field(default_factory=list)
    total: int = 0


class IngestPayload(BaseModel):
    """Envelope delivered to the downstream sink."""

    portal: str
    portal_id: str
    country: str = ""
    data: dict[str, Any] | None = None
    raw_data: dict[str, Any] | None = None
    status: Literal["active", "inactive"] = "active"
    inactive_reason: str | None = None
    last_seen: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BaseDiscoverer(ABC):
    """Enumerate candidate identifiers for a location."""

    @abstractmethod
    def discover(self, location: Location, page: int, page_size: int) -> DiscoveryPage:
        """Return page ``page`` (0-based) of identifiers for ``location``."""

    def close(self) -> None:
        return


class BaseFetcher(ABC):
    """Fetch full listing detail for an identifier.

    Implementations raise :class:`~listing_tracker.errors.ListingNotFoundError`
    for definitive absence and :class:`~listing_tracker.errors.TransientFetchError`
    (or any other exception) for failures worth retrying.
    """

    @abstractmethod
    def fetch_detail(self, listing_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return the raw detail payload for ``listing_id``."""

    def close(self) -> None:
        return


class BaseTransformer(ABC):
    """Map a raw portal payload to the canonical property schema."""

    @abstractmethod
    def canonicalize(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the canonical record for ``payload``."""


class PassthroughTransformer(BaseTransformer):
    """Forward the raw payload unchanged."""

    def canonicalize(self, payload: dict[str, Any]) -> dict[str, Any]:
        return dict(payload)


class BaseSink(ABC):
    """Uniform downstream contract; ingestion must be idempotent per record."""

    @abstractmethod
    def ingest(self, payload: IngestPayload) -> None:
        """Deliver a single record."""

    def flush(self) -> None:
        return

    def close(self) -> None:
        return


__all__ = [
    "BaseDiscoverer",
    "BaseFetcher",
    "BaseSink",
    "BaseTransformer",
    "DiscoveryPage",
    "IngestPayload",
    "PassthroughTransformer",
]
