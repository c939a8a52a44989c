"""Data model shared by the queue engine and its consumers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ListingState(str, Enum):
    """Lifecycle states of a listing identifier within one portal."""

    DISCOVERED = "discovered"
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    MISSING = "missing"
    INACTIVE = "inactive"


class ProcessingOutcome(str, Enum):
    """Result of handling one claimed identifier."""

    SKIPPED = "skipped"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    REQUEUED = "requeued"
    FAILED = "failed"
    RESTORED = "restored"
    INACTIVE = "inactive"


@dataclass(slots=True)
class AdmitResult:
    admitted: bool


@dataclass(slots=True)
class ChangeDetection:
    changed: bool
    digest: str
    previous_digest: str | None = None


@dataclass(slots=True)
class ListingRecord:
    """Read model assembled from the queue store for a single id."""

    id: str
    portal: str
    state: ListingState
    retry_count: int = 0
    last_seen_at: datetime | None = None
    snapshot_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    processed_cycle: int | None = None


@dataclass(slots=True)
class QueueStats:
    queued: int = 0
    processing: int = 0
    processed: int = 0
    failed: int = 0
    missing: int = 0
    inactive: int = 0
    total_discovered: int = 0
    cycle: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "processing": self.processing,
            "processed": self.processed,
            "failed": self.failed,
            "missing": self.missing,
            "inactive": self.inactive,
            "total_discovered": self.total_discovered,
            "cycle": self.cycle,
        }


__all__ = [
    "AdmitResult",
    "ChangeDetection",
    "ListingRecord",
    "ListingState",
    "ProcessingOutcome",
    "QueueStats",
]
