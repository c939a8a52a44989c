"""Engine components: queue store, consumers and downstream sinks."""

from .collaborators import (
    BaseDiscoverer,
    BaseFetcher,
    BaseSink,
    BaseTransformer,
    DiscoveryPage,
    IngestPayload,
    PassthroughTransformer,
)
from .consumer import ConsumerStats, QueueConsumer, Worker
from .models import AdmitResult, ChangeDetection, ListingRecord, ListingState, ProcessingOutcome, QueueStats
from .pool import WorkerPool
from .queue import QueueEngine
from .snapshot import canonical_json, payload_digest
from .verifier import Verifier

__all__ = [
    "AdmitResult",
    "BaseDiscoverer",
    "BaseFetcher",
    "BaseSink",
    "BaseTransformer",
    "ChangeDetection",
    "ConsumerStats",
    "DiscoveryPage",
    "IngestPayload",
    "ListingRecord",
    "ListingState",
    "PassthroughTransformer",
    "ProcessingOutcome",
    "QueueConsumer",
    "QueueEngine",
    "QueueStats",
    "Verifier",
    "Worker",
    "WorkerPool",
    "canonical_json",
    "payload_digest",
]
