"""Queue consumers: the shared claim/report loop and the detail worker."""

from __future__ import annotations

import os
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

from ..config import WorkerConfig
from ..errors import ListingNotFoundError, StoreUnavailableError
from ..infra.storage import AuditLog
from ..logging_conf import portal_logger
from .collaborators import BaseFetcher, BaseSink, BaseTransformer, IngestPayload, PassthroughTransformer
from .models import ProcessingOutcome
from .queue import QueueEngine


@dataclass(slots=True)
class ConsumerStats:
    """Per-instance accumulators; never shared between consumers."""

    consumer_id: str
    kind: str
    processed: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    requeued: int = 0
    skipped: int = 0
    restored: int = 0
    inactive: int = 0
    errors: int = 0
    running: bool = False

    @property
    def change_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.changed / self.processed

    def as_dict(self) -> dict[str, object]:
        return {
            "consumer_id": self.consumer_id,
            "kind": self.kind,
            "processed": self.processed,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "requeued": self.requeued,
            "skipped": self.skipped,
            "restored": self.restored,
            "inactive": self.inactive,
            "errors": self.errors,
            "change_rate": round(self.change_rate, 4),
            "running": self.running,
        }


class QueueConsumer(ABC):
    """Claim one id at a time, resolve it into a state transition, repeat.

    The loop exits after ``max_empty_checks`` consecutive empty polls or once
    :meth:`stop` is called. A stop request is observed between items, so an
    id that was already claimed always finishes its current step.
    """

    kind = "consumer"

    def __init__(
        self,
        engine: QueueEngine,
        fetcher: BaseFetcher,
        sink: BaseSink,
        settings: WorkerConfig,
        *,
        country: str = "",
        consumer_id: str | None = None,
        audit: AuditLog | None = None,
        logger: structlog.BoundLogger | None = None,
        rng: random.Random | None = None,
        close_engine_on_exit: bool = True,
    ) -> None:
        self.engine = engine
        self.fetcher = fetcher
        self.sink = sink
        self.settings = settings
        self.country = country
        self.consumer_id = consumer_id or f"{self.kind}-{os.getpid()}"
        self.audit = audit
        self.rng = rng or random.Random()
        self.close_engine_on_exit = close_engine_on_exit
        self.logger = (logger or portal_logger(engine.portal)).bind(
            component=self.kind, consumer_id=self.consumer_id
        )
        self._stats = ConsumerStats(consumer_id=self.consumer_id, kind=self.kind)
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    @abstractmethod
    def _claim(self, timeout_seconds: float) -> str | None:
        """Pop the next id from this consumer's queue partition."""

    @abstractmethod
    def _requeue(self, listing_id: str) -> bool:
        """Spend one retry on ``listing_id``; False once the budget is exhausted."""

    @abstractmethod
    def process(self, listing_id: str) -> ProcessingOutcome:
        """Handle one claimed id and report its outcome to the engine."""

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._stats.running

    def stats(self) -> ConsumerStats:
        return self._stats

    def stop(self) -> None:
        """Request a graceful stop; the engine is released when the loop exits."""

        self.logger.info("consumer_stopping")
        self._stop_event.set()
        if not self._stats.running and self.close_engine_on_exit:
            self.engine.close()

    def run(self) -> ConsumerStats:
        settings = self.settings
        self._stats.running = True
        self.logger.info("consumer_started")
        empty_checks = 0
        consecutive_errors = 0
        try:
            while not self._stop_event.is_set():
                try:
                    listing_id = self._claim(settings.poll_timeout_seconds)
                    if listing_id is None:
                        consecutive_errors = 0
                        empty_checks += 1
                        if empty_checks >= settings.max_empty_checks:
                            self.logger.info("queue_exhausted", empty_checks=empty_checks)
                            break
                        self.logger.info(
                            "queue_empty",
                            empty_checks=empty_checks,
                            max_empty_checks=settings.max_empty_checks,
                            **self.engine.stats().as_dict(),
                        )
                        continue
                    empty_checks = 0
                    self.process(listing_id)
                    # reset only once an id was fully handled
                    consecutive_errors = 0
                    self._sleep(settings.delay_range)
                except Exception as exc:  # noqa: BLE001
                    consecutive_errors += 1
                    self._stats.errors += 1
                    self.logger.exception(
                        "consumer_iteration_failed",
                        error=str(exc),
                        consecutive_errors=consecutive_errors,
                    )
                    if consecutive_errors >= settings.max_consecutive_errors:
                        raise
                    self._sleep(settings.error_backoff_range)
        finally:
            self._stats.running = False
            self.logger.info("consumer_finished", **self._stats.as_dict())
            if self.close_engine_on_exit:
                self.engine.close()
        return self._stats

    # ------------------------------------------------------------------
    def _retry(self, listing_id: str, exc: Exception) -> ProcessingOutcome:
        self.logger.error(
            "listing_processing_failed",
            listing_id=listing_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if self._requeue(listing_id):
            self._stats.requeued += 1
            self._audit(listing_id, ProcessingOutcome.REQUEUED, detail=str(exc))
            return ProcessingOutcome.REQUEUED
        self._stats.failed += 1
        self.logger.error("listing_permanently_failed", listing_id=listing_id)
        self._audit(listing_id, ProcessingOutcome.FAILED, detail=str(exc))
        return ProcessingOutcome.FAILED

    def _audit(
        self,
        listing_id: str,
        outcome: ProcessingOutcome,
        digest: str | None = None,
        detail: str | None = None,
    ) -> None:
        if self.audit is not None:
            self.audit.record(self.engine.portal, listing_id, outcome.value, digest=digest, detail=detail)

    def _sleep(self, delay_range: tuple[float, float]) -> None:
        low, high = delay_range
        delay = self.rng.uniform(low, high)
        if delay > 0:
            self._stop_event.wait(delay)


class Worker(QueueConsumer):
    """Fetch detail, detect changes and forward changed records downstream."""

    kind = "worker"

    def __init__(
        self,
        engine: QueueEngine,
        fetcher: BaseFetcher,
        sink: BaseSink,
        settings: WorkerConfig,
        *,
        transformer: BaseTransformer | None = None,
        **kwargs,
    ) -> None:
        super().__init__(engine, fetcher, sink, settings, **kwargs)
        self.transformer = transformer or PassthroughTransformer()

    def _claim(self, timeout_seconds: float) -> str | None:
        return self.engine.claim(timeout_seconds)

    def _requeue(self, listing_id: str) -> bool:
        return self.engine.requeue_with_retry(listing_id, self.settings.max_retries)

    def process(self, listing_id: str) -> ProcessingOutcome:
        if self.engine.is_processed(listing_id):
            self.logger.debug("listing_already_processed", listing_id=listing_id)
            self._stats.skipped += 1
            return ProcessingOutcome.SKIPPED

        try:
            metadata = self.engine.get_metadata(listing_id)
            try:
                payload = self.fetcher.fetch_detail(listing_id, metadata)
            except ListingNotFoundError:
                self.logger.warning("listing_not_found", listing_id=listing_id)
                self.engine.mark_failed(listing_id, "not_found")
                self._stats.failed += 1
                self._audit(listing_id, ProcessingOutcome.NOT_FOUND)
                return ProcessingOutcome.NOT_FOUND

            detection = self.engine.detect_change(listing_id, payload)
            if detection.changed:
                record = self.transformer.canonicalize(payload)
                self.sink.ingest(
                    IngestPayload(
                        portal=self.engine.portal,
                        portal_id=listing_id,
                        country=self.country,
                        data=record,
                        raw_data=payload,
                        status="active",
                        last_seen=time.time(),
                        metadata=metadata,
                    )
                )
                # snapshot moves only once the sink accepted the record
                self.engine.commit_snapshot(listing_id, detection.digest, payload)
                outcome = ProcessingOutcome.CHANGED
                self._stats.changed += 1
                self.logger.info("listing_changed", listing_id=listing_id)
            else:
                outcome = ProcessingOutcome.UNCHANGED
                self._stats.unchanged += 1
                self.logger.debug("listing_unchanged", listing_id=listing_id)
            self.engine.mark_processed(listing_id)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            return self._retry(listing_id, exc)

        self._stats.processed += 1
        self._audit(listing_id, outcome, digest=detection.digest)
        if self._stats.processed % self.settings.log_every == 0:
            self.logger.info("worker_progress", **self._stats.as_dict())
        return outcome


__all__ = ["ConsumerStats", "QueueConsumer", "Worker"]
