"""Verifier resolving staleness-flagged ids to restored or inactive."""

from __future__ import annotations

import time

from ..errors import ListingNotFoundError, StoreUnavailableError
from .collaborators import IngestPayload
from .consumer import QueueConsumer
from .models import ProcessingOutcome


class Verifier(QueueConsumer):
    """Drain the missing partition; presence is the only question asked."""

    kind = "verifier"

    def _claim(self, timeout_seconds: float) -> str | None:
        return self.engine.claim_missing(timeout_seconds)

    def _requeue(self, listing_id: str) -> bool:
        return self.engine.requeue_missing_with_retry(listing_id, self.settings.max_retries)

    def process(self, listing_id: str) -> ProcessingOutcome:
        try:
            metadata = self.engine.get_metadata(listing_id)
            try:
                self.fetcher.fetch_detail(listing_id, metadata)
                found = True
            except ListingNotFoundError:
                found = False

            if found:
                self.engine.restore(listing_id)
                self._stats.restored += 1
                self.logger.info("listing_restored", listing_id=listing_id)
                outcome = ProcessingOutcome.RESTORED
            else:
                self.sink.ingest(
                    IngestPayload(
                        portal=self.engine.portal,
                        portal_id=listing_id,
                        country=self.country,
                        data=None,
                        status="inactive",
                        inactive_reason="not_found",
                        last_seen=time.time(),
                        metadata=metadata,
                    )
                )
                self.engine.mark_inactive(listing_id)
                self._stats.inactive += 1
                self.logger.info("listing_inactive", listing_id=listing_id)
                outcome = ProcessingOutcome.INACTIVE
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            return self._retry(listing_id, exc)

        self._stats.processed += 1
        self._audit(listing_id, outcome)
        return outcome


__all__ = ["Verifier"]
