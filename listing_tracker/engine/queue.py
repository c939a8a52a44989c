"""Redis-backed queue engine: admission, claiming, change detection and retries.

One :class:`QueueEngine` owns one portal namespace. All coordination between
coordinators, workers and verifiers goes through the atomic primitives of the
store; no application-level lock is taken.

Store preconditions:

* list pop (``RPOP``/``BRPOP``) is atomic, so an id pushed once is returned to
  exactly one consumer;
* ``HSETNX``/``SADD`` report whether the field/member was newly created, which
  makes them usable as dedup gates;
* ``WATCH``/``MULTI`` provide optimistic compare-and-set.

A backend without these guarantees needs an explicit per-id lease lock to keep
the single-claim invariant.

Key layout (prefix ``{key_prefix}:{portal}:``)::

    state          hash    id -> ListingState
    queue          list    work queue, LPUSH / BRPOP
    missing_queue  list    verification partition
    missing        set     dedup gate for the missing partition
    inflight       set     ids held by a consumer
    retries        hash    id -> retry count
    meta           hash    id -> JSON discovery metadata
    snapshots      hash    id -> payload digest
    payloads       hash    id -> canonical JSON payload (optional)
    last_seen      zset    id -> epoch seconds
    cycles         hash    id -> cycle in which it was processed
    failures       hash    id -> last failure reason
    cycle          string  current discovery cycle
"""

from __future__ import annotations

import json
import time
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator

import redis
import structlog

from ..errors import StoreUnavailableError
from ..logging_conf import portal_logger
from .models import (
    AdmitResult,
    ChangeDetection,
    ListingRecord,
    ListingState,
    QueueStats,
)
from .snapshot import canonical_json, payload_digest

_SCAN_CHUNK = 500
_STALE_ELIGIBLE = {ListingState.PROCESSED.value}


class QueueEngine:
    """Single source of truth for one portal's listing identifiers."""

    def __init__(
        self,
        client: redis.Redis,
        portal: str,
        *,
        key_prefix: str = "listings",
        store_payloads: bool = False,
        now: Callable[[], float] = time.time,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if not portal:
            raise ValueError("portal cannot be empty")
        self._client = client
        self.portal = portal
        self.key_prefix = key_prefix
        self.store_payloads = store_payloads
        self._now = now
        self.logger = (logger or portal_logger(portal)).bind(component="queue")
        self._closed = False

    @classmethod
    def from_url(
        cls,
        url: str,
        portal: str,
        *,
        socket_timeout: float | None = 30.0,
        **kwargs: Any,
    ) -> "QueueEngine":
        """Connect to the store at ``url`` and verify it answers."""

        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=5.0,
        )
        engine = cls(client, portal, **kwargs)
        with engine._store_errors():
            client.ping()
        return engine

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.close()

    def __enter__(self) -> "QueueEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def admit(self, listing_id: str, metadata: dict[str, Any] | None = None) -> AdmitResult:
        """Admit ``listing_id`` once per cycle; repeated calls only refresh last-seen."""

        listing_id = _require_id(listing_id)
        meta_json = json.dumps(metadata or {}, sort_keys=True, ensure_ascii=False)
        now = self._now()
        with self._store_errors():
            if self._client.hsetnx(self._key("state"), listing_id, ListingState.DISCOVERED.value):
                pipe = self._client.pipeline()
                pipe.hset(self._key("meta"), listing_id, meta_json)
                pipe.zadd(self._key("last_seen"), {listing_id: now})
                pipe.lpush(self._key("queue"), listing_id)
                pipe.execute()
                self.logger.debug("listing_admitted", listing_id=listing_id)
                return AdmitResult(admitted=True)
            return AdmitResult(admitted=self._readmit(listing_id, meta_json, now))

    def _readmit(self, listing_id: str, meta_json: str, now: float) -> bool:
        state_key = self._key("state")
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(state_key, self._key("cycle"), self._key("cycles"))
                    current = pipe.hget(state_key, listing_id)
                    cycle = int(pipe.get(self._key("cycle")) or 0)
                    processed_cycle = pipe.hget(self._key("cycles"), listing_id)
                    readmit = current == ListingState.INACTIVE.value or (
                        current == ListingState.PROCESSED.value
                        and processed_cycle is not None
                        and int(processed_cycle) < cycle
                    )
                    pipe.multi()
                    if readmit:
                        pipe.hset(state_key, listing_id, ListingState.DISCOVERED.value)
                        pipe.hset(self._key("meta"), listing_id, meta_json)
                        pipe.srem(self._key("missing"), listing_id)
                        pipe.lpush(self._key("queue"), listing_id)
                    pipe.zadd(self._key("last_seen"), {listing_id: now})
                    pipe.execute()
                except redis.WatchError:
                    continue
                if readmit:
                    self.logger.debug("listing_readmitted", listing_id=listing_id, previous=current)
                return readmit

    def begin_cycle(self) -> int:
        """Start a new discovery cycle; processed ids become admissible again."""

        with self._store_errors():
            cycle = int(self._client.incr(self._key("cycle")))
        self.logger.info("cycle_started", cycle=cycle)
        return cycle

    def current_cycle(self) -> int:
        with self._store_errors():
            return int(self._client.get(self._key("cycle")) or 0)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def claim(self, timeout_seconds: float) -> str | None:
        """Pop one id from the work queue and mark it as processing.

        A duplicate queue entry for an id already processed in the current
        cycle is handed out untouched, so :meth:`is_processed` still sees it.
        """

        with self._store_errors():
            listing_id = self._pop(self._key("queue"), timeout_seconds)
            if listing_id is None:
                return None
            if self._processed_in_current_cycle(listing_id):
                self.logger.debug("duplicate_entry_claimed", listing_id=listing_id)
                return listing_id
            pipe = self._client.pipeline()
            pipe.hset(self._key("state"), listing_id, ListingState.PROCESSING.value)
            pipe.sadd(self._key("inflight"), listing_id)
            pipe.execute()
        return listing_id

    def claim_missing(self, timeout_seconds: float) -> str | None:
        """Pop one id from the verification partition."""

        with self._store_errors():
            listing_id = self._pop(self._key("missing_queue"), timeout_seconds)
            if listing_id is None:
                return None
            self._client.sadd(self._key("inflight"), listing_id)
        return listing_id

    def _pop(self, key: str, timeout_seconds: float) -> str | None:
        # BRPOP with timeout 0 blocks forever
        if timeout_seconds <= 0:
            return self._client.rpop(key)
        result = self._client.brpop([key], timeout=timeout_seconds)
        if result is None:
            return None
        return result[1]

    def is_processed(self, listing_id: str) -> bool:
        """Return True when ``listing_id`` was already processed in the current cycle."""

        with self._store_errors():
            return self._processed_in_current_cycle(listing_id)

    def _processed_in_current_cycle(self, listing_id: str) -> bool:
        pipe = self._client.pipeline()
        pipe.hget(self._key("state"), listing_id)
        pipe.hget(self._key("cycles"), listing_id)
        pipe.get(self._key("cycle"))
        state, processed_cycle, cycle = pipe.execute()
        if state != ListingState.PROCESSED.value or processed_cycle is None:
            return False
        return int(processed_cycle) == int(cycle or 0)

    def get_metadata(self, listing_id: str) -> dict[str, Any]:
        with self._store_errors():
            raw = self._client.hget(self._key("meta"), listing_id)
        return json.loads(raw) if raw else {}

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------
    def detect_change(self, listing_id: str, payload: Any) -> ChangeDetection:
        """Compare the digest of ``payload`` with the stored snapshot without writing."""

        digest = payload_digest(payload)
        with self._store_errors():
            previous = self._client.hget(self._key("snapshots"), listing_id)
        return ChangeDetection(changed=previous != digest, digest=digest, previous_digest=previous)

    def commit_snapshot(self, listing_id: str, digest: str, payload: Any = None) -> None:
        with self._store_errors():
            pipe = self._client.pipeline()
            pipe.hset(self._key("snapshots"), listing_id, digest)
            if self.store_payloads and payload is not None:
                pipe.hset(self._key("payloads"), listing_id, canonical_json(payload))
            pipe.execute()

    def record_change_and_maybe_update(self, listing_id: str, payload: Any) -> ChangeDetection:
        """Detect a change and overwrite the snapshot only when the content differs."""

        detection = self.detect_change(listing_id, payload)
        if detection.changed:
            self.commit_snapshot(listing_id, detection.digest, payload)
        return detection

    def get_payload(self, listing_id: str) -> dict[str, Any] | None:
        with self._store_errors():
            raw = self._client.hget(self._key("payloads"), listing_id)
        return json.loads(raw) if raw else None

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------
    def mark_processed(self, listing_id: str) -> None:
        with self._store_errors():
            cycle = int(self._client.get(self._key("cycle")) or 0)
            pipe = self._client.pipeline()
            pipe.hset(self._key("state"), listing_id, ListingState.PROCESSED.value)
            pipe.srem(self._key("inflight"), listing_id)
            pipe.zadd(self._key("last_seen"), {listing_id: self._now()})
            pipe.hset(self._key("cycles"), listing_id, cycle)
            pipe.hdel(self._key("failures"), listing_id)
            pipe.execute()

    def mark_failed(self, listing_id: str, reason: str) -> None:
        """Move ``listing_id`` to terminal ``failed``; only an operator reset revives it."""

        with self._store_errors():
            pipe = self._client.pipeline()
            pipe.hset(self._key("state"), listing_id, ListingState.FAILED.value)
            pipe.srem(self._key("inflight"), listing_id)
            pipe.srem(self._key("missing"), listing_id)
            pipe.hset(self._key("failures"), listing_id, reason)
            pipe.execute()
        self.logger.info("listing_failed", listing_id=listing_id, reason=reason)

    def requeue_with_retry(self, listing_id: str, max_retries: int) -> bool:
        """Push ``listing_id`` back while its retry budget lasts; fail it afterwards."""

        with self._store_errors():
            count = int(self._client.hincrby(self._key("retries"), listing_id, 1))
            if count <= max_retries:
                pipe = self._client.pipeline()
                pipe.hset(self._key("state"), listing_id, ListingState.QUEUED.value)
                pipe.srem(self._key("inflight"), listing_id)
                pipe.lpush(self._key("queue"), listing_id)
                pipe.execute()
                self.logger.debug("listing_requeued", listing_id=listing_id, retry=count)
                return True
        self.mark_failed(listing_id, "max_retries_exceeded")
        return False

    def reset_failed(self, listing_ids: Iterable[str] | None = None) -> int:
        """Operator action: return failed ids to the work queue with a fresh retry budget."""

        with self._store_errors():
            if listing_ids is None:
                states = self._client.hgetall(self._key("state"))
                candidates = [
                    listing_id
                    for listing_id, state in states.items()
                    if state == ListingState.FAILED.value
                ]
            else:
                candidates = list(listing_ids)
            reset = 0
            for listing_id in candidates:
                if self._client.hget(self._key("state"), listing_id) != ListingState.FAILED.value:
                    continue
                pipe = self._client.pipeline()
                pipe.hset(self._key("state"), listing_id, ListingState.QUEUED.value)
                pipe.hdel(self._key("retries"), listing_id)
                pipe.hdel(self._key("failures"), listing_id)
                pipe.lpush(self._key("queue"), listing_id)
                pipe.execute()
                reset += 1
        if reset:
            self.logger.info("failed_listings_reset", count=reset)
        return reset

    def release_inflight(self) -> int:
        """Operator action: put ids orphaned by crashed consumers back on their queues.

        Only safe while no consumer of this portal is running.
        """

        released = 0
        with self._store_errors():
            for listing_id in self._client.smembers(self._key("inflight")):
                state = self._client.hget(self._key("state"), listing_id)
                pipe = self._client.pipeline()
                pipe.srem(self._key("inflight"), listing_id)
                if state == ListingState.PROCESSING.value:
                    pipe.hset(self._key("state"), listing_id, ListingState.QUEUED.value)
                    pipe.lpush(self._key("queue"), listing_id)
                elif state == ListingState.MISSING.value:
                    pipe.lpush(self._key("missing_queue"), listing_id)
                pipe.execute()
                released += 1
        if released:
            self.logger.info("inflight_released", count=released)
        return released

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------
    def find_missing(self, threshold_hours: float) -> list[str]:
        """Return processed ids whose last sighting predates ``now - threshold_hours``.

        Only ``processed`` ids are eligible: queued and in-flight ids are
        already on their way through a worker, and ``failed`` ids must not be
        revived without an operator reset.
        """

        cutoff = self._now() - threshold_hours * 3600
        with self._store_errors():
            stale = self._client.zrangebyscore(self._key("last_seen"), "-inf", f"({cutoff}")
            missing: list[str] = []
            for start in range(0, len(stale), _SCAN_CHUNK):
                chunk = stale[start : start + _SCAN_CHUNK]
                states = self._client.hmget(self._key("state"), chunk)
                missing.extend(
                    listing_id
                    for listing_id, state in zip(chunk, states)
                    if state in _STALE_ELIGIBLE
                )
        return missing

    def push_to_missing_queue(self, listing_ids: Iterable[str]) -> int:
        """Admit ids into the verification partition; returns how many were new."""

        admitted = 0
        with self._store_errors():
            for listing_id in listing_ids:
                state = self._client.hget(self._key("state"), listing_id)
                if state is None or state in (
                    ListingState.MISSING.value,
                    ListingState.INACTIVE.value,
                ):
                    continue
                if not self._client.sadd(self._key("missing"), listing_id):
                    continue
                pipe = self._client.pipeline()
                pipe.hset(self._key("state"), listing_id, ListingState.MISSING.value)
                pipe.lpush(self._key("missing_queue"), listing_id)
                pipe.execute()
                admitted += 1
        return admitted

    def restore(self, listing_id: str) -> None:
        """Verification found the listing: back to ``discovered`` and the work queue."""

        with self._store_errors():
            pipe = self._client.pipeline()
            pipe.hset(self._key("state"), listing_id, ListingState.DISCOVERED.value)
            pipe.srem(self._key("missing"), listing_id)
            pipe.srem(self._key("inflight"), listing_id)
            pipe.zadd(self._key("last_seen"), {listing_id: self._now()})
            pipe.lpush(self._key("queue"), listing_id)
            pipe.execute()

    def mark_inactive(self, listing_id: str) -> None:
        with self._store_errors():
            pipe = self._client.pipeline()
            pipe.hset(self._key("state"), listing_id, ListingState.INACTIVE.value)
            pipe.srem(self._key("missing"), listing_id)
            pipe.srem(self._key("inflight"), listing_id)
            pipe.execute()

    def requeue_missing_with_retry(self, listing_id: str, max_retries: int) -> bool:
        with self._store_errors():
            count = int(self._client.hincrby(self._key("retries"), listing_id, 1))
            if count <= max_retries:
                pipe = self._client.pipeline()
                pipe.srem(self._key("inflight"), listing_id)
                pipe.lpush(self._key("missing_queue"), listing_id)
                pipe.execute()
                return True
        self.mark_failed(listing_id, "verification_retries_exhausted")
        return False

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    def stats(self) -> QueueStats:
        with self._store_errors():
            states = Counter(self._client.hvals(self._key("state")))
            cycle = int(self._client.get(self._key("cycle")) or 0)
        return QueueStats(
            queued=states[ListingState.DISCOVERED.value] + states[ListingState.QUEUED.value],
            processing=states[ListingState.PROCESSING.value],
            processed=states[ListingState.PROCESSED.value],
            failed=states[ListingState.FAILED.value],
            missing=states[ListingState.MISSING.value],
            inactive=states[ListingState.INACTIVE.value],
            total_discovered=sum(states.values()),
            cycle=cycle,
        )

    def get_record(self, listing_id: str) -> ListingRecord | None:
        with self._store_errors():
            pipe = self._client.pipeline()
            pipe.hget(self._key("state"), listing_id)
            pipe.hget(self._key("retries"), listing_id)
            pipe.zscore(self._key("last_seen"), listing_id)
            pipe.hget(self._key("snapshots"), listing_id)
            pipe.hget(self._key("meta"), listing_id)
            pipe.hget(self._key("failures"), listing_id)
            pipe.hget(self._key("cycles"), listing_id)
            state, retries, last_seen, snapshot, meta, failure, cycle = pipe.execute()
        if state is None:
            return None
        return ListingRecord(
            id=listing_id,
            portal=self.portal,
            state=ListingState(state),
            retry_count=int(retries or 0),
            last_seen_at=(
                datetime.fromtimestamp(float(last_seen), tz=timezone.utc)
                if last_seen is not None
                else None
            ),
            snapshot_hash=snapshot,
            metadata=json.loads(meta) if meta else {},
            failure_reason=failure,
            processed_cycle=int(cycle) if cycle is not None else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _key(self, name: str) -> str:
        return f"{self.key_prefix}:{self.portal}:{name}"

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            raise StoreUnavailableError(
                f"Queue store unavailable for portal {self.portal}: {exc}"
            ) from exc


def _require_id(listing_id: str) -> str:
    if listing_id is None:
        raise ValueError("listing id cannot be empty")
    listing_id = str(listing_id).strip()
    if not listing_id:
        raise ValueError("listing id cannot be empty")
    return listing_id


__all__ = ["QueueEngine"]
