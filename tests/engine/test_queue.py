from __future__ import annotations

import threading

import pytest
import redis

from listing_tracker.engine import ListingState, QueueEngine
from listing_tracker.errors import StoreUnavailableError


def _state(engine: QueueEngine, listing_id: str) -> ListingState:
    record = engine.get_record(listing_id)
    assert record is not None
    return record.state


def test_admit_is_idempotent_within_a_cycle(engine: QueueEngine) -> None:
    assert engine.admit("A1", {"location": "sp"}).admitted is True
    assert engine.admit("A1", {"location": "sp"}).admitted is False
    assert engine.admit("A1").admitted is False

    stats = engine.stats()
    assert stats.total_discovered == 1
    assert stats.queued == 1
    assert engine.claim(0) == "A1"
    assert engine.claim(0) is None


def test_admit_rejects_empty_ids(engine: QueueEngine) -> None:
    with pytest.raises(ValueError):
        engine.admit("")
    with pytest.raises(ValueError):
        engine.admit("   ")


def test_admit_refreshes_last_seen_for_known_ids(engine: QueueEngine, clock) -> None:
    engine.admit("A1")
    first = engine.get_record("A1").last_seen_at
    clock.advance(hours=2)
    engine.admit("A1")
    assert engine.get_record("A1").last_seen_at > first


def test_claim_marks_processing_and_inflight(engine: QueueEngine) -> None:
    engine.admit("A1")
    assert engine.claim(0) == "A1"
    assert _state(engine, "A1") is ListingState.PROCESSING
    assert engine.stats().processing == 1


def test_claim_is_fifo(engine: QueueEngine) -> None:
    for listing_id in ("A1", "A2", "A3"):
        engine.admit(listing_id)
    assert [engine.claim(0) for _ in range(3)] == ["A1", "A2", "A3"]


def test_blocking_claim_times_out_on_empty_queue(engine: QueueEngine) -> None:
    assert engine.claim(0.05) is None


def test_concurrent_claims_hand_out_each_id_once(make_engine) -> None:
    seed = make_engine()
    for index in range(50):
        seed.admit(f"L{index}")

    claimed: list[str] = []
    lock = threading.Lock()

    def _drain() -> None:
        worker_engine = make_engine()
        while True:
            listing_id = worker_engine.claim(0)
            if listing_id is None:
                return
            with lock:
                claimed.append(listing_id)

    threads = [threading.Thread(target=_drain) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == sorted(f"L{index}" for index in range(50))
    assert len(set(claimed)) == 50


def test_change_detection_is_idempotent(engine: QueueEngine) -> None:
    payload = {"price": 500000, "rooms": 3}
    first = engine.record_change_and_maybe_update("A1", payload)
    second = engine.record_change_and_maybe_update("A1", payload)
    assert first.changed is True
    assert first.previous_digest is None
    assert second.changed is False
    assert second.digest == first.digest


def test_change_detection_ignores_key_order(engine: QueueEngine) -> None:
    engine.record_change_and_maybe_update("A1", {"price": 1, "rooms": 2})
    assert engine.detect_change("A1", {"rooms": 2, "price": 1}).changed is False
    assert engine.detect_change("A1", {"rooms": 2, "price": 2}).changed is True


def test_detect_change_does_not_write(engine: QueueEngine) -> None:
    detection = engine.detect_change("A1", {"price": 1})
    assert detection.changed is True
    assert engine.detect_change("A1", {"price": 1}).changed is True
    engine.commit_snapshot("A1", detection.digest)
    assert engine.detect_change("A1", {"price": 1}).changed is False


def test_store_payloads_keeps_canonical_copy(make_engine) -> None:
    engine = make_engine(store_payloads=True)
    engine.record_change_and_maybe_update("A1", {"b": 1.0, "a": "x"})
    assert engine.get_payload("A1") == {"a": "x", "b": 1}


def test_retry_ceiling_fails_after_max_requeues(engine: QueueEngine) -> None:
    engine.admit("A1")
    results = []
    for _ in range(4):
        assert engine.claim(0) == "A1"
        results.append(engine.requeue_with_retry("A1", max_retries=3))

    assert results == [True, True, True, False]
    record = engine.get_record("A1")
    assert record.state is ListingState.FAILED
    assert record.retry_count == 4
    assert record.failure_reason == "max_retries_exceeded"
    assert engine.claim(0) is None


def test_retry_count_survives_success(engine: QueueEngine) -> None:
    engine.admit("A1")
    engine.claim(0)
    engine.requeue_with_retry("A1", max_retries=3)
    engine.claim(0)
    engine.mark_processed("A1")
    assert engine.get_record("A1").retry_count == 1


def test_failed_ids_are_not_revived_by_discovery(engine: QueueEngine) -> None:
    engine.admit("A1")
    engine.claim(0)
    engine.mark_failed("A1", "not_found")
    engine.begin_cycle()
    assert engine.admit("A1").admitted is False
    assert engine.claim(0) is None
    assert _state(engine, "A1") is ListingState.FAILED


def test_reset_failed_requeues_with_fresh_budget(engine: QueueEngine) -> None:
    for listing_id in ("A1", "A2"):
        engine.admit(listing_id)
        engine.claim(0)
        engine.requeue_with_retry(listing_id, max_retries=0)

    assert engine.stats().failed == 2
    assert engine.reset_failed(["A2", "unknown"]) == 1
    record = engine.get_record("A2")
    assert record.state is ListingState.QUEUED
    assert record.retry_count == 0
    assert record.failure_reason is None
    assert engine.reset_failed() == 1
    assert sorted([engine.claim(0), engine.claim(0)]) == ["A1", "A2"]


def test_processed_in_current_cycle(engine: QueueEngine) -> None:
    engine.begin_cycle()
    engine.admit("A1")
    engine.claim(0)
    assert engine.is_processed("A1") is False
    engine.mark_processed("A1")
    assert engine.is_processed("A1") is True
    assert engine.admit("A1").admitted is False

    engine.begin_cycle()
    assert engine.is_processed("A1") is False
    assert engine.admit("A1").admitted is True
    assert engine.claim(0) == "A1"


def test_claiming_a_duplicate_entry_keeps_processed_state(engine: QueueEngine) -> None:
    engine.begin_cycle()
    engine.admit("A1")
    engine._client.lpush(engine._key("queue"), "A1")
    engine.mark_processed(engine.claim(0))

    assert engine.claim(0) == "A1"
    assert _state(engine, "A1") is ListingState.PROCESSED
    assert engine.is_processed("A1") is True
    assert engine.stats().processing == 0


def test_staleness_threshold(engine: QueueEngine, clock) -> None:
    for listing_id in ("OLD", "FRESH"):
        engine.admit(listing_id)
        engine.claim(0)
    engine.mark_processed("OLD")
    clock.advance(hours=2)
    engine.mark_processed("FRESH")
    clock.advance(hours=11)

    # OLD last seen 13h ago, FRESH 11h ago
    assert engine.find_missing(12) == ["OLD"]


def test_find_missing_only_considers_processed_ids(engine: QueueEngine, clock) -> None:
    engine.admit("QUEUED")
    engine.admit("FAILED")
    engine.admit("DONE")
    assert engine.claim(0) == "QUEUED"
    engine.requeue_with_retry("QUEUED", 3)
    engine.claim(0)
    engine.mark_failed("FAILED", "not_found")
    engine.claim(0)
    engine.mark_processed("DONE")
    clock.advance(hours=24)
    assert engine.find_missing(12) == ["DONE"]


def test_missing_queue_dedups_and_skips_inactive(engine: QueueEngine, clock) -> None:
    for listing_id in ("A1", "A2"):
        engine.admit(listing_id)
        engine.claim(0)
        engine.mark_processed(listing_id)
    clock.advance(hours=13)

    missing = engine.find_missing(12)
    assert engine.push_to_missing_queue(missing) == 2
    assert engine.push_to_missing_queue(missing) == 0
    assert engine.find_missing(12) == []
    assert engine.stats().missing == 2

    assert engine.claim_missing(0) == "A1"
    engine.mark_inactive("A1")
    assert engine.push_to_missing_queue(["A1", "unknown"]) == 0
    assert _state(engine, "A1") is ListingState.INACTIVE


def test_restore_returns_missing_id_to_work_queue(engine: QueueEngine, clock) -> None:
    engine.admit("A1")
    engine.claim(0)
    engine.mark_processed("A1")
    clock.advance(hours=13)
    engine.push_to_missing_queue(engine.find_missing(12))

    assert engine.claim_missing(0) == "A1"
    engine.restore("A1")
    assert _state(engine, "A1") is ListingState.DISCOVERED
    assert engine.claim(0) == "A1"
    assert engine.find_missing(12) == []


def test_inactive_id_is_readmitted_by_fresh_discovery(engine: QueueEngine, clock) -> None:
    engine.admit("A1")
    engine.claim(0)
    engine.mark_processed("A1")
    clock.advance(hours=13)
    engine.push_to_missing_queue(engine.find_missing(12))
    engine.claim_missing(0)
    engine.mark_inactive("A1")

    assert engine.admit("A1").admitted is True
    assert _state(engine, "A1") is ListingState.DISCOVERED
    assert engine.claim(0) == "A1"


def test_verification_retry_exhaustion_fails(engine: QueueEngine, clock) -> None:
    engine.admit("A1")
    engine.claim(0)
    engine.mark_processed("A1")
    clock.advance(hours=13)
    engine.push_to_missing_queue(engine.find_missing(12))

    assert engine.claim_missing(0) == "A1"
    assert engine.requeue_missing_with_retry("A1", max_retries=1) is True
    assert engine.claim_missing(0) == "A1"
    assert engine.requeue_missing_with_retry("A1", max_retries=1) is False
    record = engine.get_record("A1")
    assert record.state is ListingState.FAILED
    assert record.failure_reason == "verification_retries_exhausted"
    assert engine.claim_missing(0) is None


def test_release_inflight_requeues_orphans(engine: QueueEngine, clock) -> None:
    engine.admit("WORK")
    engine.admit("GONE")
    engine.claim(0)
    engine.claim(0)
    engine.mark_processed("GONE")
    clock.advance(hours=13)
    engine.push_to_missing_queue(["GONE"])
    engine.claim_missing(0)

    assert engine.release_inflight() == 2
    assert _state(engine, "WORK") is ListingState.QUEUED
    assert engine.claim(0) == "WORK"
    assert engine.claim_missing(0) == "GONE"


def test_portals_are_isolated(make_engine) -> None:
    first = make_engine("vivareal")
    second = make_engine("zapimoveis")
    first.admit("A1")
    assert second.admit("A1").admitted is True
    assert first.stats().total_discovered == 1
    assert second.stats().total_discovered == 1


def test_stats_counts_states(engine: QueueEngine) -> None:
    engine.begin_cycle()
    for listing_id in ("A1", "A2", "A3"):
        engine.admit(listing_id)
    engine.claim(0)
    engine.mark_processed("A1")
    engine.claim(0)

    assert engine.stats().as_dict() == {
        "queued": 1,
        "processing": 1,
        "processed": 1,
        "failed": 0,
        "missing": 0,
        "inactive": 0,
        "total_discovered": 3,
        "cycle": 1,
    }


def test_get_record_unknown_id(engine: QueueEngine) -> None:
    assert engine.get_record("nope") is None


def test_store_errors_are_translated(engine: QueueEngine, monkeypatch) -> None:
    def _boom(*args, **kwargs):
        raise redis.exceptions.ConnectionError("connection refused")

    monkeypatch.setattr(engine._client, "hsetnx", _boom)
    with pytest.raises(StoreUnavailableError) as excinfo:
        engine.admit("A1")
    assert isinstance(excinfo.value.__cause__, redis.exceptions.ConnectionError)


def test_from_url_reports_unreachable_store() -> None:
    with pytest.raises(StoreUnavailableError):
        QueueEngine.from_url("redis://127.0.0.1:1/0", "vivareal", socket_timeout=0.2)
