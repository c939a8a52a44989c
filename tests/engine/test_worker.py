from __future__ import annotations

import threading

import pytest

from conftest import RecordingSink, StubFetcher
from listing_tracker.engine import BaseTransformer, ConsumerStats, ListingState, ProcessingOutcome, Worker
from listing_tracker.errors import StoreUnavailableError, TransientFetchError
from listing_tracker.infra import AuditLog, SQLiteManager


def _worker(engine, fetcher, sink, settings, **kwargs) -> Worker:
    kwargs.setdefault("close_engine_on_exit", False)
    return Worker(engine, fetcher, sink, settings, country="BR", consumer_id="worker-test", **kwargs)


def test_listing_is_forwarded_only_when_content_changes(engine, worker_settings, tmp_path) -> None:
    payload = {"id": "A1", "price": 500000}
    fetcher = StubFetcher({"A1": lambda: dict(payload)})
    sink = RecordingSink()
    audit = AuditLog(SQLiteManager(), tmp_path / "audit.db")

    # cycle 1: new listing is forwarded
    engine.begin_cycle()
    engine.admit("A1")
    stats = _worker(engine, fetcher, sink, worker_settings, audit=audit).run()
    assert stats.changed == 1
    assert len(sink.records) == 1
    assert sink.records[0].portal_id == "A1"
    assert sink.records[0].country == "BR"
    assert sink.records[0].status == "active"
    assert sink.records[0].data == payload
    assert engine.get_record("A1").state is ListingState.PROCESSED

    # cycle 2: unchanged content is not forwarded
    engine.begin_cycle()
    assert engine.admit("A1").admitted is True
    stats = _worker(engine, fetcher, sink, worker_settings, audit=audit).run()
    assert stats.unchanged == 1
    assert len(sink.records) == 1

    # cycle 3: a price change is forwarded again
    payload["price"] = 480000
    engine.begin_cycle()
    engine.admit("A1")
    _worker(engine, fetcher, sink, worker_settings, audit=audit).run()
    assert len(sink.records) == 2
    assert sink.records[1].data["price"] == 480000

    events = [row["event"] for row in audit.history("vivareal", "A1")]
    assert events == ["changed", "unchanged", "changed"]


def test_not_found_is_terminal(engine, worker_settings) -> None:
    engine.admit("GONE")
    worker = _worker(engine, StubFetcher({}), RecordingSink(), worker_settings)
    stats = worker.run()
    record = engine.get_record("GONE")
    assert record.state is ListingState.FAILED
    assert record.failure_reason == "not_found"
    assert stats.failed == 1
    assert stats.requeued == 0


def test_transient_failures_are_retried_until_ceiling(engine, worker_settings) -> None:
    engine.admit("FLAKY")
    fetcher = StubFetcher({"FLAKY": TransientFetchError("timeout")})
    stats = _worker(engine, fetcher, RecordingSink(), worker_settings).run()

    assert fetcher.calls == ["FLAKY"] * 4
    assert stats.requeued == 3
    assert stats.failed == 1
    record = engine.get_record("FLAKY")
    assert record.state is ListingState.FAILED
    assert record.retry_count == 4


def test_failed_forward_keeps_previous_snapshot(engine, worker_settings) -> None:
    engine.admit("A1")
    sink = RecordingSink(fail_times=1)
    stats = _worker(engine, StubFetcher({"A1": {"price": 1}}), sink, worker_settings).run()

    assert stats.requeued == 1
    assert stats.changed == 1
    assert len(sink.records) == 1
    record = engine.get_record("A1")
    assert record.state is ListingState.PROCESSED
    assert record.snapshot_hash is not None


def test_transformer_output_is_forwarded(engine, worker_settings) -> None:
    class UpperTransformer(BaseTransformer):
        def canonicalize(self, payload):
            return {key.upper(): value for key, value in payload.items()}

    engine.admit("A1")
    sink = RecordingSink()
    _worker(engine, StubFetcher({"A1": {"price": 1}}), sink, worker_settings, transformer=UpperTransformer()).run()
    assert sink.records[0].data == {"PRICE": 1}
    assert sink.records[0].raw_data == {"price": 1}


def test_duplicate_queue_entry_is_skipped(engine, worker_settings) -> None:
    engine.begin_cycle()
    engine.admit("A1")
    engine._client.lpush(engine._key("queue"), "A1")
    fetcher = StubFetcher({"A1": {"price": 1}})
    sink = RecordingSink()
    stats = _worker(engine, fetcher, sink, worker_settings).run()

    assert fetcher.calls == ["A1"]
    assert stats.processed == 1
    assert stats.skipped == 1
    assert len(sink.records) == 1
    assert engine.get_record("A1").state is ListingState.PROCESSED
    assert engine.stats().processing == 0


def test_claimed_duplicate_reports_skipped(engine, worker_settings) -> None:
    engine.begin_cycle()
    engine.admit("A1")
    engine.mark_processed(engine.claim(0))
    engine._client.lpush(engine._key("queue"), "A1")
    fetcher = StubFetcher({"A1": {"price": 1}})
    worker = _worker(engine, fetcher, RecordingSink(), worker_settings)
    assert worker.process(engine.claim(0)) is ProcessingOutcome.SKIPPED
    assert fetcher.calls == []


def test_worker_exits_after_empty_polls_and_closes_engine(engine, worker_settings, monkeypatch) -> None:
    closed: list[bool] = []
    monkeypatch.setattr(engine, "close", lambda: closed.append(True))
    worker = Worker(engine, StubFetcher(), RecordingSink(), worker_settings)
    stats = worker.run()
    assert stats.processed == 0
    assert stats.running is False
    assert closed == [True]


def test_stop_interrupts_a_polling_worker(engine, worker_settings) -> None:
    settings = worker_settings.model_copy(update={"max_empty_checks": 10_000})
    worker = _worker(engine, StubFetcher(), RecordingSink(), settings)
    thread = threading.Thread(target=worker.run)
    thread.start()
    worker.stop()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert worker.running is False


def test_store_outage_is_reraised_after_consecutive_errors(engine, worker_settings, monkeypatch) -> None:
    attempts: list[float] = []

    def _unavailable(timeout_seconds: float):
        attempts.append(timeout_seconds)
        raise StoreUnavailableError("redis down")

    monkeypatch.setattr(engine, "claim", _unavailable)
    worker = _worker(engine, StubFetcher(), RecordingSink(), worker_settings)
    with pytest.raises(StoreUnavailableError):
        worker.run()
    assert len(attempts) == worker_settings.max_consecutive_errors
    assert worker.stats().errors == worker_settings.max_consecutive_errors


def test_store_outage_while_processing_stops_the_worker(engine, worker_settings, monkeypatch) -> None:
    for index in range(6):
        engine.admit(f"L{index}")

    def _unavailable(listing_id: str):
        raise StoreUnavailableError("redis down")

    monkeypatch.setattr(engine, "get_metadata", _unavailable)
    fetcher = StubFetcher()
    worker = _worker(engine, fetcher, RecordingSink(), worker_settings)
    with pytest.raises(StoreUnavailableError):
        worker.run()
    assert worker.stats().errors == worker_settings.max_consecutive_errors
    assert fetcher.calls == []
    assert engine.stats().queued == 6 - worker_settings.max_consecutive_errors


def test_change_rate() -> None:
    stats = ConsumerStats(consumer_id="w", kind="worker", processed=4, changed=1)
    assert stats.change_rate == 0.25
    assert stats.as_dict()["change_rate"] == 0.25
    assert ConsumerStats(consumer_id="w", kind="worker").change_rate == 0.0
