"""Shared fixtures: in-memory Redis, a controllable clock and stub collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import fakeredis
import pytest

from listing_tracker.config import (
    BoundingBox,
    ConfigLocator,
    ConfigRepository,
    DiscoveryConfig,
    GridConfig,
    Location,
    PortalConfig,
    WorkerConfig,
)
from listing_tracker.engine import BaseDiscoverer, BaseFetcher, BaseSink, DiscoveryPage, IngestPayload, QueueEngine
from listing_tracker.errors import ListingNotFoundError

HOUR = 3600.0


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LISTING_TRACKER_HOME", str(tmp_path))


class FakeClock:
    """Callable epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, hours: float = 0.0, seconds: float = 0.0) -> None:
        self.now += hours * HOUR + seconds


class StubDiscoverer(BaseDiscoverer):
    """Serve pre-baked id lists per location, sliced into pages."""

    def __init__(self, ids_by_location: dict[str, list[str]] | None = None, fail_for: Iterable[str] = ()) -> None:
        self.ids_by_location = ids_by_location or {}
        self.fail_for = set(fail_for)
        self.calls: list[tuple[str, int, int]] = []
        self.closed = False

    def discover(self, location: Location, page: int, page_size: int) -> DiscoveryPage:
        self.calls.append((location.name, page, page_size))
        if location.name in self.fail_for:
            raise RuntimeError(f"feed down for {location.name}")
        ids = self.ids_by_location.get(location.name, [])
        start = page * page_size
        return DiscoveryPage(ids=ids[start : start + page_size], total=len(ids))

    def close(self) -> None:
        self.closed = True


class StubFetcher(BaseFetcher):
    """Return payloads from a dict; callables and exceptions are resolved per call."""

    def __init__(self, payloads: dict[str, Any] | None = None) -> None:
        self.payloads = payloads or {}
        self.calls: list[str] = []
        self.closed = False

    def fetch_detail(self, listing_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append(listing_id)
        if listing_id not in self.payloads:
            raise ListingNotFoundError(listing_id)
        value = self.payloads[listing_id]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value()
        return value

    def close(self) -> None:
        self.closed = True


class RecordingSink(BaseSink):
    def __init__(self, fail_times: int = 0) -> None:
        self.records: list[IngestPayload] = []
        self.fail_times = fail_times
        self.closed = False

    def ingest(self, payload: IngestPayload) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("ingest endpoint down")
        self.records.append(payload)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def make_engine(redis_server: fakeredis.FakeServer, clock: FakeClock) -> Callable[..., QueueEngine]:
    def _builder(portal: str = "vivareal", **kwargs: Any) -> QueueEngine:
        client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
        kwargs.setdefault("now", clock)
        return QueueEngine(client, portal, **kwargs)

    return _builder


@pytest.fixture
def engine(make_engine: Callable[..., QueueEngine]) -> QueueEngine:
    return make_engine()


@pytest.fixture
def worker_settings() -> WorkerConfig:
    return WorkerConfig(
        poll_timeout_seconds=0.05,
        max_empty_checks=1,
        delay_range=(0, 0),
        error_backoff_range=(0, 0),
        max_retries=3,
        max_consecutive_errors=3,
    )


@pytest.fixture
def sample_portal_config() -> Callable[..., PortalConfig]:
    def _builder(**overrides: Any) -> PortalConfig:
        base: dict[str, Any] = {
            "portal": "vivareal",
            "country": "BR",
            "discovery": DiscoveryConfig(
                page_size=2,
                max_pages=10,
                page_delay_range=(0, 0),
                location_delay_range=(0, 0),
                locations=[Location(name="sao-paulo-sp", lat=-23.55, lng=-46.63)],
            ),
            "worker": WorkerConfig(
                poll_timeout_seconds=0.05,
                max_empty_checks=1,
                delay_range=(0, 0),
                error_backoff_range=(0, 0),
            ),
            "collaborators": {
                "discoverer": "conftest:StubDiscoverer",
                "fetcher": "conftest:StubFetcher",
            },
        }
        base.update(overrides)
        return PortalConfig(**base)

    return _builder


@pytest.fixture
def grid_portal_config(sample_portal_config: Callable[..., PortalConfig]) -> PortalConfig:
    return sample_portal_config(
        portal="gridportal",
        discovery=DiscoveryConfig(
            strategy="grid",
            page_delay_range=(0, 0),
            location_delay_range=(0, 0),
            grid=GridConfig(
                cell_size_degrees=0.5,
                bounding_box=BoundingBox(north=1.0, south=0.0, east=1.0, west=0.0),
            ),
        ),
    )


@pytest.fixture
def temp_config_repository(tmp_path: Path) -> Iterable[ConfigRepository]:
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
