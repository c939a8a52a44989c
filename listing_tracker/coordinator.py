"""Discovery coordinator: page discovery feeds, admit ids, sweep for staleness."""

from __future__ import annotations

import math
import random
import threading
import time
from dataclasses import dataclass, field

import structlog

from .config import BoundingBox, DiscoveryConfig, GridConfig, Location, PortalConfig
from .engine.collaborators import BaseDiscoverer
from .engine.queue import QueueEngine
from .errors import StoreUnavailableError
from .logging_conf import portal_logger

_GRID_PRECISION = 9


@dataclass(slots=True)
class GridCell:
    """One tile of a bounding box, numbered row-major from the south-west corner."""

    lat: float
    lng: float
    viewport: BoundingBox
    index: int
    total: int

    def to_location(self) -> Location:
        return Location(
            name=f"cell-{self.index}",
            lat=self.lat,
            lng=self.lng,
            viewport=self.viewport,
            metadata={"index": self.index, "total": self.total},
        )


@dataclass(slots=True)
class DiscoverySummary:
    cycle: int = 0
    locations: int = 0
    failed_locations: list[str] = field(default_factory=list)
    ids_seen: int = 0
    ids_admitted: int = 0
    duration_seconds: float = 0.0
    sweep: "SweepResult | None" = None

    @property
    def duplicates(self) -> int:
        return self.ids_seen - self.ids_admitted

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "cycle": self.cycle,
            "locations": self.locations,
            "failed_locations": len(self.failed_locations),
            "ids_seen": self.ids_seen,
            "ids_admitted": self.ids_admitted,
            "duplicates": self.duplicates,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.sweep is not None:
            data["missing_found"] = self.sweep.found
            data["missing_queued"] = self.sweep.queued
        return data


@dataclass(slots=True)
class SweepResult:
    found: int = 0
    queued: int = 0


def generate_grid(cell_size_degrees: float, bounding_box: BoundingBox) -> list[GridCell]:
    """Tile ``bounding_box`` into cells of ``cell_size_degrees``.

    Step counts are integers so accumulated floating point error never adds
    a row or column; the last row and column are clipped to the box edge.
    """

    if cell_size_degrees <= 0:
        raise ValueError("cell_size_degrees must be > 0")
    box = bounding_box
    lat_steps = math.ceil(round((box.north - box.south) / cell_size_degrees, _GRID_PRECISION))
    lng_steps = math.ceil(round((box.east - box.west) / cell_size_degrees, _GRID_PRECISION))
    total = lat_steps * lng_steps

    cells: list[GridCell] = []
    index = 0
    for row in range(lat_steps):
        south = round(box.south + row * cell_size_degrees, _GRID_PRECISION)
        north = round(min(box.south + (row + 1) * cell_size_degrees, box.north), _GRID_PRECISION)
        for col in range(lng_steps):
            west = round(box.west + col * cell_size_degrees, _GRID_PRECISION)
            east = round(min(box.west + (col + 1) * cell_size_degrees, box.east), _GRID_PRECISION)
            index += 1
            cells.append(
                GridCell(
                    lat=round((south + north) / 2, _GRID_PRECISION),
                    lng=round((west + east) / 2, _GRID_PRECISION),
                    viewport=BoundingBox(north=north, south=south, east=east, west=west),
                    index=index,
                    total=total,
                )
            )
    return cells


class Coordinator:
    """Drive discovery for one portal and feed the queue engine."""

    def __init__(
        self,
        engine: QueueEngine,
        discoverer: BaseDiscoverer,
        discovery: DiscoveryConfig,
        *,
        logger: structlog.BoundLogger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.engine = engine
        self.discoverer = discoverer
        self.discovery = discovery
        self.rng = rng or random.Random()
        self.logger = (logger or portal_logger(engine.portal)).bind(component="coordinator")
        self._stop_event = threading.Event()

    generate_grid = staticmethod(generate_grid)

    # ------------------------------------------------------------------
    @staticmethod
    def locations_for(portal: PortalConfig) -> list[Location]:
        discovery = portal.discovery
        if discovery.strategy == "grid":
            grid: GridConfig = discovery.grid  # type: ignore[assignment]
            return [cell.to_location() for cell in generate_grid(grid.cell_size_degrees, grid.bounding_box)]
        return list(discovery.locations)

    def stop(self) -> None:
        self.logger.info("coordinator_stopping")
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    def discover_location(self, location: Location) -> int:
        """Page through ``location`` and admit every id; return the admitted count."""

        return self._discover(location)[1]

    def _discover(self, location: Location) -> tuple[int, int]:
        settings = self.discovery
        page_size = settings.page_size
        admitted = 0
        seen = 0
        total = 0
        page = 0
        while page < settings.max_pages and not self._stop_event.is_set():
            if page > 0:
                self._sleep(settings.page_delay_range)
            result = self.discoverer.discover(location, page, page_size)
            total = result.total
            if not result.ids:
                break
            for listing_id in result.ids:
                seen += 1
                if self.engine.admit(listing_id, {"location": location.name}).admitted:
                    admitted += 1
            if (page + 1) * page_size >= total:
                break
            page += 1
        if page >= settings.max_pages:
            self.logger.warning("max_pages_reached", location=location.name, max_pages=settings.max_pages)

        self.logger.info(
            "location_discovered",
            location=location.name,
            total=total,
            seen=seen,
            admitted=admitted,
            duplicates=seen - admitted,
        )
        return seen, admitted

    def discover_all(self, locations: list[Location]) -> DiscoverySummary:
        settings = self.discovery
        summary = DiscoverySummary(cycle=self.engine.current_cycle())
        started = time.monotonic()
        self.logger.info("discovery_started", locations=len(locations))
        for position, location in enumerate(locations, start=1):
            if self._stop_event.is_set():
                self.logger.info("discovery_interrupted", completed=position - 1)
                break
            if position > 1:
                self._sleep(settings.location_delay_range)
            summary.locations += 1
            try:
                seen, admitted = self._discover(location)
                summary.ids_seen += seen
                summary.ids_admitted += admitted
            except StoreUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                summary.failed_locations.append(location.name)
                self.logger.error(
                    "location_failed",
                    location=location.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            if position % settings.progress_every == 0:
                self.logger.info(
                    "discovery_progress",
                    completed=position,
                    locations=len(locations),
                    **self.engine.stats().as_dict(),
                )
        summary.duration_seconds = time.monotonic() - started
        self.logger.info("discovery_complete", **summary.as_dict())
        return summary

    def sweep_staleness(self, threshold_hours: float) -> SweepResult:
        missing = self.engine.find_missing(threshold_hours)
        if not missing:
            self.logger.info("no_missing_listings", threshold_hours=threshold_hours)
            return SweepResult()
        queued = self.engine.push_to_missing_queue(missing)
        self.logger.info(
            "missing_listings_queued",
            threshold_hours=threshold_hours,
            found=len(missing),
            queued=queued,
            skipped=len(missing) - queued,
        )
        return SweepResult(found=len(missing), queued=queued)

    def run_cycle(
        self,
        locations: list[Location],
        *,
        sweep: bool = True,
        threshold_hours: float = 12.0,
    ) -> DiscoverySummary:
        """Open a new discovery cycle, discover every location, then sweep."""

        cycle = self.engine.begin_cycle()
        self.logger.info("cycle_started", cycle=cycle)
        summary = self.discover_all(locations)
        summary.cycle = cycle
        if sweep and not self._stop_event.is_set():
            summary.sweep = self.sweep_staleness(threshold_hours)
        return summary

    # ------------------------------------------------------------------
    def _sleep(self, delay_range: tuple[float, float]) -> None:
        low, high = delay_range
        delay = self.rng.uniform(low, high)
        if delay > 0:
            self._stop_event.wait(delay)


__all__ = ["Coordinator", "DiscoverySummary", "GridCell", "SweepResult", "generate_grid"]
