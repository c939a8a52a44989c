"""Typer CLI entrypoint for listing-tracker."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig, PortalConfig, ScheduleConfig, ScheduleType
from .coordinator import Coordinator, DiscoverySummary, generate_grid
from .engine import (
    BaseDiscoverer,
    BaseFetcher,
    BaseTransformer,
    QueueConsumer,
    QueueEngine,
    Verifier,
    Worker,
    WorkerPool,
)
from .engine.sinks import build_sink
from .errors import ConfigurationError, StoreUnavailableError
from .infra import AuditLog, SQLiteManager, build_collaborator
from .logging_conf import available_portal_logs, configure_logging, log_dir, portal_logger, tail_log
from .scheduler import APSchedulerAdapter

app = typer.Typer(help="listing-tracker command line", no_args_is_help=True, rich_markup_mode=None)
portal_app = typer.Typer(name="portal", help="Inspect portal configurations.", no_args_is_help=True)
discover_app = typer.Typer(name="discover", help="Run discovery and staleness sweeps.", no_args_is_help=True)
worker_app = typer.Typer(name="worker", help="Run detail workers.", no_args_is_help=True)
verifier_app = typer.Typer(name="verifier", help="Run missing-listing verifiers.", no_args_is_help=True)
queue_app = typer.Typer(name="queue", help="Inspect and repair queue state.", no_args_is_help=True)
schedule_app = typer.Typer(name="schedule", help="Run scheduled jobs.", no_args_is_help=True)
log_app = typer.Typer(name="log", help="View log files.", no_args_is_help=True)

console = Console()

EngineFactory = Callable[[PortalConfig, float], QueueEngine]


@dataclass
class AppState:
    repository: ConfigRepository
    global_config: GlobalConfig
    storage: SQLiteManager
    engine_factory: EngineFactory
    verbose: bool = False
    _audit: AuditLog | None = field(default=None, repr=False)

    def engine_for(self, portal: PortalConfig, poll_timeout: float = 0.0) -> QueueEngine:
        # the socket must outlive a blocking pop
        timeout = max(self.global_config.redis_socket_timeout, poll_timeout + 5.0)
        return self.engine_factory(portal, timeout)

    def audit(self) -> AuditLog | None:
        if not self.global_config.audit_enabled:
            return None
        if self._audit is None:
            path = self.repository.resolve_path(self.global_config.audit_db_path)
            self._audit = AuditLog(self.storage, path)
        return self._audit


def build_state(verbose: bool, redis_url: str | None = None) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    try:
        global_config = repository.load_global_config()
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1) from exc
    url = redis_url or global_config.redis_url

    def _engine_factory(portal: PortalConfig, socket_timeout: float) -> QueueEngine:
        return QueueEngine.from_url(
            url,
            portal.portal,
            socket_timeout=socket_timeout,
            key_prefix=portal.key_prefix,
            store_payloads=portal.store_payloads,
            logger=portal_logger(portal.portal, verbose),
        )

    return AppState(
        repository=repository,
        global_config=global_config,
        storage=SQLiteManager(),
        engine_factory=_engine_factory,
        verbose=verbose,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _load_portal(state: AppState, name: str) -> PortalConfig:
    try:
        return state.repository.load_portal(name)
    except FileNotFoundError:
        console.print(f"Portal `{name}` is not configured.", style="yellow")
        raise typer.Exit(code=1)
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1) from exc


def _build(portal: PortalConfig, role: str, expected: type):
    path = getattr(portal.collaborators, role)
    if not path:
        console.print(f"Portal `{portal.portal}` has no {role} configured.", style="red")
        raise typer.Exit(code=1)
    try:
        return build_collaborator(path, portal.collaborators.options_for(role), expected=expected)
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1) from exc


@contextmanager
def _store_guard() -> Iterator[None]:
    try:
        yield
    except StoreUnavailableError as exc:
        console.print(f"Queue store unavailable: {exc}", style="red")
        raise typer.Exit(code=2) from exc


@contextmanager
def _graceful_stop(callback: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``callback`` while the block runs."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame) -> None:  # noqa: ARG001
        console.print(f"Received {signal.Signals(signum).name}, stopping…", style="yellow")
        callback()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _format_schedule(schedule: ScheduleConfig) -> str:
    data = schedule.value
    label = schedule.type.value
    if data in (None, "", [], {}):
        return label
    if schedule.type is ScheduleType.CRON:
        return f"cron ({data})"
    if schedule.type is ScheduleType.INTERVAL:
        return f"interval ({data})"
    return f"{label} ({data})"


def _render_portals_table(portals: Sequence[PortalConfig]) -> Table:
    table = Table(title=f"Portals · {len(portals)} configured", box=box.SIMPLE_HEAD)
    table.add_column("Portal", style="cyan", no_wrap=True)
    table.add_column("Country")
    table.add_column("Strategy", style="magenta")
    table.add_column("Locations", justify="right")
    table.add_column("Sink", style="green")
    table.add_column("Discovery", style="yellow", overflow="fold")
    table.add_column("Sweep", style="yellow", overflow="fold")
    for portal in portals:
        table.add_row(
            portal.portal,
            portal.country or "-",
            portal.discovery.strategy,
            str(len(Coordinator.locations_for(portal))),
            portal.sink.type,
            _format_schedule(portal.discovery.schedule),
            _format_schedule(portal.staleness.schedule),
        )
    return table


def _render_mapping(title: str, rows: dict[str, object]) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in rows.items():
        table.add_row(key, str(value))
    return table


def _render_jobs_table(jobs: Iterable[dict]) -> Table:
    table = Table(title="Scheduled jobs", box=box.SIMPLE_HEAD)
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Next run", style="green")
    table.add_column("Trigger", style="magenta", overflow="fold")
    for job in jobs:
        table.add_row(str(job.get("id", "-")), str(job.get("next_run_time", "-")), str(job.get("trigger", "-")))
    return table


app.add_typer(portal_app, name="portal")
app.add_typer(discover_app, name="discover")
app.add_typer(worker_app, name="worker")
app.add_typer(verifier_app, name="verifier")
app.add_typer(queue_app, name="queue")
app.add_typer(schedule_app, name="schedule")
app.add_typer(log_app, name="log")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
    redis_url: Optional[str] = typer.Option(
        None, "--redis-url", envvar="LISTING_TRACKER_REDIS_URL", help="Override the configured Redis URL."
    ),
) -> None:
    ctx.obj = build_state(verbose, redis_url)


# ----------------------------------------------------------------------
# portal
# ----------------------------------------------------------------------
@portal_app.command("list", help="List configured portals.")
def portal_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    try:
        portals = state.repository.list_portals()
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1) from exc
    if not portals:
        console.print("No portals configured yet. Add a YAML file under data/portals/.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_portals_table(portals))


@portal_app.command("show", help="Print the effective configuration of a portal.")
def portal_show(ctx: typer.Context, name: str = typer.Argument(..., help="Portal name.")) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    console.print(yaml.safe_dump(portal.model_dump(mode="json"), allow_unicode=True, sort_keys=False))


# ----------------------------------------------------------------------
# discover
# ----------------------------------------------------------------------
def run_discovery(state: AppState, portal: PortalConfig, *, sweep: bool = True, only: Sequence[str] = ()) -> DiscoverySummary:
    """Run one discovery cycle for ``portal`` with signal-driven stop."""

    discoverer: BaseDiscoverer = _build(portal, "discoverer", BaseDiscoverer)
    logger = portal_logger(portal.portal, state.verbose)
    engine = state.engine_for(portal)
    try:
        coordinator = Coordinator(engine, discoverer, portal.discovery, logger=logger)
        locations = Coordinator.locations_for(portal)
        if only:
            wanted = set(only)
            locations = [location for location in locations if location.name in wanted]
        with _graceful_stop(coordinator.stop):
            return coordinator.run_cycle(locations, sweep=sweep, threshold_hours=portal.staleness.threshold_hours)
    finally:
        discoverer.close()
        engine.close()


def run_sweep(state: AppState, portal: PortalConfig, threshold_hours: float | None = None):
    engine = state.engine_for(portal)
    try:
        coordinator = Coordinator(
            engine,
            _NullDiscoverer(),
            portal.discovery,
            logger=portal_logger(portal.portal, state.verbose),
        )
        return coordinator.sweep_staleness(threshold_hours or portal.staleness.threshold_hours)
    finally:
        engine.close()


class _NullDiscoverer(BaseDiscoverer):
    """Placeholder for coordinator runs that only sweep."""

    def discover(self, location, page, page_size):
        raise RuntimeError("sweep-only coordinator cannot discover")


@discover_app.command("run", help="Run one discovery cycle for a portal.")
def discover_run(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    sweep: bool = typer.Option(True, "--sweep/--no-sweep", help="Run the staleness sweep after discovery."),
    location: Optional[list[str]] = typer.Option(None, "--location", "-l", help="Only discover these locations."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard():
        summary = run_discovery(state, portal, sweep=sweep, only=location or ())
    console.print(_render_mapping(f"{portal.portal} · discovery cycle {summary.cycle}", summary.as_dict()))
    if summary.failed_locations:
        console.print("Failed locations: " + ", ".join(summary.failed_locations), style="yellow")


@discover_app.command("sweep", help="Flag listings not seen recently for verification.")
def discover_sweep(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    threshold_hours: Optional[float] = typer.Option(None, "--threshold-hours", min=0.01, help="Override the threshold."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard():
        result = run_sweep(state, portal, threshold_hours)
    console.print(_render_mapping(f"{portal.portal} · staleness sweep", {"found": result.found, "queued": result.queued}))


@discover_app.command("grid", help="Preview the grid cells of a grid-based portal.")
def discover_grid(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    cell_size: Optional[float] = typer.Option(None, "--cell-size", min=0.0001, help="Override the cell size in degrees."),
    limit: int = typer.Option(20, "--limit", min=1, help="Show at most N cells."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    grid = portal.discovery.grid
    if grid is None:
        console.print(f"Portal `{portal.portal}` has no grid configured.", style="yellow")
        raise typer.Exit(code=1)
    cells = generate_grid(cell_size or grid.cell_size_degrees, grid.bounding_box)
    table = Table(title=f"{portal.portal} · {len(cells)} cells", box=box.SIMPLE_HEAD)
    for column in ("#", "Center", "South", "North", "West", "East"):
        table.add_column(column, justify="right")
    for cell in cells[:limit]:
        viewport = cell.viewport
        table.add_row(
            str(cell.index),
            f"{cell.lat:.4f}, {cell.lng:.4f}",
            f"{viewport.south:.4f}",
            f"{viewport.north:.4f}",
            f"{viewport.west:.4f}",
            f"{viewport.east:.4f}",
        )
    console.print(table)


# ----------------------------------------------------------------------
# worker / verifier
# ----------------------------------------------------------------------
def _run_pool(state: AppState, portal: PortalConfig, kind: str, concurrency: int | None) -> dict[str, float]:
    settings = portal.worker
    logger = portal_logger(portal.portal, state.verbose)
    run_tag = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    outputs_dir = state.repository.resolve_path(state.global_config.outputs_dir)
    sink = build_sink(portal, outputs_dir, run_tag=run_tag)
    audit = state.audit()
    fetchers: list[BaseFetcher] = []

    def _factory(index: int) -> QueueConsumer:
        fetcher: BaseFetcher = _build(portal, "fetcher", BaseFetcher)
        fetchers.append(fetcher)
        engine = state.engine_for(portal, settings.poll_timeout_seconds)
        common = dict(
            country=portal.country,
            consumer_id=f"{kind}-{index + 1}",
            audit=audit,
            logger=logger,
        )
        if kind == "verifier":
            return Verifier(engine, fetcher, sink, settings, **common)
        transformer: BaseTransformer = _build(portal, "transformer", BaseTransformer)
        return Worker(engine, fetcher, sink, settings, transformer=transformer, **common)

    pool = WorkerPool(_factory, concurrency or settings.concurrency, thread_name_prefix=f"{portal.portal}-{kind}", logger=logger)
    try:
        with _graceful_stop(pool.stop_all):
            stats = pool.run()
    finally:
        for fetcher in fetchers:
            fetcher.close()
        sink.flush()
        sink.close()
    return WorkerPool.aggregate(stats)


@worker_app.command("run", help="Drain the work queue of a portal.")
def worker_run(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Number of worker threads."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard():
        totals = _run_pool(state, portal, "worker", concurrency)
    console.print(_render_mapping(f"{portal.portal} · worker results", totals))


@verifier_app.command("run", help="Drain the missing-listing partition of a portal.")
def verifier_run(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Number of verifier threads."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard():
        totals = _run_pool(state, portal, "verifier", concurrency)
    console.print(_render_mapping(f"{portal.portal} · verifier results", totals))


# ----------------------------------------------------------------------
# queue
# ----------------------------------------------------------------------
@queue_app.command("stats", help="Show queue counters for a portal.")
def queue_stats(ctx: typer.Context, name: str = typer.Argument(..., help="Portal name.")) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard(), state.engine_for(portal) as engine:
        stats = engine.stats()
    console.print(_render_mapping(f"{portal.portal} · queue", stats.as_dict()))


@queue_app.command("inspect", help="Show the stored state and history of one listing.")
def queue_inspect(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    listing_id: str = typer.Argument(..., help="Listing identifier."),
    limit: int = typer.Option(10, "--limit", min=1, help="History rows to show."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    with _store_guard(), state.engine_for(portal) as engine:
        record = engine.get_record(listing_id)
    if record is None:
        console.print(f"Listing `{listing_id}` is unknown to `{portal.portal}`.", style="yellow")
        raise typer.Exit(code=1)
    console.print(
        _render_mapping(
            f"{portal.portal} · {listing_id}",
            {
                "state": record.state.value,
                "retry_count": record.retry_count,
                "last_seen_at": record.last_seen_at.isoformat() if record.last_seen_at else "-",
                "snapshot_hash": record.snapshot_hash or "-",
                "processed_cycle": record.processed_cycle if record.processed_cycle is not None else "-",
                "failure_reason": record.failure_reason or "-",
                "metadata": record.metadata,
            },
        )
    )
    audit = state.audit()
    if audit is None:
        return
    rows = audit.history(portal.portal, listing_id, limit=limit)
    if not rows:
        console.print("No history recorded.", style="dim")
        return
    table = Table(title="History", box=box.SIMPLE_HEAD)
    table.add_column("Recorded at", style="green")
    table.add_column("Event", style="cyan")
    table.add_column("Digest", overflow="fold")
    table.add_column("Detail", overflow="fold")
    for row in rows:
        table.add_row(row["recorded_at"], row["event"], (row["digest"] or "-")[:16], row["detail"] or "")
    console.print(table)


@queue_app.command("reset-failed", help="Return failed listings to the work queue.")
def queue_reset_failed(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    listing_ids: Optional[list[str]] = typer.Argument(None, help="Only reset these ids (default: all failed)."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    if not yes and not typer.confirm(f"Requeue failed listings of `{portal.portal}`?", default=False):
        console.print("Cancelled.", style="yellow")
        raise typer.Exit(code=0)
    with _store_guard(), state.engine_for(portal) as engine:
        count = engine.reset_failed(listing_ids or None)
    console.print(f"Requeued {count} failed listings.", style="green")


@queue_app.command("release-inflight", help="Requeue ids held by consumers that are no longer running.")
def queue_release_inflight(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portal name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    state = _get_state(ctx)
    portal = _load_portal(state, name)
    if not yes and not typer.confirm(
        f"Release in-flight ids of `{portal.portal}`? Only do this while no worker is running.", default=False
    ):
        console.print("Cancelled.", style="yellow")
        raise typer.Exit(code=0)
    with _store_guard(), state.engine_for(portal) as engine:
        count = engine.release_inflight()
    console.print(f"Released {count} in-flight listings.", style="green")


# ----------------------------------------------------------------------
# schedule
# ----------------------------------------------------------------------
@schedule_app.command("serve", help="Run discovery and sweep jobs on their configured schedules.")
def schedule_serve(
    ctx: typer.Context,
    names: Optional[list[str]] = typer.Argument(None, help="Portals to schedule (default: all)."),
) -> None:
    state = _get_state(ctx)
    portals = [_load_portal(state, name) for name in names] if names else state.repository.list_portals()
    if not portals:
        console.print("No portals to schedule.", style="yellow")
        raise typer.Exit(code=0)

    def _discover_job(portal: PortalConfig) -> None:
        logger = portal_logger(portal.portal, state.verbose, component="schedule")
        try:
            summary = run_discovery(state, portal, sweep=False)
            logger.info("scheduled_discovery_done", **summary.as_dict())
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduled_discovery_failed", error=str(exc))

    def _sweep_job(portal: PortalConfig) -> None:
        logger = portal_logger(portal.portal, state.verbose, component="schedule")
        try:
            result = run_sweep(state, portal)
            logger.info("scheduled_sweep_done", found=result.found, queued=result.queued)
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduled_sweep_failed", error=str(exc))

    scheduler = APSchedulerAdapter()
    for portal in portals:
        scheduler.schedule_portal(portal, _discover_job, _sweep_job)
    scheduler.start()
    console.print(_render_jobs_table(scheduler.list_jobs()))

    stop = threading.Event()
    with _graceful_stop(stop.set):
        try:
            while not stop.wait(1.0):
                pass
        finally:
            scheduler.shutdown()


# ----------------------------------------------------------------------
# log
# ----------------------------------------------------------------------
@log_app.command("list", help="List available log files.")
def log_list() -> None:
    logs = list(available_portal_logs())
    if not logs:
        console.print("No portal logs yet.", style="dim")
        return
    table = Table(title="Portal logs", box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    table.add_column("Size", justify="right")
    for path in logs:
        table.add_row(path.name, str(path.stat().st_size))
    console.print(table)


@log_app.command("show", help="Show the tail of a log file.")
def log_show(
    portal: Optional[str] = typer.Option(None, "--portal", "-p", help="Portal name (default: global log)."),
    tail: int = typer.Option(100, "--tail", "-n", min=1, help="Show the last N lines."),
    errors: bool = typer.Option(False, "--errors", help="Show the error log instead."),
) -> None:
    base_dir: Path = log_dir()
    if portal:
        path = base_dir / "portals" / f"{portal}.log"
    elif errors:
        path = base_dir / "error.log"
    else:
        path = base_dir / "tracker.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print("No log entries yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
