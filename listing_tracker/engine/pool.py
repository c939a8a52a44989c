"""Run several consumers side by side on a thread pool."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Callable, Dict, List

import structlog

from ..logging_conf import configure_logging
from .consumer import ConsumerStats, QueueConsumer

ConsumerFactory = Callable[[int], QueueConsumer]


class WorkerPool:
    """Manage N independent consumers, each owning its own engine connection."""

    def __init__(
        self,
        factory: ConsumerFactory,
        concurrency: int = 1,
        *,
        thread_name_prefix: str = "listing-worker",
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.factory = factory
        self.concurrency = concurrency
        self.thread_name_prefix = thread_name_prefix
        self.logger = (logger or configure_logging()).bind(component="pool")
        self._consumers: List[QueueConsumer] = []
        self._lock = Lock()
        self._stopping = False

    @property
    def consumers(self) -> List[QueueConsumer]:
        with self._lock:
            return list(self._consumers)

    def run(self) -> List[ConsumerStats]:
        """Start every consumer and block until all of them have exited.

        The first consumer failure is re-raised once the others finish.
        """

        with self._lock:
            self._consumers = [self.factory(index) for index in range(self.concurrency)]
            consumers = list(self._consumers)
            if self._stopping:
                for consumer in consumers:
                    consumer.stop()
        self.logger.info("pool_started", concurrency=self.concurrency)

        futures: Dict[Future, QueueConsumer] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=self.thread_name_prefix) as executor:
            for consumer in consumers:
                futures[executor.submit(consumer.run)] = consumer
            wait(futures)

        first_error: BaseException | None = None
        for future, consumer in futures.items():
            exc = future.exception()
            if exc is not None:
                self.logger.error("consumer_crashed", consumer_id=consumer.consumer_id, error=str(exc))
                if first_error is None:
                    first_error = exc
        stats = [consumer.stats() for consumer in consumers]
        self.logger.info("pool_finished", **self.aggregate(stats))
        if first_error is not None:
            raise first_error
        return stats

    def stop_all(self) -> None:
        with self._lock:
            self._stopping = True
            consumers = list(self._consumers)
        for consumer in consumers:
            consumer.stop()

    @staticmethod
    def aggregate(stats: List[ConsumerStats]) -> Dict[str, float]:
        keys = ("processed", "changed", "unchanged", "failed", "requeued", "skipped", "restored", "inactive", "errors")
        totals: Dict[str, float] = {key: sum(getattr(item, key) for item in stats) for key in keys}
        totals["consumers"] = len(stats)
        totals["change_rate"] = round(totals["changed"] / totals["processed"], 4) if totals["processed"] else 0.0
        return totals


__all__ = ["ConsumerFactory", "WorkerPool"]
