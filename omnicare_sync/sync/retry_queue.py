"""
Retry/backoff queue.

Holds operations that could not complete and retries them with exponential
backoff. An item becomes eligible once ``now - timestamp >= backoff_ms``;
eligible items run high priority first, FIFO within a tier. Items leave the
queue exactly once: on success, on a non-retryable failure, or after
exhausting ``max_retries``.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from omnicare_sync.core.exceptions import NotFoundError
from omnicare_sync.models.sync import RetryQueueItem, monotonic_ms
from omnicare_sync.monitoring import metrics
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)


class FailureOutcome(Enum):
    """What ``report_failure`` did with the item."""

    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"


@dataclass
class DrainReport:
    """Outcome of one drain pass, by item id."""

    attempted: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class RetryQueue:
    """Exponential-backoff task queue."""

    def __init__(
        self,
        initial_backoff_ms: float = 1000,
        multiplier: float = 2.0,
        max_backoff_ms: float = 30_000,
        max_retries: int = 3,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize the queue.

        Args:
            initial_backoff_ms: Wait floor for a fresh item
            multiplier: Backoff growth factor per failure
            max_backoff_ms: Backoff cap
            max_retries: Default attempts before an item is dropped
            clock: Millisecond clock, monotonic by default
        """
        self.initial_backoff_ms = initial_backoff_ms
        self.multiplier = multiplier
        self.max_backoff_ms = max_backoff_ms
        self.max_retries = max_retries
        self._clock = clock or monotonic_ms
        self._items: Dict[str, RetryQueueItem] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._draining = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._timer: Optional["asyncio.Task[None]"] = None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    @property
    def is_draining(self) -> bool:
        """Whether a drain pass is in flight."""
        return self._draining

    def now(self) -> float:
        """Current time on the queue's clock."""
        return self._clock()

    def enqueue(self, item: RetryQueueItem) -> RetryQueueItem:
        """Insert an item, replacing any earlier item with the same id."""
        if item.backoff_ms is None:
            item.backoff_ms = self.initial_backoff_ms
        if item.timestamp is None:
            item.timestamp = self._clock()
        replaced = item.id in self._items
        self._items[item.id] = item
        self._sequence[item.id] = next(self._counter)
        metrics.retry_queue_depth.set(len(self._items))
        logger.debug(
            "retry_item_enqueued",
            item_id=item.id,
            priority=item.priority.value,
            replaced=replaced,
        )
        return item

    def get(self, item_id: str) -> Optional[RetryQueueItem]:
        """Look up an item by id."""
        return self._items.get(item_id)

    def items(self) -> List[RetryQueueItem]:
        """All items in execution order, ready or not."""
        return sorted(self._items.values(), key=self._sort_key)

    def _sort_key(self, item: RetryQueueItem) -> tuple:
        return (item.priority.rank, item.timestamp, self._sequence[item.id])

    def dequeue_ready(self, now: Optional[float] = None) -> List[RetryQueueItem]:
        """Items whose backoff has elapsed, in priority/FIFO order. Does not remove."""
        now = self._clock() if now is None else now
        ready = [
            item
            for item in self._items.values()
            if now - (item.timestamp or 0) >= (item.backoff_ms or 0)
        ]
        return sorted(ready, key=self._sort_key)

    def remove(self, item_id: str) -> Optional[RetryQueueItem]:
        """Drop an item without recording an outcome."""
        item = self._items.pop(item_id, None)
        self._sequence.pop(item_id, None)
        metrics.retry_queue_depth.set(len(self._items))
        return item

    def report_success(self, item_id: str) -> RetryQueueItem:
        """Remove an item after a successful attempt."""
        item = self.remove(item_id)
        if item is None:
            raise NotFoundError(f"Retry item {item_id} not queued")
        return item

    def report_failure(self, item_id: str, now: Optional[float] = None) -> FailureOutcome:
        """Record a failed attempt and reschedule or drop the item."""
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Retry item {item_id} not queued")

        item.retry_count += 1
        if item.retry_count >= item.max_retries:
            self.remove(item_id)
            logger.warning(
                "retry_item_exhausted", item_id=item_id, attempts=item.retry_count
            )
            return FailureOutcome.EXHAUSTED

        item.backoff_ms = min(
            (item.backoff_ms or self.initial_backoff_ms) * self.multiplier,
            self.max_backoff_ms,
        )
        item.timestamp = self._clock() if now is None else now
        logger.info(
            "retry_scheduled",
            item_id=item_id,
            attempt=item.retry_count,
            backoff_ms=item.backoff_ms,
        )
        return FailureOutcome.RETRY_SCHEDULED

    async def drain(
        self,
        now: Optional[float] = None,
        predicate: Optional[Callable[[RetryQueueItem], bool]] = None,
        limit: Optional[int] = None,
    ) -> Optional[DrainReport]:
        """Attempt every ready item once, or at most ``limit`` of them.

        Returns None without doing anything when a drain is already running.
        """
        if self._draining:
            logger.debug("drain_already_running")
            return None

        self._draining = True
        self._idle.clear()
        report = DrainReport()
        try:
            for item in self.dequeue_ready(now):
                if limit is not None and len(report.attempted) >= limit:
                    break
                if item.id not in self._items:
                    continue
                if predicate is not None and not predicate(item):
                    report.skipped.append(item.id)
                    continue
                report.attempted.append(item.id)
                await self._attempt(item, report, now)
            return report
        finally:
            self._draining = False
            self._idle.set()

    async def _attempt(
        self, item: RetryQueueItem, report: DrainReport, now: Optional[float]
    ) -> None:
        try:
            await item.action()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if self._items.get(item.id) is not item:
                # Replaced or removed while running; the new entry stands
                return
            if getattr(exc, "retryable", False):
                outcome = self.report_failure(item.id, now)
                if outcome == FailureOutcome.EXHAUSTED:
                    report.exhausted.append(item.id)
                    if item.on_exhausted is not None:
                        await item.on_exhausted(item, exc)
                else:
                    report.retrying.append(item.id)
            else:
                self.remove(item.id)
                report.rejected.append(item.id)
                logger.warning(
                    "retry_item_rejected",
                    item_id=item.id,
                    error=type(exc).__name__,
                )
            return

        if self._items.get(item.id) is item:
            self.report_success(item.id)
        report.succeeded.append(item.id)

    async def wait_idle(self) -> None:
        """Wait for an in-flight drain to finish."""
        await self._idle.wait()

    def start(
        self,
        interval_ms: float = 500,
        should_run: Optional[Callable[[], bool]] = None,
        predicate: Optional[Callable[[RetryQueueItem], bool]] = None,
        limit: Optional[int] = None,
    ) -> None:
        """Start the periodic retry check.

        Each tick drains with ``predicate`` and ``limit`` as ``drain`` does.
        """
        if self._timer is None:
            self._timer = asyncio.create_task(
                self._run_timer(interval_ms, should_run, predicate, limit)
            )

    async def stop(self) -> None:
        """Stop the periodic retry check."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

    async def _run_timer(
        self,
        interval_ms: float,
        should_run: Optional[Callable[[], bool]],
        predicate: Optional[Callable[[RetryQueueItem], bool]],
        limit: Optional[int],
    ) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            if not self._items or (should_run is not None and not should_run()):
                continue
            try:
                await self.drain(predicate=predicate, limit=limit)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error("retry_tick_failed", exc_info=True)
