"""
Delayed redelivery scheduling.

When a retry record arrives before it is due, the partition it came from is
paused and resumed once the record's due time passes. Holds are kept in a
min-heap served by a single background waiter task, so the number of
timers does not grow with retry volume.
"""

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from aiokafka.structs import TopicPartition

from kafka_retry.logging import get_logger, log_exception, log_with_context
from kafka_retry.message import now_ms

logger = get_logger(__name__)


class PartitionController(ABC):
    """Pauses and resumes delivery of a single partition."""

    @abstractmethod
    def pause(self, tp: TopicPartition) -> None:
        ...

    @abstractmethod
    def resume(self, tp: TopicPartition) -> None:
        ...


class DelayScheduler:
    """
    Holds partitions paused until their pending retry record is due.

    Multiple holds on the same partition collapse to the earliest due time.
    Resuming early is safe: the orchestrator re-checks the due time and
    holds again if needed.

    Usage:
        >>> scheduler = DelayScheduler(controller)
        >>> scheduler.hold_until(TopicPartition("orders.retry.1", 0), ready_at_ms)
        >>> ...
        >>> await scheduler.cancel()  # on shutdown, partitions stay paused
    """

    def __init__(
        self,
        controller: PartitionController,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize scheduler.

        Args:
            controller: Object that pauses/resumes partitions (the consumer)
            clock: Epoch-millisecond clock, injectable for tests
        """
        self._controller = controller
        self._clock = clock
        self._heap: List[Tuple[int, int, TopicPartition]] = []
        self._pending: Dict[TopicPartition, int] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._waiter: Optional[asyncio.Task] = None
        self._cancelled = False

    def hold_until(self, tp: TopicPartition, ready_at: int) -> None:
        """
        Pause ``tp`` and schedule its resume at ``ready_at`` (epoch ms).

        If the partition is already held, the earlier of the two due times
        wins.
        """
        if self._cancelled:
            log_with_context(
                logger,
                logging.DEBUG,
                "Scheduler cancelled, ignoring hold",
                topic=tp.topic,
                partition=tp.partition,
            )
            return

        current = self._pending.get(tp)
        if current is None:
            try:
                self._controller.pause(tp)
            except Exception as e:
                # Partition revoked between fetch and hold; nothing to resume
                log_exception(
                    logger,
                    e,
                    "Failed to pause partition",
                    level=logging.WARNING,
                    topic=tp.topic,
                    partition=tp.partition,
                )
                return
        elif current <= ready_at:
            return

        self._pending[tp] = ready_at
        heapq.heappush(self._heap, (ready_at, next(self._seq), tp))

        log_with_context(
            logger,
            logging.DEBUG,
            "Partition held until retry is due",
            topic=tp.topic,
            partition=tp.partition,
            ready_at=ready_at,
            delay_ms=max(ready_at - self._clock(), 0),
        )

        self._ensure_waiter()
        self._wakeup.set()

    def release(self, tp: TopicPartition) -> None:
        """Forget a pending hold without resuming (e.g. partition revoked)."""
        self._pending.pop(tp, None)

    def release_due(self) -> List[TopicPartition]:
        """
        Resume every partition whose hold is due. Returns the resumed partitions.

        Called by the background waiter; exposed for deterministic tests.
        """
        now = self._clock()
        resumed: List[TopicPartition] = []
        while self._heap and self._heap[0][0] <= now:
            due, _, tp = heapq.heappop(self._heap)
            if self._pending.get(tp) != due:
                # Superseded by an earlier hold or released
                continue
            del self._pending[tp]
            self._resume(tp)
            resumed.append(tp)
        return resumed

    def _resume(self, tp: TopicPartition) -> None:
        try:
            self._controller.resume(tp)
            log_with_context(
                logger,
                logging.DEBUG,
                "Partition resumed",
                topic=tp.topic,
                partition=tp.partition,
            )
        except Exception as e:
            # Partition may have been revoked while held
            log_exception(
                logger,
                e,
                "Failed to resume partition",
                level=logging.WARNING,
                topic=tp.topic,
                partition=tp.partition,
            )

    def _ensure_waiter(self) -> None:
        if self._waiter is None or self._waiter.done():
            self._waiter = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self._cancelled:
            self._wakeup.clear()
            self.release_due()

            if not self._heap:
                await self._wakeup.wait()
                continue

            timeout = max(self._heap[0][0] - self._clock(), 0) / 1000
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def cancel(self) -> None:
        """
        Cancel all pending resumes. Partitions stay paused. Idempotent.
        """
        if self._cancelled:
            return
        self._cancelled = True

        held = len(self._pending)
        self._pending.clear()
        self._heap.clear()

        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.cancel()
            try:
                await waiter
            except asyncio.CancelledError:
                pass

        log_with_context(
            logger,
            logging.INFO,
            "Delay scheduler cancelled",
            held_partitions=held,
        )

    def is_held(self, tp: TopicPartition) -> bool:
        return tp in self._pending

    @property
    def pending(self) -> Dict[TopicPartition, int]:
        """Snapshot of held partitions and their due times."""
        return dict(self._pending)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


__all__ = [
    "PartitionController",
    "DelayScheduler",
]
