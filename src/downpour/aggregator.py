import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator

from .errors import SinkClosedError
from .models import Outcome, OperationKind, TimelineType
from .utils import size_class_label

logger = logging.getLogger(__name__)

DROP_LOG_INTERVAL = 100  # warn on the first drop and every Nth after it
FLUSH_INTERVAL_S = 0.1


class OutcomeSink:
    """Fixed-capacity outcome sink shared by all workers.

    Producers call ``note_dispatch`` and ``push``; neither ever waits.
    A single consumer reads through ``drain``/``batches``. ``close`` must
    only be called once every producer has exited.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._queue: asyncio.Queue[Outcome] = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._dispatched = 0
        self._accepted = 0
        self._dropped = 0
        self._written_bytes = 0

    @property
    def dispatched(self) -> int:
        return self._dispatched

    @property
    def accepted(self) -> int:
        return self._accepted

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def written_bytes(self) -> int:
        """Payload bytes of successful writes, counted whether or not the outcome was kept."""
        return self._written_bytes

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._queue.qsize()

    # ────────────────────────────────
    # Producer side
    # ────────────────────────────────

    def note_dispatch(self) -> None:
        if self._closed:
            raise SinkClosedError("dispatch recorded after the sink was closed")
        self._dispatched += 1

    def push(self, outcome: Outcome) -> bool:
        """Enqueue without blocking. Returns False if the outcome was dropped."""
        if self._closed:
            raise SinkClosedError("push after the sink was closed")
        if outcome.success and outcome.operation.kind is OperationKind.WRITE:
            self._written_bytes += outcome.operation.payload_size
        try:
            self._queue.put_nowait(outcome)
        except asyncio.QueueFull:
            self._dropped += 1
            if self._dropped % DROP_LOG_INTERVAL == 1:
                logger.warning(
                    f"Outcome sink full (capacity={self.capacity}), "
                    f"dropped {self._dropped} outcome(s) so far"
                )
            return False
        self._accepted += 1
        return True

    # ────────────────────────────────
    # Consumer side
    # ────────────────────────────────

    def drain(self) -> list[Outcome]:
        batch = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return batch

    def close(self) -> None:
        if self._closed:
            raise SinkClosedError("sink closed twice")
        self._closed = True
        logger.debug(
            f"Sink closed: dispatched={self._dispatched}, accepted={self._accepted}, "
            f"dropped={self._dropped}, pending={self._queue.qsize()}"
        )

    async def batches(self, flush_interval_s: float = FLUSH_INTERVAL_S) -> AsyncIterator[list[Outcome]]:
        """Yield drained batches until the sink is closed and empty."""
        while True:
            batch = self.drain()
            if batch:
                yield batch
                continue
            if self._closed:
                return
            try:
                first = await asyncio.wait_for(self._queue.get(), timeout=flush_interval_s)
            except asyncio.TimeoutError:
                continue
            yield [first, *self.drain()]


class OutcomeTally:
    """Consumer-side accumulation of drained outcomes."""

    def __init__(self, t0: float):
        self.t0 = t0
        self.observed = 0
        self.success: dict[OperationKind, int] = defaultdict(int)
        self.failure: dict[OperationKind, int] = defaultdict(int)
        # (kind, size) -> successful durations
        self.durations: dict[tuple[OperationKind, int], list[float]] = defaultdict(list)
        self.class_failures: dict[tuple[OperationKind, int], int] = defaultdict(int)
        self.errors: dict[str, int] = defaultdict(int)
        self.status_counts: dict[int, int] = defaultdict(int)
        self.bytes_sent = 0
        self.bytes_received = 0
        self.write_bytes = 0
        self.timeline: TimelineType = defaultdict(list)
        self._frozen = False

    def add(self, outcome: Outcome) -> None:
        if self._frozen:
            raise RuntimeError("tally is frozen")
        op = outcome.operation
        size = 0 if op.kind is OperationKind.LIST else op.payload_size
        key = (op.kind, size)
        self.observed += 1

        if outcome.status is not None:
            self.status_counts[outcome.status] += 1
        self.bytes_sent += outcome.bytes_sent
        self.bytes_received += outcome.bytes_received

        if outcome.success:
            self.success[op.kind] += 1
            self.durations[key].append(outcome.duration_s)
            if op.kind is OperationKind.WRITE:
                self.write_bytes += op.payload_size
        else:
            self.failure[op.kind] += 1
            self.class_failures[key] += 1
            self.errors[outcome.error_detail or "unknown"] += 1

        if outcome.duration_s is not None:
            start_rel = outcome.started_at - self.t0
            self.timeline[op.worker_id].append(
                (start_rel, start_rel + outcome.duration_s, size_class_label(op.kind, size), outcome.status)
            )

    def extend(self, outcomes: list[Outcome]) -> None:
        for outcome in outcomes:
            self.add(outcome)

    def freeze(self) -> "OutcomeTally":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen
