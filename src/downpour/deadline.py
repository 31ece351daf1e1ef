import asyncio
import logging
from collections.abc import Awaitable

from .utils import now

logger = logging.getLogger(__name__)

REASON_DEADLINE = "deadline"


class DeadlineController:
    """Shared cancellation signal for one run.

    Fires once, either when ``budget_s`` elapses after ``start`` or when
    ``request_stop`` is called. Workers only read it.
    """

    def __init__(self, budget_s: float, grace_period_s: float):
        if budget_s <= 0:
            raise ValueError("budget_s must be positive")
        self.budget_s = budget_s
        self.grace_period_s = grace_period_s
        self._event = asyncio.Event()
        self._handle: asyncio.TimerHandle | None = None
        self._started_at: float | None = None
        self.fired_at: float | None = None
        self.reason: str | None = None

    def start(self) -> None:
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._started_at = now()
        self._handle = loop.call_later(self.budget_s, self._fire, REASON_DEADLINE)
        logger.debug(f"Deadline armed: budget={self.budget_s}s, grace={self.grace_period_s}s")

    def stop(self) -> None:
        """Disarm the timer without firing."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def request_stop(self, reason: str = "stop requested") -> None:
        self._fire(reason)

    def _fire(self, reason: str) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.fired_at = now()
        self._event.set()
        if reason == REASON_DEADLINE:
            logger.warning(f"Global budget of {self.budget_s}s elapsed, cancelling workers")
        else:
            logger.info(f"Early termination: {reason}")
        self.stop()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.reason == REASON_DEADLINE

    @property
    def remaining_s(self) -> float | None:
        if self._started_at is None:
            return None
        return max(0.0, self.budget_s - (now() - self._started_at))

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, aw: Awaitable) -> bool:
        """Await ``aw`` unless the signal fires first. Returns False (and
        cancels ``aw``) when cancelled."""
        if self.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            return False
        task = asyncio.ensure_future(aw)
        waiter = asyncio.create_task(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            task.result()
            return True
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False
