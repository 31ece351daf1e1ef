import asyncio
import logging
from typing import Optional


logger = logging.getLogger(__name__)

RAMP_START_FRACTION = 0.2
MIN_RATE = 0.1


class TokenBucket:
    """Caps the global dispatch rate. A background task refills a single
    token slot; workers take one token per Operation."""

    def __init__(self, rate_per_sec: float, ramp_up_s: float = 0.0) -> None:
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        self.rate = rate_per_sec
        self.q: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.ramp_up_s = ramp_up_s
        self._start_t: Optional[float] = None
        logger.debug(f"Created token bucket: rate={rate_per_sec}, ramp_up={ramp_up_s}s")

    async def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._start_t = asyncio.get_running_loop().time()
            self._task = asyncio.create_task(self._run())
            logger.info(f"Token bucket started at {self.rate:.2f} req/s")

    async def stop(self) -> None:
        if self._task:
            self._stop.set()
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.debug("Token bucket stopped")

    async def acquire(self) -> None:
        await self.q.get()
        self.q.task_done()

    def current_rate(self) -> float:
        if self.ramp_up_s <= 0 or self._start_t is None:
            return self.rate
        elapsed = max(0.0, asyncio.get_running_loop().time() - self._start_t)
        base = RAMP_START_FRACTION * self.rate
        r = base + (self.rate - base) * min(1.0, elapsed / self.ramp_up_s)
        return max(MIN_RATE, r)

    async def _run(self) -> None:
        try:
            while not self._stop.is_set():
                delay = 1.0 / self.current_rate()
                if self.q.full():
                    await asyncio.sleep(min(0.01, delay))
                    continue
                self.q.put_nowait(None)
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Token bucket run loop cancelled")
            raise
