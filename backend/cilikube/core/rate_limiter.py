import asyncio
import threading
import time


class RateLimiter:
    """Token bucket limiter compatible with asyncio.

    ``rate`` tokens are added per ``interval`` seconds up to ``burst``. The
    bucket state is guarded by a plain thread lock held only for arithmetic,
    so waiting callers sleep without holding anything.
    """

    def __init__(self, rate: float, interval: float = 1.0, burst: int | None = None) -> None:
        if rate <= 0:
            raise ValueError("rate must be greater than zero")
        self._rate = float(rate)
        self._interval = interval
        self._burst = float(burst if burst is not None else rate)
        if self._burst < 1:
            raise ValueError("burst must be at least one")
        self._tokens = self._burst
        self._updated_at = time.monotonic()
        self._lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return int(self._burst)

    async def acquire(self) -> None:
        while True:
            wait = self._try_take()
            if wait <= 0:
                return
            await asyncio.sleep(wait)

    def try_acquire(self) -> bool:
        return self._try_take() <= 0

    def _try_take(self) -> float:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) * self._interval / self._rate

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated_at
        tokens_to_add = elapsed * (self._rate / self._interval)
        if tokens_to_add > 0:
            self._tokens = min(self._burst, self._tokens + tokens_to_add)
            self._updated_at = now
