"""
Process-wide bandwidth throttling using a token bucket.
"""
import logging
import threading
import time
from typing import Callable, Optional

from .errors import UploadCancelled

logger = logging.getLogger(__name__)

REFILL_INTERVAL = 0.1


class BandwidthThrottler:
    """Token bucket shared by every byte-sending path of the process.

    The bucket holds at most one second worth of bytes. A capacity of 0
    disables throttling entirely.

    Args:
        bytes_per_second: Maximum sustained rate, 0 for unlimited
        clock: Monotonic time source, injectable for tests
        sleep: Sleep function used when no cancel event is supplied
    """

    def __init__(self, bytes_per_second: int = 0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if bytes_per_second < 0:
            raise ValueError("bytes_per_second cannot be negative")
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._capacity = int(bytes_per_second)
        self._available = self._capacity
        self._last_refill = clock()
        self._throttled_bytes = 0
        self._delay_time = 0.0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_enabled(self) -> bool:
        return self._capacity > 0

    @property
    def available_tokens(self) -> int:
        with self._lock:
            self._refill()
            return self._available

    @property
    def throttled_bytes(self) -> int:
        return self._throttled_bytes

    @property
    def delay_time(self) -> float:
        return self._delay_time

    def set_limit(self, bytes_per_second: int) -> None:
        if bytes_per_second < 0:
            raise ValueError("bytes_per_second cannot be negative")
        with self._lock:
            self._capacity = int(bytes_per_second)
            self._available = min(self._available, self._capacity)
        logger.info(f"Bandwidth limit set to {self.describe_limit()}")

    def set_limit_mbps(self, mbps: float) -> None:
        self.set_limit(int(mbps * 1024 * 1024))

    def disable(self) -> None:
        with self._lock:
            self._capacity = 0
        logger.info("Bandwidth throttling disabled")

    def describe_limit(self) -> str:
        if self._capacity <= 0:
            return "Unlimited"
        return f"{self._capacity / (1024 * 1024):.2f} MiB/s"

    def _refill(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed >= REFILL_INTERVAL:
            tokens = int(elapsed * self._capacity)
            self._available = min(self._available + tokens, self._capacity)
            self._last_refill = now

    def request_bytes(self, requested: int) -> int:
        """Grant up to `requested` bytes without blocking.

        Returns:
            Number of bytes the caller may send now, possibly 0
        """
        if requested <= 0:
            return 0
        with self._lock:
            if self._capacity <= 0:
                return requested
            self._refill()
            granted = min(requested, self._available)
            self._available -= granted
            return granted

    def wait_for_bytes(self, requested: int,
                       cancel_event: Optional[threading.Event] = None) -> None:
        """Block until `requested` bytes have been granted.

        Waiting happens outside the lock so other transfers keep drawing
        from the bucket.

        Raises:
            UploadCancelled: If cancel_event is set while waiting
        """
        remaining = requested
        while remaining > 0:
            if cancel_event is not None and cancel_event.is_set():
                raise UploadCancelled("Cancelled while waiting for bandwidth")

            remaining -= self.request_bytes(remaining)
            if remaining <= 0:
                break

            with self._lock:
                capacity = self._capacity
                available = self._available
            if capacity <= 0:
                break

            needed = min(remaining, capacity) - available
            delay = max(needed / capacity, REFILL_INTERVAL)
            with self._lock:
                self._throttled_bytes += min(remaining, capacity)
                self._delay_time += delay

            if cancel_event is None:
                self._sleep(delay)
            elif cancel_event.wait(delay):
                raise UploadCancelled("Cancelled while waiting for bandwidth")

    def estimated_wait_time(self, requested: int) -> float:
        with self._lock:
            if self._capacity <= 0:
                return 0.0
            self._refill()
            if requested <= self._available:
                return 0.0
            return (requested - self._available) / self._capacity

    def reset_stats(self) -> None:
        with self._lock:
            self._throttled_bytes = 0
            self._delay_time = 0.0
