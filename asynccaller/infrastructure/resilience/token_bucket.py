"""Implementation of a token bucket rate limiter.

Controls the frequency of outgoing calls. The bucket holds up to ``capacity``
tokens, one consumed per call, refilled by ``fill_per_window`` every
``window_in_ms``. A server directive (e.g. ``Retry-After``) can force the
bucket idle for a fixed delay, during which no token is handed out.

All state lives on the event loop thread; refill and forced-pause timers are
``loop.call_later`` handles owned by the bucket and started/stopped explicitly.
Timers and waiters belong to the loop that created them. When the bucket is
used from a different loop (e.g. a second ``asyncio.run``), they are moved
over to the new loop.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional, Tuple

from asynccaller.domain.errors import ConfigurationError
from asynccaller.domain.models.options import TokenBucketOptions

logger = logging.getLogger(__name__)

# How often (seconds) verbose mode reports remaining tokens while refilling.
REMAINING_TOKENS_REPORT_INTERVAL_S = 10.0


class TokenBucket:
    """Token bucket with non-blocking and awaitable consumption."""

    def __init__(self, options: TokenBucketOptions, verbose: bool = False):
        """Initializes the bucket.

        Args:
            options: Capacity, refill rate and initial tokens.
            verbose: Log status messages at INFO instead of DEBUG.

        Raises:
            ConfigurationError: If the options are out of bounds.
        """
        self.validate(options)
        self.verbose = verbose
        self._log_level = logging.INFO if verbose else logging.DEBUG
        self._capacity = options.capacity
        self._fill_per_window = options.fill_per_window
        self._window_s = options.window_in_ms / 1000
        self._tokens = options.capacity if options.initial_tokens is None else options.initial_tokens
        self._wait_queue: Deque[Tuple[int, asyncio.Future]] = deque()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._refill_handle: Optional[asyncio.TimerHandle] = None
        self._pause_handle: Optional[asyncio.TimerHandle] = None
        self._next_refill_at: Optional[float] = None
        self._last_report_at: Optional[float] = None
        self._ongoing_forced_stop = False
        logger.debug(
            f"TokenBucket initialized: capacity={self._capacity}, "
            f"fill={self._fill_per_window} / {options.window_in_ms}ms, tokens={self._tokens}"
        )

    @staticmethod
    def validate(options: TokenBucketOptions) -> None:
        """Checks option bounds, raising ConfigurationError on the first violation."""
        if options is None:
            raise ConfigurationError("Options are required")
        if options.capacity <= 0:
            raise ConfigurationError("Capacity must be greater than 0")
        if options.fill_per_window <= 0:
            raise ConfigurationError("Fill per window must be greater than 0")
        if options.window_in_ms <= 0:
            raise ConfigurationError("Window in ms must be greater than 0")
        if options.initial_tokens is not None and not 0 <= options.initial_tokens <= options.capacity:
            raise ConfigurationError("Initial tokens must be between 0 and capacity")
        if options.fill_per_window > options.capacity:
            raise ConfigurationError("Fill per window must be less than or equal to capacity")

    # --- Properties ---

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def tokens(self) -> int:
        return self._tokens

    @property
    def is_paused(self) -> bool:
        """True while a forced pause is in progress."""
        return self._ongoing_forced_stop

    @property
    def is_refilling(self) -> bool:
        """True while the refill timer is scheduled."""
        return self._refill_handle is not None

    @property
    def waiting(self) -> int:
        """Number of pending ``consume_async`` waiters."""
        return sum(1 for _, waiter in self._wait_queue if not waiter.done())

    @property
    def next_refill_in_ms(self) -> Optional[float]:
        """Milliseconds until the next refill (or pause end), None if unknown."""
        if self._next_refill_at is None:
            return None
        try:
            now = asyncio.get_running_loop().time()
        except RuntimeError:
            return None
        return max(self._next_refill_at - now, 0.0) * 1000

    # --- Timer lifecycle ---

    def start(self) -> "TokenBucket":
        """Starts the refill timer if it is not running.

        Returns:
            This instance, to allow chaining.
        """
        return self._start_internal()

    def stop(self) -> None:
        """Stops the refill timer. Idempotent."""
        if self._refill_handle is not None:
            self._refill_handle.cancel()
            self._refill_handle = None

    def close(self) -> None:
        """Stops all timers and cancels pending waiters."""
        self.stop()
        if self._pause_handle is not None:
            self._pause_handle.cancel()
            self._pause_handle = None
        self._ongoing_forced_stop = False
        while self._wait_queue:
            _, waiter = self._wait_queue.popleft()
            if not waiter.done():
                waiter.cancel()
        logger.debug("TokenBucket closed")

    def _current_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._bind_loop(loop)
        return loop

    def _bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if loop is self._loop:
            return
        if self._loop is not None:
            self._log("TokenBucket: Event loop changed, rescheduling timers")
        # Handles and futures of the previous loop never fire on this one.
        if self._refill_handle is not None:
            self._refill_handle.cancel()
            self._refill_handle = None
        self._wait_queue.clear()
        self._loop = loop
        if self._pause_handle is not None:
            self._pause_handle.cancel()
            remaining_s = max(self._next_refill_at - loop.time(), 0.0)
            self._pause_handle = loop.call_later(remaining_s, self._end_forced_stop)

    def _start_internal(self) -> "TokenBucket":
        loop = self._current_loop()
        if loop is None:
            # Refill needs an event loop; consumption outside one just uses current tokens.
            logger.debug("TokenBucket: no running event loop, refill timer not started")
            return self
        if self._refill_handle is None:
            self._next_refill_at = loop.time() + self._window_s
            self._refill_handle = loop.call_later(self._window_s, self._on_refill_tick)
        return self

    def _ensure_refilling(self) -> None:
        if self._current_loop() is None:
            return
        if self._refill_handle is None and not self._ongoing_forced_stop:
            self._start_internal()

    def _on_refill_tick(self) -> None:
        self._refill_handle = None
        if self._tokens >= self._capacity:
            self._log("TokenBucket: Bucket is full, stopping the timer")
            return

        self._add_tokens()
        self._report_remaining_tokens()
        self._try_resolve_waiting()
        if self._tokens >= self._capacity:
            self._log("TokenBucket: Bucket is full, stopping the timer")
            return
        if self._refill_handle is None and not self._ongoing_forced_stop:
            self._start_internal()

    def _add_tokens(self) -> None:
        self._tokens = min(self._tokens + self._fill_per_window, self._capacity)

    def _report_remaining_tokens(self) -> None:
        if not self.verbose:
            return
        now = asyncio.get_running_loop().time()
        if self._last_report_at is None:
            self._last_report_at = now
        elif now - self._last_report_at >= REMAINING_TOKENS_REPORT_INTERVAL_S:
            self._last_report_at = now
            logger.info(f"TokenBucket: Remaining tokens: {self._tokens}")

    # --- Consumption ---

    def consume(self, amount: int = 1) -> bool:
        """Takes ``amount`` tokens if available, without waiting.

        Returns:
            True if the tokens were taken, False otherwise.
        """
        self._ensure_refilling()
        if self._tokens >= amount:
            self._tokens -= amount
            return True
        return False

    async def consume_async(self, amount: int = 1) -> bool:
        """Takes ``amount`` tokens, waiting for a refill when there are not enough.

        Waiters are served in arrival order. The returned value is the result
        of ``consume`` at wake-up time and may be False, so callers loop
        until it succeeds.
        """
        self._ensure_refilling()
        if self._tokens >= amount:
            return self.consume(amount)

        next_refill_ms = self.next_refill_in_ms
        next_refill_text = f"{int(next_refill_ms // 1000)}" if next_refill_ms else "unknown"
        self._log(f"TokenBucket: Not enough tokens now. Will refill in {next_refill_text} seconds.")

        waiter = asyncio.get_running_loop().create_future()
        self._wait_queue.append((amount, waiter))
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.result():
                # Tokens were handed over but the waiting task was cancelled before resuming.
                self._tokens = min(self._tokens + amount, self._capacity)
                self._try_resolve_waiting()
            raise

    def _try_resolve_waiting(self) -> None:
        while self._tokens > 0 and self._wait_queue:
            amount, waiter = self._wait_queue.popleft()
            if waiter.done():
                # Cancelled while waiting.
                continue
            waiter.set_result(self.consume(amount))

    # --- Forced pause ---

    def force_wait_until_milliseconds_passed(self, delay_in_ms: float) -> None:
        """Empties the bucket and blocks refills until ``delay_in_ms`` has passed.

        Afterwards the bucket is refilled to capacity and waiters are served.
        A call made while a pause is already in progress is ignored.

        Args:
            delay_in_ms: How many milliseconds must pass before the bucket is refilled.
        """
        if self._ongoing_forced_stop:
            return
        loop = asyncio.get_running_loop()
        self._bind_loop(loop)
        delay_s = max(delay_in_ms, 0) / 1000
        self._next_refill_at = loop.time() + delay_s
        self._log(f"TokenBucket: Forcing stop. Will start to refill in {int(delay_s)} seconds")
        self._ongoing_forced_stop = True
        self._tokens = 0
        self.stop()
        self._pause_handle = loop.call_later(delay_s, self._end_forced_stop)

    def _end_forced_stop(self) -> None:
        self._pause_handle = None
        self._tokens = self._capacity
        self._ongoing_forced_stop = False
        self._start_internal()
        self._try_resolve_waiting()
        self._log("TokenBucket: Forced stop ended")

    def _log(self, message: str) -> None:
        logger.log(self._log_level, message)
