"""Service for executing async calls with rate limiting, bounded concurrency and retries.

Calls are admitted in submission order up to ``concurrency`` at a time. Each
admitted call runs the retry engine: take a token from the shared bucket,
invoke the operation, classify the outcome and either return, raise, or wait
and try again.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Coroutine, Deque, Optional

from asynccaller.domain.errors import ClientError, ConfigurationError, ExhaustedError
from asynccaller.domain.events.call_events import (
    AttemptStarted, BucketPaused, CallAdmitted, CallEvent, CallFailed,
    CallQueued, CallSucceeded, RetryScheduled
)
from asynccaller.domain.interfaces.status import HeaderLookup, StatusExtractor
from asynccaller.domain.models.common import CallState, CallTask, OutcomeKind
from asynccaller.domain.models.options import (
    DEFAULT_CONCURRENCY, RetryOptions, TokenBucketOptions
)
from asynccaller.infrastructure.resilience.retry_delay import RetryDelayCalculator
from asynccaller.infrastructure.resilience.status_classifier import (
    StatusClassifier, extract_error_message
)
from asynccaller.infrastructure.resilience.token_bucket import TokenBucket

logger = logging.getLogger(__name__)

MAX_RETRIES_MESSAGE = "Max retries exceeded."

EventListener = Callable[[CallEvent], None]


class AsyncCaller:
    """Runs async operations with retry, concurrency and rate limiting.

    Example:
        # 100 calls per minute with bursts of up to 20
        caller = AsyncCaller(
            token_bucket_options=TokenBucketOptions(capacity=20, fill_per_window=100, window_in_ms=60000),
        )
        response = await caller.call(client.get, "https://example.com")
    """

    def __init__(
        self,
        token_bucket_options: Optional[TokenBucketOptions] = None,
        retry_options: Optional[RetryOptions] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        verbose: bool = False,
        status_extractor: Optional[StatusExtractor] = None,
        header_lookup: Optional[HeaderLookup] = None,
        on_event: Optional[EventListener] = None,
    ):
        """Initializes the AsyncCaller.

        Args:
            token_bucket_options: Rate limit shared by every call made through this instance.
            retry_options: Retry budget and exponential backoff bounds.
            concurrency: Maximum number of operations in flight at once.
            verbose: Log scheduling and retry decisions at INFO instead of DEBUG.
            status_extractor: Reads status codes off results and errors.
            header_lookup: Reads the Retry-After header from a header container.
            on_event: Optional callback receiving call lifecycle events.

        Raises:
            ConfigurationError: If any option is out of bounds.
        """
        retry_options = retry_options or RetryOptions()
        self._validate(retry_options, concurrency)
        self.verbose = verbose
        self._log_level = logging.INFO if verbose else logging.DEBUG
        self._token_bucket = TokenBucket(token_bucket_options or TokenBucketOptions(), verbose)
        self._retry_options = retry_options
        self._concurrency = concurrency
        self._classifier = StatusClassifier(status_extractor, verbose)
        self._delays = RetryDelayCalculator(retry_options, header_lookup)
        self._on_event = on_event
        self._running_tasks = 0
        self._queue: Deque[CallTask] = deque()
        self._queued_count = 0
        logger.info(
            f"AsyncCaller initialized: concurrency={concurrency}, max_retries={retry_options.max_retries}, "
            f"backoff={retry_options.min_delay_in_ms}-{retry_options.max_delay_in_ms}ms x{retry_options.backoff_factor}"
        )

    @classmethod
    def from_config(cls, **overrides: Any) -> "AsyncCaller":
        """Builds an AsyncCaller from the loaded configuration (see settings module)."""
        from asynccaller.infrastructure.config import settings

        kwargs = {
            "token_bucket_options": settings.get_token_bucket_options(),
            "retry_options": settings.get_retry_options(),
            "concurrency": settings.get_concurrency(),
            "verbose": settings.is_verbose(),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @staticmethod
    def _validate(retry_options: RetryOptions, concurrency: int) -> None:
        if concurrency <= 0:
            raise ConfigurationError("Concurrency must be greater than 0")
        if retry_options.max_retries < 0:
            raise ConfigurationError("Max retries must be 0 or greater")
        if retry_options.min_delay_in_ms < 0:
            raise ConfigurationError("Min delay must be 0 or greater")
        if retry_options.max_delay_in_ms < retry_options.min_delay_in_ms:
            raise ConfigurationError("Max delay must be greater than or equal to min delay")
        if retry_options.backoff_factor <= 0:
            raise ConfigurationError("Backoff factor must be greater than 0")

    # --- Properties ---

    @property
    def token_bucket(self) -> TokenBucket:
        return self._token_bucket

    @property
    def retry_options(self) -> RetryOptions:
        return self._retry_options

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running_count(self) -> int:
        return self._running_tasks

    @property
    def queue_length(self) -> int:
        return self._queued_count

    # --- Public API ---

    async def call(self, fn: Callable[..., Coroutine[Any, Any, Any]], *args: Any, **kwargs: Any) -> Any:
        """Runs ``fn(*args, **kwargs)`` once a slot is free, retrying as needed.

        Returns:
            The operation's successful result.

        Raises:
            ClientError: The operation resolved with a 4xx (non-429) status.
            ExhaustedError: The attempt budget ran out after rate-limited
                responses and no exception was captured.
            Exception: Any exception raised by the operation that is a client
                error, or the last one once the attempt budget is spent.
        """
        task = CallTask(ticket=asyncio.get_running_loop().create_future())
        self._queue.append(task)
        self._queued_count += 1
        self._dispatch_event(CallQueued(task_id=task.task_id, queue_length=self.queue_length))
        self._process_task_queue()
        try:
            await task.ticket
        except asyncio.CancelledError:
            if task.ticket.cancelled():
                # Still queued; the entry is skipped at admission.
                self._queued_count -= 1
            elif task.ticket.done():
                # Admitted just before cancellation; give the slot back.
                self._release_slot()
            raise
        return await self._execute_and_handle_errors(task, fn, args, kwargs)

    submit = call

    def calculate_default_delay(self, completed_try_count: int) -> float:
        """Exponential backoff delay in milliseconds for the given completed attempt count."""
        return self._delays.calculate_default_delay(completed_try_count)

    def close(self) -> None:
        """Stops the token bucket's timers. Calls already admitted are not affected."""
        self._token_bucket.close()

    async def __aenter__(self) -> "AsyncCaller":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- Admission control ---

    def _process_task_queue(self) -> None:
        while self._running_tasks < self._concurrency and self._queue:
            task = self._queue.popleft()
            if task.ticket.done():
                # Caller was cancelled while queued.
                continue
            self._running_tasks += 1
            self._queued_count -= 1
            self._log(
                f"AsyncCaller: Running task... Concurrency: ({self._running_tasks} / {self._concurrency}) "
                f"(Queue length: {self.queue_length})"
            )
            self._dispatch_event(CallAdmitted(
                task_id=task.task_id, running_count=self._running_tasks, concurrency=self._concurrency
            ))
            task.ticket.set_result(None)

    def _release_slot(self) -> None:
        self._running_tasks -= 1
        self._process_task_queue()

    async def _execute_and_handle_errors(self, task: CallTask, fn, args, kwargs) -> Any:
        started = time.perf_counter()
        try:
            result = await self._execute_with_retry(task, fn, args, kwargs)
        except Exception as e:
            if not task.state.is_terminal:
                task.state = CallState.EXHAUSTED
            self._dispatch_event(CallFailed(
                task_id=task.task_id,
                attempts=task.attempts,
                state=task.state.value,
                error_type=type(e).__name__,
                error_message=str(e),
                status_code=next(iter(self._classifier.status_codes(e)), None),
            ))
            raise
        else:
            task.state = CallState.SUCCEEDED
            self._dispatch_event(CallSucceeded(
                task_id=task.task_id, attempts=task.attempts, latency_ms=(time.perf_counter() - started) * 1000
            ))
            return result
        finally:
            self._release_slot()

    # --- Retry engine ---

    async def _execute_with_retry(self, task: CallTask, fn, args, kwargs) -> Any:
        max_attempts = self._retry_options.max_retries + 1
        try_count = 1
        last_response: Any = None
        last_error: Optional[BaseException] = None

        while True:
            task.state = CallState.ATTEMPTING
            while not await self._token_bucket.consume_async():
                pass

            if try_count > max_attempts:
                self._log("AsyncCaller: Max retries exceeded. Rejecting...")
                task.state = CallState.EXHAUSTED
                raise await self._exhausted_error(last_error, last_response, try_count - 1)

            task.attempts = try_count
            self._dispatch_event(AttemptStarted(task_id=task.task_id, attempt_number=try_count))
            try:
                result = await fn(*args, **kwargs)
            except Exception as err:
                if try_count == max_attempts:
                    self._log("AsyncCaller: Max retries exceeded. Rejecting...")
                    task.state = CallState.EXHAUSTED
                    raise
                outcome = self._classify_error(err)
                if outcome is OutcomeKind.CLIENT_ERROR:
                    task.state = CallState.CLIENT_ERROR
                    raise
                delay = self._delay_for(task, outcome, try_count, err)
                last_error = err
            else:
                outcome = self._classifier.classify(result)
                if outcome is OutcomeKind.SUCCESS:
                    return result
                if outcome is OutcomeKind.CLIENT_ERROR:
                    task.state = CallState.CLIENT_ERROR
                    status = self._classifier.client_error_status(result)
                    raise ClientError(f"Client error: status {status}", status_code=status, response=result)
                delay = self._delay_for(task, outcome, try_count, result)
                last_response = result

            task.state = CallState.DELAYING
            self._dispatch_event(RetryScheduled(
                task_id=task.task_id, attempt_number=try_count, delay_ms=delay, reason=outcome.value
            ))
            await asyncio.sleep(delay / 1000)
            try_count += 1

    def _classify_error(self, err: BaseException) -> OutcomeKind:
        if self._classifier.is_rate_limited(err):
            return OutcomeKind.RATE_LIMITED
        if self._classifier.is_client_error(err):
            return OutcomeKind.CLIENT_ERROR
        return OutcomeKind.TRANSIENT

    def _delay_for(self, task: CallTask, outcome: OutcomeKind, try_count: int, value: Any) -> float:
        if outcome is OutcomeKind.RATE_LIMITED:
            delay, server_directed = self._delays.calculate_retry_delay(
                try_count, self._classifier.headers_of(value)
            )
            if server_directed:
                self._token_bucket.force_wait_until_milliseconds_passed(delay)
                self._dispatch_event(BucketPaused(task_id=task.task_id, delay_ms=delay))
            return delay
        delay = self.calculate_default_delay(try_count)
        logger.warning(
            f"Transient error on attempt {try_count}/{self._retry_options.max_retries + 1}: "
            f"{type(value).__name__}: {value}. Waiting {delay:.0f}ms..."
        )
        return delay

    async def _exhausted_error(self, last_error: Optional[BaseException], last_response: Any, attempts: int) -> BaseException:
        if last_error is not None:
            return last_error
        message = None
        if last_response is not None:
            message = await extract_error_message(last_response)
        return ExhaustedError(message or MAX_RETRIES_MESSAGE, attempts=attempts, last_response=last_response)

    # --- Events & logging ---

    def _dispatch_event(self, event: CallEvent) -> None:
        logger.debug(f"EVENT: {event}")
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(f"Event listener failed for {type(event).__name__}: {e}", exc_info=True)

    def _log(self, message: str) -> None:
        logger.log(self._log_level, message)
