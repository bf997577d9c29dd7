import asyncio
import time
from unittest.mock import AsyncMock, call, patch

import pytest

from asynccaller.core.async_caller import MAX_RETRIES_MESSAGE, AsyncCaller
from asynccaller.domain.errors import ClientError, ConfigurationError, ExhaustedError
from asynccaller.domain.events.call_events import (
    AttemptStarted, BucketPaused, CallAdmitted, CallFailed, CallQueued,
    CallSucceeded, RetryScheduled
)
from asynccaller.domain.models.options import RetryOptions, TokenBucketOptions
from asynccaller.infrastructure.config.settings import set_config_for_testing

FAST_RETRIES = RetryOptions(max_retries=3, min_delay_in_ms=10, max_delay_in_ms=40, backoff_factor=2)
ROOMY_BUCKET = TokenBucketOptions(capacity=50, fill_per_window=50, window_in_ms=10)


def sequence(*outcomes):
    """Async operation returning (or raising) the given outcomes in order, then repeating the last."""
    state = {"calls": 0}

    async def operation():
        index = min(state["calls"], len(outcomes) - 1)
        state["calls"] += 1
        outcome = outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    operation.state = state
    return operation


@pytest.fixture
def events():
    return []


@pytest.fixture
def fast_caller(events):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=5, on_event=events.append
    )
    yield caller
    caller.close()


# --- Construction ---

def test_defaults():
    caller = AsyncCaller()
    assert caller.concurrency == 5
    assert caller.retry_options == RetryOptions(max_retries=3, min_delay_in_ms=1000, max_delay_in_ms=10000, backoff_factor=2)
    assert caller.token_bucket.capacity == 10
    assert caller.running_count == 0
    assert caller.queue_length == 0


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"concurrency": 0}, "Concurrency must be greater than 0"),
        ({"retry_options": RetryOptions(max_retries=-1)}, "Max retries must be 0 or greater"),
        ({"retry_options": RetryOptions(min_delay_in_ms=500, max_delay_in_ms=100)}, "Max delay"),
        ({"retry_options": RetryOptions(backoff_factor=0)}, "Backoff factor"),
        ({"token_bucket_options": TokenBucketOptions(capacity=0)}, "Capacity must be greater than 0"),
    ]
)
def test_invalid_configuration(kwargs, message):
    with pytest.raises(ConfigurationError, match=message):
        AsyncCaller(**kwargs)


def test_calculate_default_delay_defaults():
    caller = AsyncCaller()
    assert [caller.calculate_default_delay(n) for n in range(1, 7)] == [1000, 2000, 4000, 8000, 10000, 10000]


def test_from_config_reads_settings():
    set_config_for_testing({
        "token_bucket.capacity": 4,
        "token_bucket.fill_per_window": 2,
        "retry.max_retries": 1,
        "concurrency": 2,
    })
    caller = AsyncCaller.from_config()
    assert caller.token_bucket.capacity == 4
    assert caller.retry_options.max_retries == 1
    assert caller.retry_options.min_delay_in_ms == 1000
    assert caller.concurrency == 2


def test_from_config_overrides():
    caller = AsyncCaller.from_config(concurrency=9)
    assert caller.concurrency == 9


# --- Success path ---

@pytest.mark.asyncio
async def test_call_returns_result_and_passes_arguments(fast_caller, make_response):
    response = make_response(200)
    operation = AsyncMock(return_value=response)

    result = await fast_caller.call(operation, "https://example.com", timeout=3)

    assert result is response
    operation.assert_awaited_once_with("https://example.com", timeout=3)
    assert fast_caller.running_count == 0


@pytest.mark.asyncio
async def test_plain_values_are_returned(fast_caller):
    assert await fast_caller.call(AsyncMock(return_value={"rows": 3})) == {"rows": 3}


@pytest.mark.asyncio
async def test_submit_is_an_alias(fast_caller):
    assert await fast_caller.submit(AsyncMock(return_value="ok")) == "ok"


@pytest.mark.asyncio
async def test_server_error_result_is_not_retried(fast_caller, make_response):
    operation = sequence(make_response(503))
    result = await fast_caller.call(operation)
    assert result.status_code == 503
    assert operation.state["calls"] == 1


@pytest.mark.asyncio
async def test_success_events(fast_caller, events):
    await fast_caller.call(AsyncMock(return_value="done"))

    kinds = [type(e) for e in events]
    assert kinds == [CallQueued, CallAdmitted, AttemptStarted, CallSucceeded]
    assert len({e.task_id for e in events}) == 1
    assert events[-1].attempts == 1


@pytest.mark.asyncio
async def test_failing_event_listener_does_not_break_call():
    def listener(event):
        raise RuntimeError("listener exploded")

    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, on_event=listener)
    assert await caller.call(AsyncMock(return_value=1)) == 1
    caller.close()


# --- Admission control ---

@pytest.mark.asyncio
async def test_concurrency_limit_is_respected():
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=2)
    in_flight = 0
    peak = 0

    async def operation(index):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        assert caller.running_count <= caller.concurrency
        await asyncio.sleep(0.02)
        in_flight -= 1
        return index

    results = await asyncio.gather(*(caller.call(operation, i) for i in range(7)))

    assert results == list(range(7))
    assert peak == 2
    assert caller.running_count == 0
    assert caller.queue_length == 0
    caller.close()


@pytest.mark.asyncio
async def test_admission_is_fifo():
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=1)
    started = []

    async def operation(index):
        started.append(index)
        await asyncio.sleep(0.005)

    await asyncio.gather(*(caller.call(operation, i) for i in range(5)))

    assert started == [0, 1, 2, 3, 4]
    caller.close()


@pytest.mark.asyncio
async def test_queue_length_while_slot_is_busy():
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=1)
    release = asyncio.Event()

    async def blocking():
        await release.wait()
        return "first"

    first = asyncio.create_task(caller.call(blocking))
    second = asyncio.create_task(caller.call(AsyncMock(return_value="second")))
    await asyncio.sleep(0.01)

    assert caller.running_count == 1
    assert caller.queue_length == 1

    release.set()
    assert await asyncio.gather(first, second) == ["first", "second"]
    assert caller.running_count == 0
    caller.close()


@pytest.mark.asyncio
async def test_slot_released_after_failure(make_response):
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=1)

    with pytest.raises(ClientError):
        await caller.call(sequence(make_response(400)))

    assert caller.running_count == 0
    assert await caller.call(AsyncMock(return_value="next")) == "next"
    caller.close()


@pytest.mark.asyncio
async def test_cancelled_queued_call_does_not_leak_slot():
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=1)
    release = asyncio.Event()

    async def blocking():
        await release.wait()

    first = asyncio.create_task(caller.call(blocking))
    queued = asyncio.create_task(caller.call(AsyncMock(return_value="never")))
    await asyncio.sleep(0.01)
    queued.cancel()
    await asyncio.sleep(0)

    release.set()
    await first
    with pytest.raises(asyncio.CancelledError):
        await queued
    assert caller.running_count == 0
    assert await caller.call(AsyncMock(return_value="after")) == "after"
    caller.close()


@pytest.mark.asyncio
async def test_queue_length_excludes_cancelled_calls(events):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET, retry_options=FAST_RETRIES, concurrency=1, on_event=events.append
    )
    release = asyncio.Event()

    async def blocking():
        await release.wait()
        return "first"

    first = asyncio.create_task(caller.call(blocking))
    queued = [asyncio.create_task(caller.call(AsyncMock(return_value=i))) for i in range(3)]
    await asyncio.sleep(0.01)
    assert caller.queue_length == 3
    assert [e.queue_length for e in events if isinstance(e, CallQueued)] == [1, 1, 2, 3]

    queued[1].cancel()
    await asyncio.sleep(0)
    assert caller.queue_length == 2

    release.set()
    assert await first == "first"
    assert await queued[0] == 0
    assert await queued[2] == 2
    with pytest.raises(asyncio.CancelledError):
        await queued[1]
    assert caller.queue_length == 0
    assert caller.running_count == 0
    caller.close()


# --- Client errors ---

@pytest.mark.asyncio
async def test_client_error_result_rejects_without_retry(fast_caller, events, make_response):
    response = make_response(404)
    operation = sequence(response)

    with pytest.raises(ClientError) as exc_info:
        await fast_caller.call(operation)

    assert operation.state["calls"] == 1
    assert exc_info.value.status_code == 404
    assert exc_info.value.response is response
    failed = [e for e in events if isinstance(e, CallFailed)]
    assert failed[0].state == "client_error"
    assert failed[0].status_code == 404


@pytest.mark.asyncio
async def test_client_error_exception_is_reraised_unchanged(fast_caller, make_status_error):
    error = make_status_error("forbidden", status=403)
    operation = sequence(error)

    with pytest.raises(type(error)) as exc_info:
        await fast_caller.call(operation)

    assert exc_info.value is error
    assert operation.state["calls"] == 1


# --- Rate limiting ---

@pytest.mark.asyncio
async def test_rate_limited_result_waits_for_retry_after(events, make_response):
    caller = AsyncCaller(retry_options=FAST_RETRIES, on_event=events.append)
    call_times = []
    ok = make_response(200)

    async def operation():
        call_times.append(time.monotonic())
        if len(call_times) == 1:
            return make_response(429, headers={"Retry-After": "1"})
        return ok

    result = await caller.call(operation)

    assert result is ok
    assert len(call_times) == 2
    assert call_times[1] - call_times[0] >= 0.95
    paused = [e for e in events if isinstance(e, BucketPaused)]
    assert [e.delay_ms for e in paused] == [1000]
    retries = [e for e in events if isinstance(e, RetryScheduled)]
    assert retries[0].reason == "rate_limited"
    caller.close()


@pytest.mark.asyncio
async def test_rate_limited_result_forces_bucket_idle(make_response):
    caller = AsyncCaller(retry_options=FAST_RETRIES)
    operation = sequence(make_response(429, headers={"Retry-After": "1"}), make_response(200))

    task = asyncio.create_task(caller.call(operation))
    await asyncio.sleep(0.05)

    assert caller.token_bucket.is_paused
    assert caller.token_bucket.tokens == 0
    assert (await task).status_code == 200
    caller.close()


@pytest.mark.asyncio
async def test_rate_limited_without_retry_after_uses_backoff(fast_caller, events, make_response):
    operation = sequence(make_response(429), make_response(200))

    result = await fast_caller.call(operation)

    assert result.status_code == 200
    assert operation.state["calls"] == 2
    assert not any(isinstance(e, BucketPaused) for e in events)
    retries = [e for e in events if isinstance(e, RetryScheduled)]
    assert [e.delay_ms for e in retries] == [10]


@pytest.mark.asyncio
async def test_rate_limited_exception_reads_nested_headers(fast_caller, events, make_response, make_status_error):
    error = make_status_error("429", response=make_response(429, headers={"retry-after": "0"}))
    operation = sequence(error, "recovered")

    assert await fast_caller.call(operation) == "recovered"

    paused = [e for e in events if isinstance(e, BucketPaused)]
    assert [e.delay_ms for e in paused] == [0]


@pytest.mark.asyncio
async def test_rate_limited_responses_exhaust_with_body_message(events, make_response):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET,
        retry_options=RetryOptions(max_retries=1, min_delay_in_ms=5, max_delay_in_ms=10),
        on_event=events.append,
    )
    operation = sequence(make_response(429, body={"error": {"code": "rate_limited"}}))

    with pytest.raises(ExhaustedError) as exc_info:
        await caller.call(operation)

    assert operation.state["calls"] == 2
    assert str(exc_info.value) == '{"code": "rate_limited"}'
    assert exc_info.value.attempts == 2
    assert exc_info.value.last_response.status_code == 429
    assert events[-1].state == "exhausted"
    caller.close()


@pytest.mark.asyncio
async def test_rate_limited_responses_exhaust_with_generic_message(make_response):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET,
        retry_options=RetryOptions(max_retries=0, min_delay_in_ms=5, max_delay_in_ms=10),
    )

    with pytest.raises(ExhaustedError, match=MAX_RETRIES_MESSAGE):
        await caller.call(sequence(make_response(429)))
    caller.close()


@pytest.mark.asyncio
async def test_exhaustion_prefers_last_captured_error(make_response):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET,
        retry_options=RetryOptions(max_retries=1, min_delay_in_ms=5, max_delay_in_ms=10),
    )
    network_error = ConnectionError("reset by peer")
    operation = sequence(network_error, make_response(429, body={"message": "slow down"}))

    with pytest.raises(ConnectionError) as exc_info:
        await caller.call(operation)

    assert exc_info.value is network_error
    assert operation.state["calls"] == 2
    caller.close()


@pytest.mark.asyncio
async def test_rate_limited_exception_on_last_attempt_is_raised(make_status_error):
    caller = AsyncCaller(
        token_bucket_options=ROOMY_BUCKET,
        retry_options=RetryOptions(max_retries=1, min_delay_in_ms=5, max_delay_in_ms=10),
    )
    error = make_status_error("too many", status=429)
    operation = sequence(error)

    with pytest.raises(type(error)) as exc_info:
        await caller.call(operation)

    assert exc_info.value is error
    assert operation.state["calls"] == 2
    caller.close()


# --- Transient errors ---

@pytest.mark.asyncio
async def test_transient_errors_retry_with_exponential_backoff():
    caller = AsyncCaller()
    operation = sequence(ConnectionError("down"), ConnectionError("still down"), "third time lucky")

    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        result = await caller.call(operation)

    assert result == "third time lucky"
    assert operation.state["calls"] == 3
    assert mock_sleep.await_args_list == [call(1.0), call(2.0)]
    caller.close()


@pytest.mark.asyncio
async def test_persistent_transient_error_exhausts_attempts(events):
    caller = AsyncCaller(on_event=events.append)
    error = TimeoutError("no answer")
    operation = sequence(error)

    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        with pytest.raises(TimeoutError) as exc_info:
            await caller.call(operation)

    assert exc_info.value is error
    assert operation.state["calls"] == 4
    assert mock_sleep.await_args_list == [call(1.0), call(2.0), call(4.0)]
    assert [e.attempt_number for e in events if isinstance(e, AttemptStarted)] == [1, 2, 3, 4]
    failed = events[-1]
    assert isinstance(failed, CallFailed)
    assert failed.state == "exhausted"
    assert failed.attempts == 4
    caller.close()


@pytest.mark.asyncio
async def test_zero_retries_runs_once(make_status_error):
    caller = AsyncCaller(token_bucket_options=ROOMY_BUCKET, retry_options=RetryOptions(max_retries=0))
    operation = sequence(make_status_error("server", status=500))

    with pytest.raises(Exception, match="server"):
        await caller.call(operation)

    assert operation.state["calls"] == 1
    caller.close()


@pytest.mark.asyncio
async def test_each_attempt_consumes_a_token():
    caller = AsyncCaller(
        token_bucket_options=TokenBucketOptions(capacity=5, fill_per_window=1, window_in_ms=10000),
        retry_options=FAST_RETRIES,
    )
    operation = sequence(ConnectionError("a"), ConnectionError("b"), "ok")

    assert await caller.call(operation) == "ok"
    assert caller.token_bucket.tokens == 2
    caller.close()


@pytest.mark.asyncio
async def test_async_context_manager_closes_bucket():
    slow_refill = TokenBucketOptions(capacity=5, fill_per_window=1, window_in_ms=5000)
    async with AsyncCaller(token_bucket_options=slow_refill) as caller:
        await caller.call(AsyncMock(return_value=None))
        assert caller.token_bucket.is_refilling
    assert not caller.token_bucket.is_refilling
