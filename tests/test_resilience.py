import pytest

from order_service.errors import CircuitOpenError, ExternalServiceError, InsufficientStock
from order_service.resilience import CircuitBreaker, Retry, call_with_retry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def no_sleep(delay):
    no_sleep.delays.append(delay)


no_sleep.delays = []


def failing(times, error=None):
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= times:
            raise error or ExternalServiceError("stock-service", "HTTP 503")
        return "ok"

    return operation, calls


class TestRetry:
    def test_backoff_grows_and_caps(self):
        retry = Retry(backoff_initial=0.1, backoff_factor=2.0, backoff_max=0.3, jitter=False)
        assert [retry.delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]

    def test_jitter_stays_within_bounds(self):
        retry = Retry(backoff_initial=1.0, jitter=True)
        for _ in range(20):
            assert 0.5 <= retry.delay(1) <= 1.0

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        operation, calls = failing(2)
        result = await call_with_retry(operation, retry=Retry(times=3), sleep=no_sleep)
        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_times(self):
        operation, calls = failing(5)
        with pytest.raises(ExternalServiceError):
            await call_with_retry(operation, retry=Retry(times=3), sleep=no_sleep)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        operation, calls = failing(5, ExternalServiceError("gw", "HTTP 400", transient=False))
        with pytest.raises(ExternalServiceError):
            await call_with_retry(operation, retry=Retry(times=3), sleep=no_sleep)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_business_errors_pass_through(self):
        operation, calls = failing(5, InsufficientStock(["SKU-1"]))
        with pytest.raises(InsufficientStock):
            await call_with_retry(operation, retry=Retry(times=3), sleep=no_sleep)
        assert len(calls) == 1


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self):
        clock = FakeClock()
        breaker = CircuitBreaker("gw", failure_threshold=2, reset_timeout=10, clock=clock)
        operation, calls = failing(100)

        with pytest.raises(ExternalServiceError):
            await call_with_retry(operation, retry=Retry(times=2), breaker=breaker, sleep=no_sleep)
        assert breaker.state == CircuitBreaker.OPEN

        clock.now = 4.0
        with pytest.raises(CircuitOpenError) as exc:
            await call_with_retry(operation, retry=Retry(times=2), breaker=breaker, sleep=no_sleep)
        assert len(calls) == 2
        assert exc.value.retry_after == pytest.approx(6.0)
        assert exc.value.to_dict()["retry_after"] == 6.0

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("gw", failure_threshold=1, reset_timeout=10, clock=clock)
        operation, _ = failing(1)

        with pytest.raises(ExternalServiceError):
            await call_with_retry(operation, retry=Retry(times=1), breaker=breaker, sleep=no_sleep)
        clock.now = 10.0
        assert breaker.state == CircuitBreaker.HALF_OPEN

        assert await call_with_retry(operation, retry=Retry(times=1), breaker=breaker) == "ok"
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("gw", failure_threshold=3, reset_timeout=10, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now = 11.0
        assert breaker.state == CircuitBreaker.HALF_OPEN
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN

    @pytest.mark.asyncio
    async def test_business_error_counts_as_success(self):
        breaker = CircuitBreaker("stock", failure_threshold=2)
        breaker.record_failure()
        operation, _ = failing(1, InsufficientStock(["SKU-1"]))
        with pytest.raises(InsufficientStock):
            await call_with_retry(operation, retry=Retry(times=1), breaker=breaker)
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_non_transient_errors_do_not_open(self):
        breaker = CircuitBreaker("stock", failure_threshold=2)
        operation, calls = failing(5, ExternalServiceError("stock", "HTTP 409", transient=False))
        for _ in range(3):
            with pytest.raises(ExternalServiceError):
                await call_with_retry(operation, retry=Retry(times=3), breaker=breaker, sleep=no_sleep)
        assert len(calls) == 3
        assert breaker.state == CircuitBreaker.CLOSED

    def test_half_open_allows_single_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker("gw", failure_threshold=1, reset_timeout=10, clock=clock)
        breaker.record_failure()
        clock.now = 10.0

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        breaker.before_call()
        assert breaker.state == CircuitBreaker.CLOSED

    def test_abandoned_trial_is_replaced(self):
        clock = FakeClock()
        breaker = CircuitBreaker("gw", failure_threshold=1, reset_timeout=10, clock=clock)
        breaker.record_failure()
        clock.now = 10.0
        breaker.before_call()

        clock.now = 20.0
        breaker.before_call()
        assert breaker.state == CircuitBreaker.HALF_OPEN
