from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

import httpx

from common.errors import ConfigurationError, RateLimitedError, StaleReferenceError, TransientError
from common.utils import RetryExecutor, is_retryable, retry_on_error

from fakes import FakeSleep


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com/")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"{status}", request=request, response=response)


class FlakyOperation:
    """Fails with the given errors in order, then succeeds."""

    def __init__(self, *errors: Exception, result: str = "ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class RetryExecutorTests(IsolatedAsyncioTestCase):
    async def test_backs_off_exponentially_until_success(self) -> None:
        sleep = FakeSleep()
        executor = RetryExecutor(max_attempts=3, base_delay=1.0, sleep=sleep)
        operation = FlakyOperation(TransientError("first"), TransientError("second"))

        result = await executor.run(operation)

        self.assertEqual(result, "ok")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(sleep.delays, [1.0, 2.0])

    async def test_final_failure_propagates_unchanged(self) -> None:
        sleep = FakeSleep()
        executor = RetryExecutor(max_attempts=3, base_delay=1.0, sleep=sleep)
        last = TransientError("third")
        operation = FlakyOperation(TransientError("first"), TransientError("second"), last)

        with self.assertRaises(TransientError) as caught:
            await executor.run(operation)

        self.assertIs(caught.exception, last)
        self.assertEqual(operation.calls, 3)
        self.assertEqual(sleep.delays, [1.0, 2.0])

    async def test_per_call_overrides(self) -> None:
        sleep = FakeSleep()
        executor = RetryExecutor(max_attempts=3, base_delay=1.0, sleep=sleep)
        operation = FlakyOperation(*(TransientError(str(i)) for i in range(4)))

        result = await executor.run(operation, max_attempts=5, base_delay=0.5)

        self.assertEqual(result, "ok")
        self.assertEqual(sleep.delays, [0.5, 1.0, 2.0, 4.0])

    async def test_stale_reference_is_not_retried(self) -> None:
        sleep = FakeSleep()
        executor = RetryExecutor(sleep=sleep)
        operation = FlakyOperation(StaleReferenceError("discord", "d1"))

        with self.assertRaises(StaleReferenceError):
            await executor.run(operation)

        self.assertEqual(operation.calls, 1)
        self.assertEqual(sleep.delays, [])

    async def test_decorator_retries_with_the_same_schedule(self) -> None:
        sleep = FakeSleep()
        calls = []

        @retry_on_error(max_retries=2, base_delay=0.25)
        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                raise TransientError("flaky")
            return "fetched"

        with patch("common.utils.asyncio.sleep", sleep):
            result = await fetch()

        self.assertEqual(result, "fetched")
        self.assertEqual(len(calls), 2)
        self.assertEqual(sleep.delays, [0.25])

    def test_invalid_attempt_budget_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RetryExecutor(max_attempts=0)


class IsRetryableTests(IsolatedAsyncioTestCase):
    async def test_classification(self) -> None:
        self.assertTrue(is_retryable(TransientError("network")))
        self.assertTrue(is_retryable(RateLimitedError("google", 3.0)))
        self.assertTrue(is_retryable(_status_error(503)))
        self.assertTrue(is_retryable(_status_error(429)))
        self.assertFalse(is_retryable(_status_error(400)))
        self.assertFalse(is_retryable(ConfigurationError("missing token")))
        self.assertFalse(is_retryable(StaleReferenceError("google", "g1")))
