"""Tests for retry utilities."""
import pytest

from unifi_converge.errors import RetryableAPIError, TerminalAPIError
from unifi_converge.utils.connection import RETRYABLE_EXCEPTIONS, call_with_retry, with_retry


class TestWithRetry:
    """Tests for retry decorator."""

    @pytest.mark.asyncio
    async def test_async_success_no_retry(self):
        """Successful async function doesn't retry."""
        call_count = 0

        @with_retry(max_attempts=3)
        async def succeeding_func():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await succeeding_func()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_async_retry_then_success(self):
        """Async function retries on a retryable API error then succeeds."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0, max_wait=0)
        async def failing_then_succeeding():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise RetryableAPIError("controller busy", status=503)
            return "success"

        result = await failing_then_succeeding()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_async_max_retries_exceeded(self):
        """Async function raises after max retries."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0, max_wait=0)
        async def always_failing():
            nonlocal call_count
            call_count += 1
            raise TimeoutError("Always times out")

        with pytest.raises(TimeoutError):
            await always_failing()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self):
        """4xx-style errors are not retried."""
        call_count = 0

        @with_retry(max_attempts=3)
        async def rejected():
            nonlocal call_count
            call_count += 1
            raise TerminalAPIError("invalid payload", status=400)

        with pytest.raises(TerminalAPIError):
            await rejected()
        assert call_count == 1

    def test_sync_success_no_retry(self):
        """Successful sync function doesn't retry."""
        call_count = 0

        @with_retry(max_attempts=3)
        def succeeding_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert succeeding_func() == "success"
        assert call_count == 1


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_counts_attempts(self):
        """on_attempt sees every attempt number."""
        seen = []
        outcomes = [RetryableAPIError("busy"), RetryableAPIError("busy"), "id-1"]

        async def flaky(collection, fields):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await call_with_retry(
            flaky, "networkconf", {"name": "LAN"},
            max_attempts=3, min_wait=0, max_wait=0, on_attempt=seen.append,
        )

        assert result == "id-1"
        assert seen == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_reraises_last_error(self):
        async def down():
            raise RetryableAPIError("still down", status=502)

        with pytest.raises(RetryableAPIError) as exc:
            await call_with_retry(down, max_attempts=2, min_wait=0, max_wait=0)

        assert exc.value.status == 502

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self):
        seen = []

        async def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await call_with_retry(broken, max_attempts=5, on_attempt=seen.append)

        assert seen == [1]


class TestRetryableExceptions:
    """Tests for retryable exceptions list."""

    def test_retryable_api_error(self):
        assert RetryableAPIError in RETRYABLE_EXCEPTIONS

    def test_terminal_api_error_is_not_retryable(self):
        assert TerminalAPIError not in RETRYABLE_EXCEPTIONS
        assert not issubclass(TerminalAPIError, RETRYABLE_EXCEPTIONS)

    def test_socket_errors_are_retryable(self):
        for exc in (ConnectionRefusedError, ConnectionResetError, TimeoutError, EOFError):
            assert exc in RETRYABLE_EXCEPTIONS
