"""Tests for retry logic with exponential backoff."""

from unittest.mock import Mock, patch

import pytest

from site_vault.exceptions import (
    NetworkError,
    StorageError,
    TransientError,
    UnauthenticatedError,
)
from site_vault.retry import RetryConfig, retry, retry_with_backoff, should_retry_exception


@pytest.mark.unit
class TestRetryConfig:
    """Test suite for retry configuration."""

    def test_default_config_values(self):
        """Test that default configuration has sensible values."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 60.0
        assert config.backoff_factor == 2.0
        assert config.jitter is True

    def test_config_validates_max_retries(self):
        """Test that max_retries must be non-negative."""
        with pytest.raises(ValueError, match="max_retries must be >= 0"):
            RetryConfig(max_retries=-1)

    def test_config_validates_delays(self):
        """Test that delays must be positive."""
        with pytest.raises(ValueError, match="initial_delay must be > 0"):
            RetryConfig(initial_delay=0)

        with pytest.raises(ValueError, match="max_delay must be > 0"):
            RetryConfig(max_delay=0)

    def test_config_validates_backoff_factor(self):
        """Test that backoff_factor must be >= 1."""
        with pytest.raises(ValueError, match="backoff_factor must be >= 1"):
            RetryConfig(backoff_factor=0.5)

    def test_delay_grows_exponentially_and_is_capped(self):
        """Test the backoff curve without jitter."""
        config = RetryConfig(initial_delay=1.0, backoff_factor=2.0, max_delay=5.0, jitter=False)
        assert config.calculate_delay(0) == 1.0
        assert config.calculate_delay(1) == 2.0
        assert config.calculate_delay(2) == 4.0
        assert config.calculate_delay(3) == 5.0

    def test_jitter_keeps_delay_within_bounds(self):
        """Test that jitter scales the delay into [0.5, 1.0) of its base."""
        config = RetryConfig(initial_delay=2.0, jitter=True)
        for _ in range(20):
            delay = config.calculate_delay(0)
            assert 1.0 <= delay < 2.0


@pytest.mark.unit
class TestShouldRetryException:
    """Test suite for retry classification."""

    def test_transient_error_is_retried(self):
        """Test that TransientError triggers a retry."""
        assert should_retry_exception(TransientError("503")) is True

    def test_non_retryable_network_error_is_not_retried(self):
        """Test that NetworkError(retryable=False) is re-raised."""
        assert should_retry_exception(NetworkError("DNS", retryable=False)) is False

    def test_unauthenticated_is_never_retried(self):
        """Test that credential errors are fatal."""
        assert should_retry_exception(UnauthenticatedError("403")) is False

    def test_foreign_exceptions_are_not_retried(self):
        """Test that exceptions outside the hierarchy are not retried."""
        assert should_retry_exception(ValueError("bad")) is False
        assert should_retry_exception(KeyError("missing")) is False


@pytest.mark.unit
class TestRetryWithBackoff:
    """Test suite for retry_with_backoff."""

    def test_succeeds_on_first_attempt(self):
        """Test that successful operations don't retry."""
        mock_func = Mock(return_value="success")

        result = retry_with_backoff(mock_func)

        assert result == "success"
        assert mock_func.call_count == 1

    @patch("site_vault.retry.time.sleep")
    def test_succeeds_after_transient_failures(self, mock_sleep):
        """Test that transient failures are retried until success."""
        mock_func = Mock(side_effect=[TransientError("timeout"), TransientError("reset"), "ok"])

        result = retry_with_backoff(mock_func, config=RetryConfig(jitter=False))

        assert result == "ok"
        assert mock_func.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("site_vault.retry.time.sleep")
    def test_gives_up_after_max_retries(self, mock_sleep):
        """Test that the last exception surfaces once the budget is spent."""
        mock_func = Mock(side_effect=TransientError("still down"))

        with pytest.raises(TransientError, match="still down"):
            retry_with_backoff(mock_func, config=RetryConfig(max_retries=2))

        assert mock_func.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("site_vault.retry.time.sleep")
    def test_non_retryable_error_is_raised_immediately(self, mock_sleep):
        """Test that permanent failures are not retried."""
        mock_func = Mock(side_effect=StorageError("bucket missing"))

        with pytest.raises(StorageError):
            retry_with_backoff(mock_func)

        assert mock_func.call_count == 1
        mock_sleep.assert_not_called()

    def test_arguments_are_passed_through(self):
        """Test that positional and keyword arguments reach the function."""
        mock_func = Mock(return_value=1)

        retry_with_backoff(mock_func, "a", 2, key="value")

        mock_func.assert_called_once_with("a", 2, key="value")


@pytest.mark.unit
class TestRetryDecorator:
    """Test suite for the retry decorator."""

    @patch("site_vault.retry.time.sleep")
    def test_decorated_function_is_retried(self, mock_sleep):
        """Test that the decorator applies its own budget."""
        calls = []

        @retry(max_retries=1, initial_delay=0.1)
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise TransientError("once")
            return "done"

        assert flaky() == "done"
        assert len(calls) == 2

    def test_decorator_preserves_function_name(self):
        """Test that functools.wraps keeps metadata."""

        @retry()
        def post_status():
            """Docstring."""

        assert post_status.__name__ == "post_status"
        assert post_status.__doc__ == "Docstring."
