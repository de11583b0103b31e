"""Retry strategy with exponential backoff for read-only provider calls.

Mutating calls (submitting a change set, patching a resource, starting an
instance) are never wrapped: a blind retry of an infrastructure mutation can
duplicate side effects.
"""

import time
import random
from typing import Callable, TypeVar
from botocore.exceptions import ClientError
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors."""

    # AWS error codes that should trigger a retry
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'InternalError',
        'InternalFailure',
    }

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
    )

    def __init__(
        self,
        max_retries: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function, replaceable in tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in self.RETRYABLE_ERROR_CODES

        return False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if all retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")
                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {self._get_error_info(e)}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)
                attempt += 1

    def _get_error_info(self, error: Exception) -> str:
        """Extract useful error information for logging.

        Args:
            error: The exception

        Returns:
            Human-readable error description
        """
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {error}"

