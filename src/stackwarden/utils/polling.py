"""Bounded exponential-backoff polling with timeout and cancellation."""

import threading
import time
from typing import Callable, Optional, TypeVar

from stackwarden.utils.errors import OperationCancelled, OperationTimeout
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a poll loop.

    Cancelling stops polling only. Requests already accepted by the
    provisioning API are left to run to completion.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation.

        Returns:
            True if cancellation was requested
        """
        return self._event.wait(timeout)


class Poller:
    """Polls a read-only probe until a predicate holds.

    The delay between probes starts at ``initial_interval`` and is multiplied
    by ``multiplier`` after every probe, capped at ``max_interval``. The loop
    never runs past ``timeout`` seconds.
    """

    def __init__(
        self,
        initial_interval: float = 5.0,
        max_interval: float = 30.0,
        multiplier: float = 2.0,
        timeout: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize poller.

        Args:
            initial_interval: Delay in seconds after the first probe
            max_interval: Upper bound for the delay between probes
            multiplier: Backoff multiplier applied after every probe
            timeout: Overall deadline in seconds
            clock: Monotonic clock, replaceable in tests
            sleep: Sleep function; when omitted the cancellation token is
                used to sleep so that cancelling wakes the loop immediately
        """
        if initial_interval < 0 or max_interval < 0:
            raise ValueError("Poll intervals must be non-negative")
        if multiplier < 1:
            raise ValueError("Backoff multiplier must be at least 1")
        if timeout <= 0:
            raise ValueError("Poll timeout must be positive")

        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self.multiplier = multiplier
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def intervals(self):
        """Yield successive delays between probes."""
        delay = self.initial_interval
        while True:
            yield min(delay, self.max_interval)
            delay = min(delay * self.multiplier, self.max_interval)

    def poll(
        self,
        probe: Callable[[], T],
        is_done: Callable[[T], bool],
        description: str = "operation",
        cancel: Optional[CancellationToken] = None
    ) -> T:
        """Run ``probe`` until ``is_done`` accepts its result.

        Args:
            probe: Read-only callable returning the current observation
            is_done: Predicate deciding whether the observation is terminal
            description: Used in log and error messages
            cancel: Optional token to stop polling early

        Returns:
            The terminal observation

        Raises:
            OperationTimeout: If the deadline passes first
            OperationCancelled: If cancellation was requested
        """
        token = cancel or CancellationToken()
        deadline = self._clock() + self.timeout
        attempts = 0

        for delay in self.intervals():
            if token.cancelled:
                logger.info(f"Stopped polling {description}: cancelled")
                raise OperationCancelled(f"Polling for {description} was cancelled")

            observation = probe()
            attempts += 1
            if is_done(observation):
                logger.debug(f"{description} settled after {attempts} probe(s)")
                return observation

            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            wait_for = min(delay, remaining)
            logger.debug(f"Waiting {wait_for:.1f}s for {description} (probe {attempts})")
            if self._sleep is not None:
                self._sleep(wait_for)
            elif token.wait(wait_for):
                logger.info(f"Stopped polling {description}: cancelled")
                raise OperationCancelled(f"Polling for {description} was cancelled")

            if self._clock() >= deadline:
                # One last look so a change that settled during the final wait is not missed
                observation = probe()
                attempts += 1
                if is_done(observation):
                    return observation
                break

        raise OperationTimeout(
            f"Timed out after {self.timeout:.0f}s waiting for {description} ({attempts} probes)"
        )
