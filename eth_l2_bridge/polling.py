"""Cancellable, timeout-bound polling with exponential backoff.

Cross-chain message delivery and timelock delays can take anything from
seconds to a week (OP-stack withdrawal challenge window). All such waits
in this package go through :py:func:`suspend_until`:

- The wait is bounded by a timeout
- The wait backs off exponentially between polls, so long waits do not hammer RPC nodes
- The wait can be cancelled from another thread with a :py:class:`threading.Event`

Example:

.. code-block:: python

    from eth_l2_bridge.messaging.base import fetch_receipt
    from eth_l2_bridge.polling import BackoffPolicy, suspend_until

    result = suspend_until(
        poll=lambda: fetch_receipt(web3, tx_hash),
        condition=lambda receipt: receipt is not None,
        timeout=600,
        backoff=BackoffPolicy(),
        description="L2 redeem receipt",
    )
    if not result.satisfied:
        print(f"Still not there after {result.attempts} polls")
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from eth_l2_bridge import BridgeOpsError

logger = logging.getLogger(__name__)


T = TypeVar("T")


class PollingCancelled(BridgeOpsError):
    """The cancellation event was set while we were waiting."""


@dataclass(slots=True)
class BackoffPolicy:
    """How long to sleep between polls.

    Production defaults are tuned for public RPC endpoints;
    tests should use :py:meth:`create_test_config`.

    Example:

    .. code-block:: python

        # Production (default)
        backoff = BackoffPolicy()

        # Fast-fail for tests
        backoff = BackoffPolicy.create_test_config()
    """

    #: First sleep in seconds
    initial_delay: float = 2.0

    #: Maximum sleep cap in seconds
    max_delay: float = 60.0

    #: Multiplier applied to the delay after each unsatisfied poll
    multiplier: float = 1.5

    @classmethod
    def create_test_config(cls) -> "BackoffPolicy":
        """Create a backoff policy tuned for fast test feedback."""
        return cls(
            initial_delay=0.01,
            max_delay=0.05,
            multiplier=2.0,
        )

    def get_delay(self, attempt: int) -> float:
        """Sleep length after the given 1-based unsatisfied attempt."""
        assert attempt >= 1
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


@dataclass(slots=True)
class PollResult(Generic[T]):
    """Outcome of :py:func:`suspend_until`."""

    #: Last value returned by the poll function, or ``None`` if we never polled
    value: T | None

    #: Did the condition become true before the timeout
    satisfied: bool

    #: How many times the poll function was called
    attempts: int

    #: Wall clock seconds spent
    elapsed: float


def suspend_until(
    poll: Callable[[], T],
    condition: Callable[[T], bool],
    timeout: float,
    backoff: BackoffPolicy | None = None,
    cancel: threading.Event | None = None,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
) -> PollResult[T]:
    """Poll until a condition holds, the timeout passes or the wait is cancelled.

    - The poll function is always called at least once, even with zero timeout
    - Timing out is not an error: the caller inspects :py:attr:`PollResult.satisfied`
    - Sleeping is done with :py:meth:`threading.Event.wait` so that cancellation
      wakes the waiting thread immediately

    :param poll:
        Read the current state, e.g. a receipt or a contract view call.

    :param condition:
        Return ``True`` when the polled value is what we wait for.

    :param timeout:
        Seconds to wait in total.

    :param backoff:
        Sleep policy between polls.

    :param cancel:
        Set this event from another thread to abort the wait.

    :param description:
        Human-readable name of the thing we are waiting for, used in logs.

    :param clock:
        Monotonic clock, for tests.

    :return:
        Poll result with the last polled value

    :raises PollingCancelled:
        If ``cancel`` was set before the condition was satisfied
    """
    assert timeout >= 0, f"Bad timeout {timeout}"

    if backoff is None:
        backoff = BackoffPolicy()

    if cancel is None:
        cancel = threading.Event()

    started = clock()
    attempt = 0
    value: Any = None

    while True:
        if cancel.is_set():
            raise PollingCancelled(f"Waiting for {description} cancelled after {attempt} attempts")

        attempt += 1
        value = poll()
        elapsed = clock() - started

        if condition(value):
            logger.info("%s satisfied after %d attempts, %.1fs", description, attempt, elapsed)
            return PollResult(value=value, satisfied=True, attempts=attempt, elapsed=elapsed)

        remaining = timeout - elapsed
        if remaining <= 0:
            logger.info("Gave up waiting for %s after %d attempts, %.1fs", description, attempt, elapsed)
            return PollResult(value=value, satisfied=False, attempts=attempt, elapsed=elapsed)

        delay = min(backoff.get_delay(attempt), remaining)

        if attempt == 1:
            logger.info("Waiting for %s, timeout %.1fs", description, timeout)
        else:
            logger.debug("Still waiting for %s, attempt %d, next poll in %.2fs", description, attempt, delay)

        if cancel.wait(delay):
            raise PollingCancelled(f"Waiting for {description} cancelled after {attempt} attempts")
