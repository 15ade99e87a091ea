"""Retry functionality."""

from collections.abc import Callable, Sequence
import logging
import subprocess
import time
from typing import Any, NamedTuple, TypeVar, cast

_LOGGER = logging.getLogger("retry")

F = TypeVar("F", bound=Callable[..., Any])


class Retryable(BaseException):
    """Type of exception that can be retried."""

    pass


class retry:
    """Retry a particular callable.

    Returns a callable that will retry the callee up to N times,
    if the callee raises an exception of type Retryable.
    To be clear: if N == 0, then the function will not retry.
    So, to get three tries, you must pass N == 2.
    """

    def __init__(
        self,
        N: int,
        timeout: int | float = 0,
        retryable_exception: type[BaseException] = Retryable,
    ) -> None:
        """Initialize the retrier.

        Args:
        N: number of retries (0 = no retry)
        timeout: time to sleep between retries
        retryable_exception: type of exception to retry
        """
        self.N = N
        self.timeout = timeout
        self.retryable_exception = retryable_exception

    def __call__(self, kallable: F) -> F:
        """Return a function that will retry the callable.

        Each call of the returned function gets its own budget of retries.
        """

        def retryer(*a: Any, **kw: Any) -> Any:
            remaining = self.N
            while True:
                try:
                    return kallable(*a, **kw)
                except self.retryable_exception as e:
                    if remaining < 1:
                        raise
                    _LOGGER.debug(
                        "Received retryable error %s running %s, "
                        "trying %s more times",
                        e,
                        getattr(kallable, "__name__", kallable),
                        remaining,
                    )
                    time.sleep(self.timeout)
                remaining -= 1

        return cast(F, retryer)


class Strategy(NamedTuple):
    """One rung of a cleanup ladder."""

    name: str
    action: Callable[[], object]


def run_ladder(
    strategies: Sequence[Strategy],
    achieved: Callable[[], bool],
    tolerated: tuple[type[BaseException], ...] = (subprocess.CalledProcessError,),
) -> bool:
    """Run strategies in order until the postcondition holds.

    The postcondition is checked before the first strategy and after each
    one, so no strategy runs once the goal has been reached.  Failures of a
    strategy with an exception of a tolerated type are logged and the next
    strategy is tried.  Returns whether the postcondition finally holds.
    """
    if achieved():
        return True
    for strategy in strategies:
        _LOGGER.debug("Trying strategy: %s", strategy.name)
        try:
            strategy.action()
        except tolerated as e:
            _LOGGER.debug("Strategy %s failed: %s", strategy.name, e)
        if achieved():
            _LOGGER.debug("Strategy %s achieved the goal", strategy.name)
            return True
    return False
