"""Bounded retries with pluggable delay strategies."""

import logging
import time
from typing import Callable, TypeVar

from .exceptions import DapError, NetworkError, RetryExhausted

T = TypeVar("T")


class FixedDelay:
    def __init__(self, seconds: float):
        self.seconds = seconds

    def __call__(self, attempt: int) -> float:
        return self.seconds

    def __repr__(self):
        return f"FixedDelay({self.seconds})"


class ExponentialBackoff:
    """Delay of ``initial * factor ** (attempt - 1)``, capped at ``maximum``."""

    def __init__(self, initial: float, factor: float = 2.0, maximum: float = 30.0):
        self.initial = initial
        self.factor = factor
        self.maximum = maximum

    def __call__(self, attempt: int) -> float:
        return min(self.initial * self.factor ** (attempt - 1), self.maximum)

    def __repr__(self):
        return (
            f"ExponentialBackoff(initial={self.initial}, factor={self.factor}, "
            f"maximum={self.maximum})"
        )


def delay_strategy(
    initial: float, factor: float = 1.0, maximum: float = 30.0
) -> Callable[[int], float]:
    if factor == 1.0:
        return FixedDelay(initial)
    return ExponentialBackoff(initial, factor, maximum)


def retry_call(
    func: Callable[[], T],
    attempts: int,
    delay: Callable[[int], float],
    description: str,
    retry_on: tuple[type[DapError], ...] = (NetworkError,),
    sleep: Callable[[float], object] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying only on ``retry_on`` errors.

    Any other exception propagates immediately. When every attempt fails the
    last error is wrapped in ``RetryExhausted``.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                raise RetryExhausted(
                    f"{description} failed after {attempts} attempts: {e.message}",
                    step=e.step,
                    status_code=e.status_code,
                    job_url=e.job_url,
                    detail=e.detail,
                ) from e
            wait = delay(attempt)
            logging.warning(
                f"{description} attempt {attempt}/{attempts} failed: {e}. "
                f"Retrying in {wait}s."
            )
            sleep(wait)
