from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import IngestError
from .utils import log_event

T = TypeVar("T")


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, IngestError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, ConnectionError))


def backoff_delay(attempt: int, base_delay: float, jitter: bool = True) -> float:
    """Delay to wait after failed ``attempt`` (1-based) before the next one."""
    delay = base_delay * (2 ** (attempt - 1))
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return delay


def with_retry(
    operation: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_retries`` attempts are used.

    Errors rejected by ``is_retryable`` are raised immediately. When the
    attempts run out the last error is raised unchanged.
    """
    attempts = max(1, int(max_retries))
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            delay = backoff_delay(attempt, base_delay, jitter)
            if logger is not None:
                log_event(
                    logger,
                    logging.WARNING,
                    "retry_scheduled",
                    label=label,
                    attempt=attempt,
                    max_retries=attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                )
            sleep(delay)
            attempt += 1


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    jitter: bool = True
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, retry_cfg, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_retries=retry_cfg.max_retries,
            base_delay_seconds=retry_cfg.base_delay_seconds,
            jitter=retry_cfg.jitter,
            sleep=sleep,
        )

    def run(
        self,
        operation: Callable[[], T],
        *,
        logger: logging.Logger | None = None,
        label: str = "operation",
    ) -> T:
        return with_retry(
            operation,
            max_retries=self.max_retries,
            base_delay=self.base_delay_seconds,
            jitter=self.jitter,
            sleep=self.sleep,
            logger=logger,
            label=label,
        )
