"""Bounded exponential backoff for transient store errors."""

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from migration_hub.domain.errors import ConnectivityError, ErrorKind, classify_error
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_ms: int = 500

    def delay_seconds(self, attempt: int) -> float:
        return self.backoff_ms * (2**attempt) / 1000


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    op_name: str,
    sleep: Callable[[float], None] = time.sleep,
    **log_context,
) -> T:
    """
    Run ``operation``, retrying connectivity-kind failures only.

    Any other error kind propagates on the first occurrence. Exhausting the
    attempts raises ConnectivityError chained to the last store error.
    """
    last_error: BaseException = RuntimeError("retry loop did not execute")
    for attempt in range(policy.max_attempts):
        try:
            return operation()
        except Exception as e:
            if classify_error(e) is not ErrorKind.CONNECTIVITY:
                raise
            last_error = e
            if attempt + 1 < policy.max_attempts:
                delay = policy.delay_seconds(attempt)
                logger.warning(
                    "store.operation.retrying",
                    operation=op_name,
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                    **log_context,
                )
                sleep(delay)

    logger.error(
        "store.operation.retries_exhausted",
        operation=op_name,
        max_attempts=policy.max_attempts,
        error=str(last_error),
        **log_context,
    )
    raise ConnectivityError(
        f"{op_name} failed after {policy.max_attempts} attempts: {last_error}"
    ) from last_error
