"""
Retry/DLQ decision for a failed dispatch.

Pure functions: given the parsed metadata, the retry policy and the current
time, decide whether a failed message goes to the next retry topic or to
the dead-letter topic, and when it becomes due.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from kafka_retry.config import RetryConfig
from kafka_retry.message import RetryMetadata


class Route(str, Enum):
    RETRY = "retry"
    DLQ = "dlq"


@dataclass(frozen=True)
class RetryDecision:
    """Where a failed message goes next.

    Attributes:
        route: RETRY or DLQ
        retry_count: x-retry-count for the outbound record
        delay_ms: Backoff delay (retry route only)
        next_retry_timestamp: Epoch ms when the retry becomes due (retry route only)
    """

    route: Route
    retry_count: int
    delay_ms: Optional[int] = None
    next_retry_timestamp: Optional[int] = None


def compute_retry_delay(config: RetryConfig, retry_count: int) -> int:
    """
    Exponential backoff: ``initial_delay * backoff_factor ** retry_count``.

    No jitter is applied. The result is capped only when ``max_delay_ms`` is
    configured.

    Args:
        config: Retry policy
        retry_count: Attempts already made (0 for the first failure)

    Returns:
        Delay in milliseconds
    """
    delay = config.initial_delay_ms * (config.backoff_factor ** retry_count)
    if config.max_delay_ms is not None:
        delay = min(delay, config.max_delay_ms)
    return int(round(delay))


def decide_route(metadata: RetryMetadata, config: RetryConfig, now: int) -> RetryDecision:
    """
    Decide the next hop for a message whose handling just failed.

    A message that already used all its retries goes to the DLQ with its
    current count; otherwise it goes to retry level ``retry_count + 1``.
    The due time never moves backwards across hops.
    """
    retry_count = metadata.retry_count
    next_level = retry_count + 1

    if next_level > config.max_retries:
        return RetryDecision(route=Route.DLQ, retry_count=min(retry_count, config.max_retries))

    delay = compute_retry_delay(config, retry_count)
    next_retry = max(now + delay, metadata.next_retry_timestamp)
    return RetryDecision(
        route=Route.RETRY,
        retry_count=next_level,
        delay_ms=delay,
        next_retry_timestamp=next_retry,
    )


__all__ = [
    "Route",
    "RetryDecision",
    "compute_retry_delay",
    "decide_route",
]
