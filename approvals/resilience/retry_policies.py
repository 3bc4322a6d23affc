"""Retry policies for the workflow engine and its outbound calls."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type
)

from approvals.errors import VersionConflict
from approvals.observability.metrics import Counter
from approvals.observability.tracing import get_tracer

tracer = get_tracer(__name__)

# Metrics
retry_attempts_total = Counter(
    "approvals_retry_attempts_total",
    "Total retry attempts",
    ["service", "operation", "attempt"]
)

retry_failures_total = Counter(
    "approvals_retry_failures_total",
    "Total retry failures after all attempts",
    ["service", "operation", "error_type"]
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0


class ExponentialBackoffPolicy:
    """Exponential backoff with full jitter, bounded by attempt count."""

    def __init__(
        self,
        config: RetryConfig,
        service_name: str = "unknown",
        retryable_exceptions: tuple = (Exception,)
    ):
        self.config = config
        self.service_name = service_name
        self.retryable_exceptions = retryable_exceptions

    def _retry_kwargs(self, operation_name: str) -> dict:
        return dict(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.config.base_delay,
                max=self.config.max_delay
            ),
            retry=retry_if_exception_type(self.retryable_exceptions),
            before_sleep=self._before_sleep_callback(operation_name),
            after=self._after_callback(operation_name),
            reraise=True,
        )

    def get_tenacity_decorator(self, operation_name: str = "unknown"):
        """Get tenacity decorator with exponential backoff."""
        return retry(**self._retry_kwargs(operation_name))

    def async_retrying(self, operation_name: str = "unknown") -> AsyncRetrying:
        """Get an ``AsyncRetrying`` iterator for ``async for attempt in ...`` loops."""
        return AsyncRetrying(**self._retry_kwargs(operation_name))

    def _before_sleep_callback(self, operation_name: str):
        """Callback before sleep between retries."""
        def callback(retry_state):
            attempt = retry_state.attempt_number
            retry_attempts_total.labels(
                service=self.service_name,
                operation=operation_name,
                attempt=str(attempt)
            ).inc()

            with tracer.start_as_current_span("retry_attempt") as span:
                span.set_attribute("service", self.service_name)
                span.set_attribute("operation", operation_name)
                span.set_attribute("attempt", attempt)
                span.set_attribute("exception", str(retry_state.outcome.exception()))

        return callback

    def _after_callback(self, operation_name: str):
        """Callback after a failed attempt."""
        def callback(retry_state):
            if retry_state.outcome.failed and retry_state.attempt_number >= self.config.max_attempts:
                exception = retry_state.outcome.exception()
                retry_failures_total.labels(
                    service=self.service_name,
                    operation=operation_name,
                    error_type=type(exception).__name__
                ).inc()

        return callback


# Predefined retry policies

def create_cas_retry_policy(max_attempts: int = 5) -> ExponentialBackoffPolicy:
    """Create retry policy for compare-and-swap conflicts on a request.

    Each attempt reloads the request, so delays stay short: the goal is
    only to let the competing writer finish its commit.
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        base_delay=0.005,
        max_delay=0.1,
    )

    return ExponentialBackoffPolicy(
        config=config,
        service_name="request_store",
        retryable_exceptions=(VersionConflict,)
    )


def create_webhook_retry_policy(max_attempts: int = 2) -> ExponentialBackoffPolicy:
    """Create retry policy for notification webhook calls."""
    config = RetryConfig(
        max_attempts=max_attempts,
        base_delay=0.2,
        max_delay=2.0,
    )

    retryable_exceptions = (
        httpx.ConnectTimeout,
        httpx.ReadTimeout,
        httpx.ConnectError,
        httpx.RemoteProtocolError,
        ConnectionError,
    )

    return ExponentialBackoffPolicy(
        config=config,
        service_name="notification_webhook",
        retryable_exceptions=retryable_exceptions
    )


async def retry_async_operation(
    operation: Callable[..., Awaitable[Any]],
    policy: ExponentialBackoffPolicy,
    operation_name: str = "unknown",
    *args,
    **kwargs
) -> Any:
    """Retry async operation with given policy.

    Args:
        operation: Async function to retry
        policy: Retry policy to use
        operation_name: Name for metrics/logging
        *args: Operation arguments
        **kwargs: Operation keyword arguments

    Returns:
        Operation result

    Raises:
        Exception: Last exception if all retries failed
    """
    decorated_operation = policy.get_tenacity_decorator(operation_name)(operation)
    return await decorated_operation(*args, **kwargs)
