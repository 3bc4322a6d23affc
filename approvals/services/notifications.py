# ==== NOTIFICATION EMITTER ==== #

"""
Notification emitter for committed workflow transitions.

Delivery transport is owned elsewhere (mail, chat, in-app inbox). The
engine hands every ``NotificationEvent`` to a ``Notifier`` after commit;
the default notifier only logs, the webhook notifier POSTs the event as
JSON to a configured endpoint with a bounded retry.
"""

from abc import ABC, abstractmethod

import httpx

from approvals.errors import NotificationError
from approvals.observability.logging import get_logger
from approvals.observability.metrics import notifications_sent_total
from approvals.observability.tracing import get_tracer
from approvals.resilience.retry_policies import create_webhook_retry_policy, retry_async_operation
from approvals.schemas.workflow import NotificationEvent
from approvals.settings import Settings, get_settings


logger = get_logger(__name__)
tracer = get_tracer(__name__)


class Notifier(ABC):
    """Outbound notification port."""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> None:
        """Deliver one event. Raises ``NotificationError`` on failure."""

    async def aclose(self) -> None:
        """Release transport resources."""


class LoggingNotifier(Notifier):
    """Writes events to the structured log. Used when no webhook is configured."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "Workflow notification",
            request_id=event.request_id,
            kind=event.kind,
            to_user_id=event.to_user_id,
            to_role=event.to_role,
        )
        notifications_sent_total.labels(kind=event.kind).inc()


class WebhookNotifier(Notifier):
    """
    POSTs events to an HTTP endpoint.

    Connection-level failures are retried with the webhook retry policy.
    Non-2xx answers and exhausted retries become ``NotificationError``.

    Args:
        url: Webhook endpoint
        timeout_seconds: Per-request timeout
        max_attempts: Total attempts per event
        client: Optional preconfigured ``httpx.AsyncClient``
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 3.0,
        max_attempts: int = 2,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._retry_policy = create_webhook_retry_policy(max_attempts)

    async def _post(self, event: NotificationEvent) -> httpx.Response:
        response = await self._client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()
        return response

    async def notify(self, event: NotificationEvent) -> None:
        with tracer.start_as_current_span("notification_webhook") as span:
            span.set_attribute("request_id", event.request_id)
            span.set_attribute("kind", event.kind)
            try:
                response = await retry_async_operation(
                    self._post, self._retry_policy, "notify", event
                )
            except httpx.HTTPStatusError as exc:
                span.set_attribute("http.status_code", exc.response.status_code)
                raise NotificationError(
                    f"Webhook answered {exc.response.status_code} for {event.kind}",
                    request_id=event.request_id,
                ) from exc
            except httpx.HTTPError as exc:
                raise NotificationError(
                    f"Webhook delivery failed for {event.kind}: {exc}",
                    request_id=event.request_id,
                ) from exc

            span.set_attribute("http.status_code", response.status_code)
        notifications_sent_total.labels(kind=event.kind).inc()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_notifier(settings: Settings | None = None) -> Notifier:
    """Pick the notifier implementation from settings."""
    settings = settings or get_settings()
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS,
            max_attempts=settings.NOTIFICATION_RETRY_MAX_ATTEMPTS,
        )
    return LoggingNotifier()
