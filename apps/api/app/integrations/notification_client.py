from typing import Protocol

import httpx

from app.config import settings
from app.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
)
from app.observability import log_event

SERVICE_NAME = "email_api"


class NotifierProtocol(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


class EmailApiNotifier:
    """Send one transactional email through the email HTTP API.

    Single attempt: callers dispatch this fire-and-forget and only log failures.
    """

    def __init__(self, base_url: str, sender: str, timeout_s: float) -> None:
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.timeout_s = timeout_s

    def send(self, recipient: str, subject: str, body: str) -> None:
        payload = {"from": self.sender, "to": recipient, "subject": subject, "text": body}
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.post(f"{self.base_url}/v1/messages", json=payload)
        except httpx.TimeoutException as err:
            raise IntegrationTimeoutError(SERVICE_NAME) from err
        except httpx.TransportError as err:
            raise IntegrationUnavailableError(SERVICE_NAME, str(err)) from err

        if response.status_code >= 500:
            raise IntegrationUnavailableError(SERVICE_NAME, "Email API returned 5xx")
        if response.status_code >= 400:
            raise IntegrationBadGatewayError(
                SERVICE_NAME, f"Email API returned {response.status_code}"
            )


class LoggingNotifier:
    def send(self, recipient: str, subject: str, body: str) -> None:
        log_event("notification_logged", detail={"recipient": recipient, "subject": subject})


def get_notifier() -> NotifierProtocol:
    if not settings.email_api_base_url:
        return LoggingNotifier()
    return EmailApiNotifier(
        settings.email_api_base_url,
        sender=settings.email_from,
        timeout_s=settings.email_api_timeout_s,
    )
