import time
from typing import Protocol

import httpx
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    PaymentDeclinedError,
)
from app.observability import metrics_store, observe_timing

SERVICE_NAME = "payment_processor"
SUCCESS_STATUS = "succeeded"


class ProcessorRefund(BaseModel):
    id: str
    status: str
    amount: int | None = None


class PaymentProcessorProtocol(Protocol):
    def create_refund(
        self,
        *,
        payment_reference: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> ProcessorRefund: ...


class PaymentProcessorClient:
    """Refund calls against the payment processor.

    Every attempt, including retries after a timeout, carries the same
    idempotency key so the processor can collapse duplicates into one refund.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def create_refund(
        self,
        *,
        payment_reference: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> ProcessorRefund:
        if not self.base_url:
            raise IntegrationUnavailableError(SERVICE_NAME, "Payment API base URL is not configured")

        body = {"payment_reference": payment_reference, "amount": amount}
        if reason:
            body["reason"] = reason
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                timeout = httpx.Timeout(self.timeout_s)
                with observe_timing("payment_refund_call_seconds"):
                    with httpx.Client(timeout=timeout) as client:
                        response = client.post(
                            f"{self.base_url}/v1/refunds", json=body, headers=headers
                        )
                return _parse_refund_response(response)
            except httpx.TimeoutException:
                integration_error: IntegrationError = IntegrationTimeoutError(SERVICE_NAME)
            except httpx.TransportError as err:
                integration_error = IntegrationUnavailableError(SERVICE_NAME, str(err))
            except IntegrationUnavailableError as err:
                integration_error = err

            metrics_store.increment("payment_refund_call_errors_total")
            if attempt >= self.max_retries:
                raise integration_error

            time.sleep(self.backoff_s * (2**attempt))

        raise IntegrationUnavailableError(SERVICE_NAME, "Refund retry loop exhausted")


def _parse_refund_response(response: httpx.Response) -> ProcessorRefund:
    if response.status_code >= 500:
        raise IntegrationUnavailableError(SERVICE_NAME, "Payment API returned 5xx")
    if response.status_code >= 400:
        raise IntegrationBadGatewayError(
            SERVICE_NAME,
            f"Payment API returned {response.status_code}",
        )

    try:
        refund = ProcessorRefund.model_validate(response.json())
    except (ValueError, ValidationError) as err:
        raise IntegrationBadGatewayError(
            SERVICE_NAME, "Payment API returned malformed payload"
        ) from err

    if refund.status != SUCCESS_STATUS:
        raise PaymentDeclinedError(
            SERVICE_NAME,
            f"Refund {refund.id} reported status {refund.status}",
            processor_status=refund.status,
        )
    return refund


def get_payment_client() -> PaymentProcessorProtocol:
    return PaymentProcessorClient(
        settings.payment_api_base_url,
        api_key=settings.payment_api_key,
        timeout_s=settings.payment_api_timeout_s,
        max_retries=settings.payment_api_max_retries,
        backoff_s=settings.payment_api_backoff_s,
    )
