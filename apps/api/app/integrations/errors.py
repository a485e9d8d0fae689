from dataclasses import dataclass


@dataclass
class IntegrationError(Exception):
    service: str
    code: str
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.service}:{self.code}:{self.message}"

    @property
    def http_status(self) -> int:
        # Retryable failures map to 503, the rest to 502.
        return 503 if self.retryable else 502

    def as_detail(self) -> dict[str, str]:
        return {"service": self.service, "code": self.code, "message": self.message}


class IntegrationTimeoutError(IntegrationError):
    def __init__(self, service: str, message: str = "Upstream timeout") -> None:
        super().__init__(service=service, code="TIMEOUT", message=message, retryable=True)


class IntegrationUnavailableError(IntegrationError):
    def __init__(self, service: str, message: str = "Upstream unavailable") -> None:
        super().__init__(service=service, code="UNAVAILABLE", message=message, retryable=True)


class IntegrationBadGatewayError(IntegrationError):
    def __init__(self, service: str, message: str = "Unexpected upstream response") -> None:
        super().__init__(service=service, code="BAD_GATEWAY", message=message, retryable=False)


class PaymentDeclinedError(IntegrationError):
    """The processor answered, but did not report the refund as succeeded."""

    def __init__(self, service: str, message: str, processor_status: str | None = None) -> None:
        super().__init__(service=service, code="DECLINED", message=message, retryable=False)
        self.processor_status = processor_status


class CacheStoreError(RuntimeError):
    pass
