from app.integrations.errors import (
    CacheStoreError,
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
    PaymentDeclinedError,
)

__all__ = [
    "CacheStoreError",
    "IntegrationError",
    "IntegrationTimeoutError",
    "IntegrationUnavailableError",
    "IntegrationBadGatewayError",
    "PaymentDeclinedError",
]
