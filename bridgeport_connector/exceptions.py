"""Custom exceptions for the integration runtime."""

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import SyncResult


class IntegrationError(Exception):
    """Base exception for all integration runtime errors."""

    def __init__(self, message: str, provider: str | None = None, trace_id: str | None = None):
        self.message = message
        self.provider = provider
        self.trace_id = trace_id
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert exception to API error response format."""
        return {
            "error": {
                "code": self.__class__.__name__.replace("Error", "").lower(),
                "message": self.message,
                "provider": self.provider,
                "trace_id": self.trace_id,
            }
        }


class AuthenticationError(IntegrationError):
    """Bad, expired or missing credentials. Never retried automatically."""


class ConfigurationError(IntegrationError):
    """Connector or runtime configuration is incomplete or invalid."""


class TokenError(IntegrationError):
    """Token vault storage, retrieval, or encryption errors."""


class WebhookError(IntegrationError):
    """Webhook verification or parsing errors."""


class RateLimitError(IntegrationError):
    """Rate limit exhausted, locally or reported by the provider (429)."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        trace_id: str | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message, provider, trace_id)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["error"]["retry_after"] = self.retry_after
        return data


class CircuitOpenError(IntegrationError):
    """Call short-circuited by an open breaker before any network I/O."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        operation_key: str | None = None,
        retry_at: datetime | None = None,
    ):
        super().__init__(message, provider)
        self.operation_key = operation_key
        self.retry_at = retry_at

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["error"]["operation_key"] = self.operation_key
        data["error"]["retry_at"] = self.retry_at.isoformat() if self.retry_at else None
        return data


class SyncError(IntegrationError):
    """Every resource stream of a sync pass failed."""

    def __init__(self, message: str, provider: str | None = None, result: "SyncResult | None" = None):
        super().__init__(message, provider)
        self.result = result


class ProviderAPIError(IntegrationError):
    """Provider API errors (5xx, unexpected status, network failures)."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        trace_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, provider, trace_id)
        self.status_code = status_code


class ResponseSchemaError(ProviderAPIError):
    """Provider response did not match the expected schema."""
