"""Type definitions, enums, and Pydantic models for the integration runtime."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """Classification of a failed connection check."""

    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate-limited"
    UNKNOWN = "unknown"


class ConnectionState(str, Enum):
    """Connector lifecycle state."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    EXPIRED = "expired"
    REVOKED = "revoked"


class SignatureScheme(str, Enum):
    """How a provider signs webhook deliveries."""

    BODY = "body"  # HMAC of the raw body
    TIMESTAMPED = "timestamped"  # HMAC of "{timestamp}.{body}", timestamp in its own header
    V1_MULTI = "v1-multi"  # "t=<timestamp>,v1=<sig>" header over "{timestamp}.{body}"


class CircuitState(str, Enum):
    """Circuit breaker state for one (provider, operation key)."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SyncPassState(str, Enum):
    """State of one sync pass."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class AcquireMode(str, Enum):
    """What the governor does when a rate-limit bucket is empty."""

    FAIL_FAST = "fail_fast"
    QUEUE = "queue"


class AuthResult(BaseModel):
    """Outcome of authenticate / refresh_token."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: list[str] = Field(default_factory=list)
    error: str | None = None

    def __repr__(self) -> str:
        # tokens stay out of logs and tracebacks
        return (
            f"AuthResult(success={self.success}, expires_at={self.expires_at!r}, "
            f"scope={self.scope!r}, error={self.error!r})"
        )

    __str__ = __repr__


class OAuthTokens(BaseModel):
    """OAuth token set from a provider token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int  # seconds
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scopes: list[str] = Field(default_factory=list)

    def is_expired(self) -> bool:
        """Check if access token has expired."""
        if not self.expires_at:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return datetime.now(UTC) >= expires_at

    def to_auth_result(self) -> AuthResult:
        return AuthResult(
            success=True,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            scope=self.scopes,
        )


class RateLimitInfo(BaseModel):
    """Provider or local rate limit snapshot."""

    limit: int
    remaining: int
    reset_time: datetime


class ConnectionStatus(BaseModel):
    """Result of a liveness check. Recomputed on demand, never persisted."""

    is_connected: bool
    last_checked: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None
    failure: FailureKind | None = None
    rate_limit_info: RateLimitInfo | None = None


class Capability(BaseModel):
    """Something a connector can do and the OAuth scopes it needs."""

    name: str
    description: str
    enabled: bool = True
    required_scopes: list[str] = Field(default_factory=list)


class StreamReport(BaseModel):
    """Per-stream breakdown of a sync pass."""

    name: str
    items_fetched: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    pages: int = 0
    failed: bool = False
    error: str | None = None


class SyncMetadata(BaseModel):
    """Metadata attached to every SyncResult."""

    synced_at: datetime
    provider: str
    state: SyncPassState = SyncPassState.COMPLETED
    duration_ms: int = 0
    streams: list[StreamReport] = Field(default_factory=list)


class SyncResult(BaseModel):
    """
    Aggregate of one sync pass across all resource streams.

    `success` is False only when every stream failed outright. Item-level
    errors are listed in `errors` but never flip it.
    """

    success: bool
    items_processed: int = 0
    items_skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    metadata: SyncMetadata


class WebhookPayload(BaseModel):
    """Inbound webhook, transient for the duration of the handler call."""

    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    query: dict[str, str] = Field(default_factory=dict)
    event: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RateLimitConfig(BaseModel):
    """Token bucket configuration for one operation key."""

    max_requests: int  # requests per time window
    time_window: float  # seconds
    max_burst: int | None = None  # optional burst allowance


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds for one operation key."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


class ConnectorConfig(BaseModel):
    """
    Per connector instance configuration.

    Which fields are required depends on the provider; connectors check them
    in `authenticate` and fail with a descriptive AuthenticationError.
    """

    provider: str
    user_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    webhook_secret: str | None = None
    scopes: list[str] = Field(default_factory=list)

    # OAuth flow / direct credentials
    code: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    username: str | None = None
    password: str | None = None

    api_base_url: str | None = None
    rate_limit: RateLimitConfig | None = None

    def __repr__(self) -> str:
        return f"ConnectorConfig(provider={self.provider!r}, user_id={self.user_id!r}, scopes={self.scopes!r})"

    __str__ = __repr__
