"""Bridgeport Connector - generic runtime for SaaS provider integrations."""

from .base import BaseConnector, ConnectorContract
from .cache import ResultCache
from .exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    IntegrationError,
    ProviderAPIError,
    RateLimitError,
    ResponseSchemaError,
    SyncError,
    TokenError,
    WebhookError,
)
from .governor import ResilienceGovernor, get_governor, set_governor
from .metrics import IntegrationMetrics
from .providers import ConnectorRegistry, HttpConnector, ProviderSpec, StreamSpec
from .sync import ResourceStream, SyncOrchestrator
from .sync_state import SyncCursor, SyncCursorStore
from .types import (
    AuthResult,
    Capability,
    ConnectionStatus,
    ConnectorConfig,
    SignatureScheme,
    SyncResult,
    WebhookPayload,
)
from .vault import DynamoTokenVault, LocalTokenVault, ScopedTokenVault, TokenVault
from .webhooks import WebhookGateway, WebhookVerifier

__version__ = "0.2.0"

__all__ = [
    "ConnectorContract",
    "BaseConnector",
    "HttpConnector",
    "ProviderSpec",
    "StreamSpec",
    "ConnectorRegistry",
    "ResilienceGovernor",
    "get_governor",
    "set_governor",
    "IntegrationMetrics",
    "SyncOrchestrator",
    "ResourceStream",
    "SyncCursor",
    "SyncCursorStore",
    "WebhookGateway",
    "WebhookVerifier",
    "ResultCache",
    "TokenVault",
    "ScopedTokenVault",
    "LocalTokenVault",
    "DynamoTokenVault",
    "AuthResult",
    "Capability",
    "ConnectionStatus",
    "ConnectorConfig",
    "SignatureScheme",
    "SyncResult",
    "WebhookPayload",
    "IntegrationError",
    "AuthenticationError",
    "ConfigurationError",
    "TokenError",
    "WebhookError",
    "RateLimitError",
    "CircuitOpenError",
    "SyncError",
    "ProviderAPIError",
    "ResponseSchemaError",
]
