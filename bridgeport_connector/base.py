"""Connector contract and the shared base every provider connector extends."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any, TypeVar

from .cache import ResultCache
from .clock import Clock
from .exceptions import AuthenticationError, TokenError
from .governor import ResilienceGovernor, get_governor
from .sync import ResourceStream, SyncOrchestrator
from .sync_state import SyncCursorStore
from .types import (
    AuthResult,
    Capability,
    ConnectionState,
    ConnectionStatus,
    ConnectorConfig,
    SignatureScheme,
    SyncResult,
    WebhookPayload,
)
from .vault import KeyKind, ScopedTokenVault, TokenVault, vault_key
from .webhooks import WebhookVerifier, extract_signature_from_headers

logger = logging.getLogger(__name__)

T = TypeVar("T")

WebhookHandler = Callable[[WebhookPayload], Awaitable[None]]
RecordHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class ConnectorContract(ABC):
    """
    What the host application can ask of any provider connector.

    One instance serves one user's session with one provider. Credentials
    never live on the instance; they are read from the vault for the duration
    of a call.
    """

    provider: str
    webhook_signature_header: str = "x-signature"

    @abstractmethod
    async def authenticate(self, config: ConnectorConfig | None = None) -> AuthResult:
        """
        Exchange a code or credentials and persist them in the vault.

        Raises:
            AuthenticationError: Credentials invalid, expired, or a required
                config field is missing (named in the message)
        """
        ...

    @abstractmethod
    async def refresh_token(self) -> AuthResult:
        """Rotate credentials; providers without expiring tokens re-authenticate."""
        ...

    @abstractmethod
    async def revoke_access(self) -> bool:
        """Best effort revoke. Never raises; local credentials are always dropped."""
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        """Cheap read-only check, failures classified rather than raised."""
        ...

    @abstractmethod
    async def sync(self, last_sync_time: datetime | None = None) -> SyncResult:
        """Run one incremental sync pass over every resource stream."""
        ...

    @abstractmethod
    async def handle_webhook(self, payload: WebhookPayload) -> None:
        """Route an already verified event to its handler."""
        ...

    @abstractmethod
    def validate_webhook_signature(self, payload: WebhookPayload, signature: str) -> bool:
        """Pure, constant-time check of the raw body against the signature."""
        ...

    @abstractmethod
    def get_capabilities(self) -> list[Capability]: ...

    def handles_event(self, event: str | None) -> bool:
        return False


class BaseConnector(ConnectorContract):
    """
    Shared plumbing for connectors.

    Inherited functionality:
    - governed outbound calls (`governed`)
    - per-session ResultCache, invalidated from the webhook handler table
    - config validation with descriptive errors
    - credential helpers bound to the vault key convention
    - sync through SyncOrchestrator over `resource_streams()`
    - best-effort revoke that always clears local state

    Subclasses implement authenticate, refresh_token, test_connection and
    `resource_streams`, and may override `_revoke_remote`.
    """

    signature_scheme: SignatureScheme = SignatureScheme.BODY
    signature_encoding: str = "hex"
    signature_prefix: str | None = None
    webhook_timestamp_header: str = "x-timestamp"

    # event type (or fnmatch pattern) -> cached resource types it makes stale
    invalidations: dict[str, list[str]] = {}
    capabilities: list[Capability] = []

    def __init__(
        self,
        config: ConnectorConfig,
        vault: TokenVault,
        governor: ResilienceGovernor | None = None,
        cursor_store: SyncCursorStore | None = None,
        clock: Clock | None = None,
        record_handler: RecordHandler | None = None,
    ):
        self.config = config
        self.provider = config.provider
        self.vault = vault if isinstance(vault, ScopedTokenVault) else ScopedTokenVault(vault, self.provider)
        self.governor = governor or get_governor()
        self.clock = clock or self.governor.clock
        self.cursor_store = cursor_store or SyncCursorStore()
        self.record_handler = record_handler
        self.cache = ResultCache()
        self.state = ConnectionState.DISCONNECTED
        self._orchestrator: SyncOrchestrator | None = None

        if config.rate_limit:
            self.governor.configure(self.provider, rate_limit=config.rate_limit)

        self.webhook_verifier = (
            WebhookVerifier(config.webhook_secret, clock=self.clock) if config.webhook_secret else None
        )

    @property
    def user_id(self) -> str | None:
        return self.config.user_id

    # ============================================================================
    # Configuration and credentials
    # ============================================================================

    def _use_config(self, config: ConnectorConfig | None) -> ConnectorConfig:
        if config is None:
            return self.config
        if config.provider != self.provider:
            raise AuthenticationError(
                f"Config for {config.provider} passed to the {self.provider} connector",
                provider=self.provider,
            )
        self.config = config
        self.webhook_verifier = (
            WebhookVerifier(config.webhook_secret) if config.webhook_secret else None
        )
        return config

    def _require_config(self, *fields: str, config: ConnectorConfig | None = None) -> None:
        """
        Raises:
            AuthenticationError: Naming the first missing field
        """
        config = config or self.config
        for field in fields:
            if not getattr(config, field, None):
                raise AuthenticationError(
                    f"{self.provider} configuration is missing required field '{field}'",
                    provider=self.provider,
                )

    def _key(self, kind: KeyKind = KeyKind.PRIMARY) -> str:
        self._require_config("user_id")
        return vault_key(self.config.user_id, kind)

    async def store_credentials(
        self,
        access_token: str | None = None,
        refresh_token: str | None = None,
        secret: str | None = None,
        password: str | None = None,
    ) -> None:
        """Persist whichever credentials are given under the user's key ids."""
        values = {
            KeyKind.PRIMARY: access_token,
            KeyKind.REFRESH: refresh_token,
            KeyKind.SECRET: secret,
            KeyKind.PASSWORD: password,
        }
        for kind, value in values.items():
            if value:
                await self.vault.encrypt_token(value, self._key(kind))

    async def read_credential(self, kind: KeyKind = KeyKind.PRIMARY, required: bool = True) -> str | None:
        """
        Decrypt one credential for the duration of a call.

        Raises:
            AuthenticationError: If required and nothing is stored
        """
        try:
            return await self.vault.decrypt_token(self._key(kind))
        except TokenError as e:
            if not required:
                return None
            raise AuthenticationError(
                f"No stored {self.provider} credentials for user {self.user_id}; authenticate first",
                provider=self.provider,
            ) from e

    async def forget_credentials(self) -> None:
        for kind in KeyKind:
            await self.vault.delete_token(self._key(kind))

    # ============================================================================
    # Governed calls and cache
    # ============================================================================

    async def governed(
        self,
        operation_key: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run an outbound call under this provider's rate limit and circuit."""
        return await self.governor.call(self.provider, operation_key, fn, *args, **kwargs)

    def clear_cache(self) -> None:
        self.cache.clear()

    # ============================================================================
    # Sync
    # ============================================================================

    def resource_streams(self) -> list[ResourceStream]:
        """The connector's static list of independent resource streams."""
        return []

    @property
    def orchestrator(self) -> SyncOrchestrator:
        """One orchestrator per connector, so overlapping passes are refused."""
        if self._orchestrator is None:
            self._orchestrator = SyncOrchestrator.for_connector(self, clock=self.clock)
        return self._orchestrator

    async def sync(self, last_sync_time: datetime | None = None) -> SyncResult:
        return await self.orchestrator.run(last_sync_time)

    async def get_last_sync_time(self) -> datetime | None:
        if not self.user_id:
            return None
        return self.cursor_store.get_last_sync_timestamp(self.provider, self.user_id)

    # ============================================================================
    # Webhooks
    # ============================================================================

    def validate_webhook_signature(self, payload: WebhookPayload, signature: str) -> bool:
        if self.webhook_verifier is None:
            return False
        _, timestamp = extract_signature_from_headers(
            payload.headers,
            signature_key=self.webhook_signature_header,
            timestamp_key=self.webhook_timestamp_header,
        )
        return self.webhook_verifier.verify(
            payload.body,
            signature,
            scheme=self.signature_scheme,
            timestamp=timestamp,
            encoding=self.signature_encoding,
            prefix=self.signature_prefix,
            provider=self.provider,
        )

    def webhook_handlers(self) -> dict[str, WebhookHandler]:
        """Event type (or pattern) -> handler. Defaults to cache invalidation."""
        return {
            pattern: self._invalidator(resource_types)
            for pattern, resource_types in self.invalidations.items()
        }

    def _invalidator(self, resource_types: list[str]) -> WebhookHandler:
        async def invalidate(payload: WebhookPayload) -> None:
            for resource_type in resource_types:
                self.cache.invalidate(resource_type)

        return invalidate

    def _handler_for(self, event: str | None) -> WebhookHandler | None:
        if not event:
            return None
        handlers = self.webhook_handlers()
        if event in handlers:
            return handlers[event]
        for pattern, handler in handlers.items():
            if fnmatchcase(event, pattern):
                return handler
        return None

    def handles_event(self, event: str | None) -> bool:
        return self._handler_for(event) is not None

    async def handle_webhook(self, payload: WebhookPayload) -> None:
        handler = self._handler_for(payload.event)
        if handler is None:
            logger.info("Unhandled %s webhook event: %s", self.provider, payload.event)
            return
        logger.debug("Processing %s webhook event %s", self.provider, payload.event)
        await handler(payload)

    # ============================================================================
    # Capabilities and lifecycle
    # ============================================================================

    def get_capabilities(self) -> list[Capability]:
        return [capability.model_copy() for capability in self.capabilities]

    def validate_required_scopes(self, scopes: list[str]) -> bool:
        """True when every requested scope is one some capability needs."""
        known = {scope for capability in self.get_capabilities() for scope in capability.required_scopes}
        return all(scope in known for scope in scopes)

    async def _revoke_remote(self) -> bool:
        """Tell the provider to drop the grant. No remote revoke by default."""
        return True

    async def revoke_access(self) -> bool:
        try:
            revoked = await self._revoke_remote()
        except Exception as e:
            logger.warning("Remote revoke failed for %s user %s: %s", self.provider, self.user_id, e)
            revoked = False

        try:
            await self.forget_credentials()
        except Exception as e:
            logger.warning("Could not delete stored %s credentials: %s", self.provider, e)
            revoked = False

        self.cache.clear()
        self.state = ConnectionState.REVOKED
        return revoked

    async def close(self) -> None:
        """Release HTTP connections. Subclasses owning clients override."""

    async def __aenter__(self) -> "BaseConnector":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.provider!r}, user_id={self.user_id!r}, state={self.state.value})"
