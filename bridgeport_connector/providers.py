"""
Declarative provider connectors.

A `ProviderSpec` describes everything provider specific: endpoints, how the
user authenticates, the resource streams to sync, the webhook signature
scheme and which cached resources each webhook event makes stale.
`HttpConnector` implements the whole connector contract from a spec, and
`ConnectorRegistry` maps provider names to specs and live sessions.

Usage:
    registry = ConnectorRegistry(vault=LocalTokenVault("..."))
    hubspot = registry.connector("hubspot", user_id="user123")
    await hubspot.authenticate(config)
    result = await hubspot.sync()
"""

import base64
import logging
from datetime import timedelta
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from .base import BaseConnector, RecordHandler
from .client import ProviderClient
from .clock import Clock
from .config import connector_config_from_env
from .exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    IntegrationError,
    RateLimitError,
)
from .governor import ResilienceGovernor, get_governor
from .oauth import OAuthHandler
from .sync import Record, ResourceStream
from .sync_state import SyncCursorStore
from .types import (
    AuthResult,
    Capability,
    ConnectionState,
    ConnectionStatus,
    ConnectorConfig,
    FailureKind,
    RateLimitConfig,
    RateLimitInfo,
    SignatureScheme,
)
from .vault import KeyKind, TokenVault

logger = logging.getLogger(__name__)


class AuthStyle(str, Enum):
    """How a provider's users authenticate."""

    OAUTH = "oauth"  # authorization code, or a pre-issued access token
    API_KEY = "api_key"  # bearer api key, optional api secret
    BASIC = "basic"  # service account username/password


class StreamSpec(BaseModel):
    """One paginated listing endpoint synced as a resource stream."""

    name: str
    path: str
    items_key: str | None = "results"
    cursor_key: str | None = None
    cursor_param: str = "after"
    params: dict[str, Any] = Field(default_factory=dict)
    modified_field: str | None = "updatedAt"
    id_field: str = "id"


class ProviderSpec(BaseModel):
    """Everything provider specific about an HTTP connector."""

    name: str
    display_name: str
    api_base_url: str
    auth_style: AuthStyle = AuthStyle.OAUTH
    auth_url: str | None = None
    token_url: str | None = None
    revoke_url: str | None = None
    default_scopes: list[str] = Field(default_factory=list)

    check_path: str
    check_params: dict[str, Any] = Field(default_factory=dict)

    streams: list[StreamSpec] = Field(default_factory=list)
    # resource type -> path for cached single reads outside sync
    resources: dict[str, str] = Field(default_factory=dict)

    signature_header: str = "x-signature"
    signature_scheme: SignatureScheme = SignatureScheme.BODY
    signature_encoding: str = "hex"
    signature_prefix: str | None = None
    timestamp_header: str = "x-timestamp"
    invalidations: dict[str, list[str]] = Field(default_factory=dict)

    capabilities: list[Capability] = Field(default_factory=list)
    rate_limit: RateLimitConfig | None = None

    def resource_path(self, resource_type: str) -> str:
        if resource_type in self.resources:
            return self.resources[resource_type]
        for stream in self.streams:
            if stream.name == resource_type:
                return stream.path
        raise ConfigurationError(
            f"{self.name} has no resource type {resource_type!r}",
            provider=self.name,
        )


class HttpConnector(BaseConnector):
    """Connector whose provider specifics all come from a ProviderSpec."""

    def __init__(
        self,
        spec: ProviderSpec,
        config: ConnectorConfig,
        vault: TokenVault,
        governor: ResilienceGovernor | None = None,
        cursor_store: SyncCursorStore | None = None,
        clock: Clock | None = None,
        record_handler: RecordHandler | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if config.provider != spec.name:
            raise ConfigurationError(
                f"Config for {config.provider} cannot drive the {spec.name} connector",
                provider=spec.name,
            )
        if not config.scopes and spec.default_scopes:
            config = config.model_copy(update={"scopes": list(spec.default_scopes)})

        super().__init__(config, vault, governor, cursor_store, clock, record_handler)
        self.spec = spec

        self.webhook_signature_header = spec.signature_header
        self.signature_scheme = spec.signature_scheme
        self.signature_encoding = spec.signature_encoding
        self.signature_prefix = spec.signature_prefix
        self.webhook_timestamp_header = spec.timestamp_header
        self.invalidations = spec.invalidations
        self.capabilities = spec.capabilities

        # a provider default never resets buckets another session already uses
        if spec.rate_limit and self.provider not in self.governor.rate_limiter.provider_configs:
            self.governor.configure(self.provider, rate_limit=spec.rate_limit)

        self.client = ProviderClient(
            self.provider,
            config.api_base_url or spec.api_base_url,
            governor=self.governor,
            http_client=http_client,
        )
        self._oauth: OAuthHandler | None = None

    @property
    def oauth(self) -> OAuthHandler:
        """
        Raises:
            AuthenticationError: If client credentials or token URL are missing
        """
        if self._oauth is None:
            self._require_config("client_id", "client_secret")
            if not self.spec.token_url:
                raise AuthenticationError(
                    f"{self.provider} does not support the OAuth code flow",
                    provider=self.provider,
                )
            self._oauth = OAuthHandler(
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
                auth_url=self.spec.auth_url or "",
                token_url=self.spec.token_url,
                revoke_url=self.spec.revoke_url,
                provider=self.provider,
                http_client=self.client.http_client,
            )
        return self._oauth

    def build_authorization_url(self, state: str | None = None, **extra_params: Any) -> str:
        """Consent URL the host redirects the user to."""
        self._require_config("redirect_uri")
        return self.oauth.build_authorization_url(
            redirect_uri=self.config.redirect_uri,
            scopes=self.config.scopes,
            state=state,
            **extra_params,
        )

    # ============================================================================
    # Authentication
    # ============================================================================

    def _scrub_config(self) -> None:
        """Plaintext credentials live in the vault only once stored."""
        self.config = self.config.model_copy(
            update={
                "code": None,
                "access_token": None,
                "refresh_token": None,
                "api_key": None,
                "api_secret": None,
                "password": None,
            }
        )

    async def authenticate(self, config: ConnectorConfig | None = None) -> AuthResult:
        config = self._use_config(config)
        self._require_config("user_id")
        style = self.spec.auth_style

        if style == AuthStyle.OAUTH and config.code:
            self._require_config("client_id", "client_secret", "redirect_uri")
            tokens = await self.governed(
                "auth.exchange", self.oauth.exchange_code, config.code, config.redirect_uri
            )
            await self.store_credentials(tokens.access_token, tokens.refresh_token)
            result = tokens.to_auth_result()
        else:
            result = await self._authenticate_direct(config, style)

        self._scrub_config()
        self.state = ConnectionState.CONNECTED
        logger.info("Authenticated %s user %s", self.provider, self.user_id)
        return result

    async def _authenticate_direct(self, config: ConnectorConfig, style: AuthStyle) -> AuthResult:
        fields = {
            AuthStyle.OAUTH: ("access_token",),
            AuthStyle.API_KEY: ("api_key",),
            AuthStyle.BASIC: ("username", "password"),
        }[style]

        given = all(getattr(config, field) for field in fields)
        if given:
            if style == AuthStyle.BASIC:
                await self.store_credentials(config.username, password=config.password)
            else:
                await self.store_credentials(
                    config.access_token or config.api_key,
                    refresh_token=config.refresh_token,
                    secret=config.api_secret,
                )
        elif not await self.vault.has_token(self._key()):
            if style == AuthStyle.OAUTH:
                raise AuthenticationError(
                    f"{self.provider} configuration is missing required field 'code' or 'access_token'",
                    provider=self.provider,
                )
            self._require_config(*fields)

        try:
            await self._check_access("auth.test")
        except AuthenticationError:
            if given:
                await self.forget_credentials()
            self.state = ConnectionState.DISCONNECTED
            raise

        if style == AuthStyle.OAUTH and given:
            return AuthResult(
                success=True,
                access_token=config.access_token,
                refresh_token=config.refresh_token,
                scope=config.scopes,
            )
        return AuthResult(success=True, scope=config.scopes)

    async def refresh_token(self) -> AuthResult:
        if self.spec.auth_style != AuthStyle.OAUTH or not self.spec.token_url:
            return await self.authenticate()

        refresh = await self.read_credential(KeyKind.REFRESH, required=False)
        if not refresh or not (self.config.client_id and self.config.client_secret):
            return await self.authenticate()

        try:
            tokens = await self.governed("auth.refresh", self.oauth.refresh_token, refresh)
        except AuthenticationError:
            self.state = ConnectionState.EXPIRED
            raise

        # providers that don't rotate refresh tokens keep the stored one
        await self.store_credentials(tokens.access_token, tokens.refresh_token)
        self.state = ConnectionState.CONNECTED
        result = tokens.to_auth_result()
        if not result.refresh_token:
            result.refresh_token = refresh
        return result

    async def _revoke_remote(self) -> bool:
        if not self.spec.revoke_url or not (self.config.client_id and self.config.client_secret):
            return True
        token = await self.read_credential(required=False)
        if not token:
            return True
        return await self.governed("auth.revoke", self.oauth.revoke_token, token)

    # ============================================================================
    # Requests
    # ============================================================================

    async def _credentials(self) -> dict[str, Any]:
        """Request kwargs carrying the user's credentials for one call."""
        primary = await self.read_credential()
        if self.spec.auth_style == AuthStyle.BASIC:
            password = await self.read_credential(KeyKind.PASSWORD)
            encoded = base64.b64encode(f"{primary}:{password}".encode()).decode()
            return {"headers": {"Authorization": f"Basic {encoded}"}}
        return {"access_token": primary}

    async def _check_access(self, operation_key: str) -> Any:
        credentials = await self._credentials()
        return await self.client.get(
            self.spec.check_path,
            operation_key=operation_key,
            params=self.spec.check_params or None,
            **credentials,
        )

    async def test_connection(self) -> ConnectionStatus:
        operation_key = "connection.test"
        try:
            await self._check_access(operation_key)
        except AuthenticationError:
            if self.state == ConnectionState.CONNECTED:
                self.state = ConnectionState.EXPIRED
            return ConnectionStatus(
                is_connected=False,
                error="Authentication failed",
                failure=FailureKind.UNAUTHENTICATED,
            )
        except RateLimitError as e:
            local = self.governor.rate_limiter.get_info(self.provider, operation_key)
            return ConnectionStatus(
                is_connected=False,
                error="Rate limit exceeded",
                failure=FailureKind.RATE_LIMITED,
                rate_limit_info=RateLimitInfo(
                    limit=local.limit if local else 0,
                    remaining=0,
                    reset_time=self.clock.now() + timedelta(seconds=e.retry_after or 60),
                ),
            )
        except CircuitOpenError as e:
            local = self.governor.rate_limiter.get_info(self.provider, operation_key)
            return ConnectionStatus(
                is_connected=False,
                error=f"Circuit open: {e.message}",
                failure=FailureKind.RATE_LIMITED,
                rate_limit_info=RateLimitInfo(
                    limit=local.limit if local else 0,
                    remaining=local.remaining if local else 0,
                    reset_time=e.retry_at or self.clock.now() + timedelta(seconds=60),
                ),
            )
        except IntegrationError as e:
            logger.warning("%s connection test failed: %s", self.provider, e.message)
            return ConnectionStatus(
                is_connected=False,
                error=e.message,
                failure=FailureKind.UNKNOWN,
            )

        return ConnectionStatus(
            is_connected=True,
            rate_limit_info=self.governor.rate_limiter.get_info(self.provider, operation_key),
        )

    async def get_resource(self, resource_type: str, sub_id: str | None = None) -> Any:
        """Cached, governed read of one resource (or its first listing page)."""
        path = self.spec.resource_path(resource_type)
        if sub_id:
            path = f"{path.rstrip('/')}/{sub_id}"

        async def fetch() -> Any:
            credentials = await self._credentials()
            return await self.client.get(path, operation_key=f"api.get_{resource_type}", **credentials)

        return await self.cache.get_or_fetch(resource_type, fetch, sub_id)

    # ============================================================================
    # Sync
    # ============================================================================

    def resource_streams(self) -> list[ResourceStream]:
        return [
            ResourceStream(
                name=stream.name,
                fetch=self._fetcher(stream),
                process=self._processor(stream),
                modified_field=stream.modified_field,
                id_field=stream.id_field,
            )
            for stream in self.spec.streams
        ]

    def _fetcher(self, stream: StreamSpec):
        async def fetch():
            credentials = await self._credentials()
            async for page in self.client.paginate(
                stream.path,
                operation_key=f"sync.{stream.name}",
                items_key=stream.items_key,
                cursor_key=stream.cursor_key,
                cursor_param=stream.cursor_param,
                params=stream.params,
                **credentials,
            ):
                yield page.items

        return fetch

    def _processor(self, stream: StreamSpec):
        async def process(record: Record) -> None:
            record_id = record.get(stream.id_field)
            if record_id is not None:
                self.cache.set(stream.name, record, sub_id=str(record_id))
            if self.record_handler:
                await self.record_handler(stream.name, record)

        return process

    async def close(self) -> None:
        await self.client.close()


HUBSPOT = ProviderSpec(
    name="hubspot",
    display_name="HubSpot",
    api_base_url="https://api.hubapi.com",
    auth_url="https://app.hubspot.com/oauth/authorize",
    token_url="https://api.hubapi.com/oauth/v1/token",
    default_scopes=["crm.objects.contacts.read", "crm.objects.companies.read", "crm.objects.deals.read"],
    check_path="/crm/v3/objects/contacts",
    check_params={"limit": 1},
    streams=[
        StreamSpec(
            name=name,
            path=f"/crm/v3/objects/{name}",
            cursor_key="paging.next.after",
            params={"limit": 100},
        )
        for name in ("contacts", "companies", "deals")
    ],
    signature_header="x-hubspot-signature",
    invalidations={
        "contact.*": ["contacts"],
        "company.*": ["companies"],
        "deal.*": ["deals"],
    },
    capabilities=[
        Capability(name="contacts", description="Read CRM contacts", required_scopes=["crm.objects.contacts.read"]),
        Capability(name="companies", description="Read CRM companies", required_scopes=["crm.objects.companies.read"]),
        Capability(name="deals", description="Read CRM deals", required_scopes=["crm.objects.deals.read"]),
        Capability(name="webhooks", description="Receive CRM change events"),
    ],
    rate_limit=RateLimitConfig(max_requests=100, time_window=10.0),
)

MIXPANEL = ProviderSpec(
    name="mixpanel",
    display_name="Mixpanel",
    api_base_url="https://mixpanel.com/api/2.0",
    auth_style=AuthStyle.BASIC,
    check_path="/cohorts/list",
    streams=[
        StreamSpec(name="cohorts", path="/cohorts/list", items_key=None, modified_field="created"),
        StreamSpec(name="funnels", path="/funnels/list", items_key=None, modified_field=None, id_field="funnel_id"),
    ],
    signature_header="x-mixpanel-signature",
    invalidations={
        "cohort.*": ["cohorts"],
        "funnel.*": ["funnels"],
    },
    capabilities=[
        Capability(name="analytics", description="Read cohorts and funnels"),
        Capability(name="webhooks", description="Receive cohort and funnel change events"),
    ],
    rate_limit=RateLimitConfig(max_requests=60, time_window=3600.0),
)

LINKEDIN = ProviderSpec(
    name="linkedin",
    display_name="LinkedIn",
    api_base_url="https://api.linkedin.com",
    auth_url="https://www.linkedin.com/oauth/v2/authorization",
    token_url="https://www.linkedin.com/oauth/v2/accessToken",
    revoke_url="https://www.linkedin.com/oauth/v2/revoke",
    default_scopes=["openid", "profile", "w_member_social", "r_organization_admin"],
    check_path="/v2/userinfo",
    streams=[
        StreamSpec(
            name="posts",
            path="/rest/posts",
            items_key="elements",
            cursor_key="metadata.paginationToken",
            cursor_param="paginationToken",
            params={"q": "author", "count": 50},
            modified_field="lastModifiedAt",
        ),
        StreamSpec(
            name="organizations",
            path="/rest/organizationAcls",
            items_key="elements",
            params={"q": "roleAssignee"},
            modified_field=None,
            id_field="organization",
        ),
    ],
    resources={"profile": "/v2/userinfo"},
    signature_header="linkedin-signature",
    signature_prefix="hmacsha256=",
    invalidations={
        "PROFILE_UPDATE": ["profile"],
        "ORGANIZATION_SOCIAL_ACTION_NOTIFICATIONS": ["posts", "organizations"],
    },
    capabilities=[
        Capability(name="profiles", description="Read the member profile", required_scopes=["openid", "profile"]),
        Capability(name="posts", description="Read and publish member posts", required_scopes=["w_member_social"]),
        Capability(
            name="organizations",
            description="Read administered organizations",
            required_scopes=["r_organization_admin"],
        ),
    ],
    rate_limit=RateLimitConfig(max_requests=100, time_window=60.0),
)

REFERENCE_SPECS = (HUBSPOT, MIXPANEL, LINKEDIN)


class ConnectorRegistry:
    """
    Provider name -> spec, plus the live connector sessions built from them.

    Sessions are keyed by (provider, user_id) so repeated lookups reuse one
    connector, and with it one ResultCache. Only `connector` and
    `open_session` add sessions; `build` returns a connector the caller
    closes.
    """

    def __init__(
        self,
        vault: TokenVault,
        governor: ResilienceGovernor | None = None,
        cursor_store: SyncCursorStore | None = None,
        specs: list[ProviderSpec] | tuple[ProviderSpec, ...] | None = None,
        http_client: httpx.AsyncClient | None = None,
        record_handler: RecordHandler | None = None,
    ):
        self.vault = vault
        self.governor = governor or get_governor()
        self.cursor_store = cursor_store or SyncCursorStore()
        self.http_client = http_client
        self.record_handler = record_handler
        self._specs: dict[str, ProviderSpec] = {}
        self._sessions: dict[tuple[str, str | None], HttpConnector] = {}

        for spec in REFERENCE_SPECS if specs is None else specs:
            self.register(spec)

    def register(self, spec: ProviderSpec) -> None:
        self._specs[spec.name] = spec

    def providers(self) -> list[str]:
        return sorted(self._specs)

    def __contains__(self, provider: str) -> bool:
        return provider in self._specs

    def get_spec(self, provider: str) -> ProviderSpec:
        """
        Raises:
            ConfigurationError: If the provider is not registered
        """
        try:
            return self._specs[provider]
        except KeyError:
            raise ConfigurationError(f"Unknown provider {provider!r}", provider=provider) from None

    def build(
        self,
        provider: str,
        user_id: str | None = None,
        config: ConnectorConfig | None = None,
    ) -> HttpConnector:
        """
        New connector from config (or the environment) that is not kept as a
        session. The caller closes it.
        """
        spec = self.get_spec(provider)
        if config is None:
            config = connector_config_from_env(provider, user_id)
        elif config.user_id is None and user_id:
            config = config.model_copy(update={"user_id": user_id})

        return HttpConnector(
            spec,
            config,
            self.vault,
            governor=self.governor,
            cursor_store=self.cursor_store,
            record_handler=self.record_handler,
            http_client=self.http_client,
        )

    def session(self, provider: str, user_id: str | None = None) -> HttpConnector | None:
        return self._sessions.get((provider, user_id))

    def connector(self, provider: str, user_id: str | None = None) -> HttpConnector:
        """Existing session for (provider, user), or a new one from the environment."""
        key = (provider, user_id)
        session = self._sessions.get(key)
        if session is None:
            session = self._sessions[key] = self.build(provider, user_id)
        return session

    async def open_session(
        self,
        provider: str,
        user_id: str | None = None,
        config: ConnectorConfig | None = None,
    ) -> HttpConnector:
        """Start a fresh session for (provider, user), closing any it replaces."""
        connector = self.build(provider, user_id, config)
        previous = self._sessions.get((provider, user_id))
        self._sessions[(provider, user_id)] = connector
        if previous is not None:
            await previous.close()
        return connector

    def sessions(self, provider: str) -> list[HttpConnector]:
        return [connector for (name, _), connector in self._sessions.items() if name == provider]

    def webhook_targets(self, provider: str) -> list[HttpConnector]:
        """Live sessions for the provider, else one provider-level connector."""
        if provider not in self._specs:
            return []
        return self.sessions(provider) or [self.connector(provider)]

    async def discard(self, provider: str, user_id: str | None = None) -> None:
        connector = self._sessions.pop((provider, user_id), None)
        if connector is not None:
            await connector.close()

    async def close(self) -> None:
        for key in list(self._sessions):
            await self.discard(*key)
