"""FastAPI application exposing the integration runtime over HTTP."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from bridgeport_connector import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    ConnectorRegistry,
    HttpConnector,
    IntegrationError,
    ProviderAPIError,
    RateLimitError,
    WebhookError,
    WebhookGateway,
    __version__,
)
from bridgeport_connector.config import (
    RuntimeSettings,
    build_governor,
    build_vault,
    connector_config_from_env,
    load_environment,
)

logger = logging.getLogger(__name__)

STATUS_CODES: list[tuple[type[IntegrationError], int]] = [
    (AuthenticationError, 401),
    (RateLimitError, 429),
    (CircuitOpenError, 503),
    (WebhookError, 400),
    (ConfigurationError, 400),
    (ProviderAPIError, 502),
]


class ConnectRequest(BaseModel):
    """Credentials for POST /v1/connections/{provider}; never echoed back."""

    user_id: str
    code: str | None = None
    redirect_uri: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    username: str | None = None
    password: str | None = None
    scopes: list[str] | None = None


class SyncRequest(BaseModel):
    last_sync_time: datetime | None = None


def build_registry() -> ConnectorRegistry:
    """Registry wired from the process environment."""
    load_environment()
    settings = RuntimeSettings.from_env()
    return ConnectorRegistry(vault=build_vault(settings), governor=build_governor(settings))


def get_registry(request: Request) -> ConnectorRegistry:
    state = request.app.state
    if state.registry is None:
        state.registry = build_registry()
    return state.registry


def require_provider(provider: str, registry: ConnectorRegistry) -> None:
    if provider not in registry:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"Unknown provider {provider!r}", "provider": provider},
        )


@asynccontextmanager
async def existing_or_transient(
    provider: str,
    registry: ConnectorRegistry,
    user_id: str,
) -> AsyncIterator[HttpConnector]:
    """The user's live session, or a connector closed when the request ends."""
    require_provider(provider, registry)
    session = registry.session(provider, user_id)
    if session is not None:
        yield session
        return
    async with registry.build(provider, user_id) as connector:
        yield connector


v1_router = APIRouter(prefix="/v1")


@v1_router.post("/webhooks/{provider}")
async def webhook_handler(
    provider: str,
    request: Request,
    registry: ConnectorRegistry = Depends(get_registry),
) -> JSONResponse:
    """Verify, parse and dispatch one provider webhook."""
    gateway = WebhookGateway(registry.webhook_targets, metrics=registry.governor.metrics)
    outcome = await gateway.receive(
        provider,
        dict(request.headers),
        await request.body(),
        dict(request.query_params),
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())


@v1_router.post("/connections/{provider}")
async def connect(
    provider: str,
    body: ConnectRequest,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Authenticate a user with a provider and store the credentials."""
    require_provider(provider, registry)
    created = registry.session(provider, body.user_id) is None
    connector = registry.connector(provider, body.user_id)
    updates = body.model_dump(exclude_none=True)
    config = connector_config_from_env(provider, body.user_id).model_copy(update=updates)
    try:
        result = await connector.authenticate(config)
    except IntegrationError:
        if created:
            await registry.discard(provider, body.user_id)
        raise
    return {
        "status": connector.state.value,
        "provider": provider,
        "user_id": body.user_id,
        "scope": result.scope,
        "expires_at": result.expires_at.isoformat() if result.expires_at else None,
    }


@v1_router.delete("/connections/{provider}")
async def disconnect(
    provider: str,
    user_id: str,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Revoke access; local credentials are dropped even if the provider call fails."""
    async with existing_or_transient(provider, registry, user_id) as connector:
        revoked = await connector.revoke_access()
    await registry.discard(provider, user_id)
    return {"status": "disconnected", "provider": provider, "user_id": user_id, "remote_revoked": revoked}


@v1_router.get("/connections/{provider}/status")
async def connection_status(
    provider: str,
    user_id: str,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    async with existing_or_transient(provider, registry, user_id) as connector:
        status = await connector.test_connection()
        state = connector.state
    return {
        "provider": provider,
        "user_id": user_id,
        "state": state.value,
        **status.model_dump(mode="json"),
    }


@v1_router.post("/sync/{provider}")
async def sync(
    provider: str,
    user_id: str,
    body: SyncRequest | None = None,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Run one sync pass and return its SyncResult."""
    async with existing_or_transient(provider, registry, user_id) as connector:
        result = await connector.sync(body.last_sync_time if body else None)
    return result.model_dump(mode="json")


@v1_router.get("/circuits")
async def circuits(
    provider: str | None = None,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Circuit state and remaining rate-limit tokens per operation key."""
    return {"circuits": registry.governor.status(provider)}


@v1_router.get("/metrics")
async def integration_metrics(
    provider: str | None = None,
    registry: ConnectorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Call, rate-limit, sync and webhook counters per provider."""
    return {"metrics": registry.governor.metrics.snapshot(provider)}


def create_app(registry: ConnectorRegistry | None = None) -> FastAPI:
    """
    Build the application.

    Without a registry one is built from the environment on first use.
    """
    app = FastAPI(
        title="Bridgeport Integration Runtime",
        description="Webhook ingestion, sync and connection status for SaaS providers",
        version=__version__,
    )
    app.state.registry = registry

    @app.get("/health")
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": __version__,
            "service": "bridgeport-runtime",
            "providers": get_registry(request).providers(),
        }

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
        """Map runtime errors onto HTTP statuses with the API error shape."""
        status_code = next((code for kind, code in STATUS_CODES if isinstance(exc, kind)), 500)
        headers = {}
        if isinstance(exc, RateLimitError) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        if status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

    @app.get("/metrics")
    async def prometheus_metrics(request: Request) -> Response:
        """Prometheus scrape endpoint."""
        return Response(content=get_registry(request).governor.metrics.export(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
