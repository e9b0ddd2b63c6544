"""OAuth 2.0 utilities for token exchange, refresh and revocation."""

from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from .exceptions import AuthenticationError, ProviderAPIError
from .types import OAuthTokens


class OAuthHandler:
    """
    Handles the OAuth 2.0 authorization code flow for one provider.

    Supports:
    - Authorization URL generation
    - Code exchange for tokens
    - Token refresh
    - Token revocation (RFC 7009)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        auth_url: str,
        token_url: str,
        revoke_url: str | None = None,
        provider: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.token_url = token_url
        self.revoke_url = revoke_url
        self.provider = provider

        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    def build_authorization_url(
        self,
        redirect_uri: str,
        scopes: list[str],
        state: str | None = None,
        **extra_params: Any,
    ) -> str:
        """
        Build OAuth authorization URL.

        Args:
            redirect_uri: Callback URL
            scopes: List of OAuth scopes
            state: Optional state parameter for CSRF protection
            **extra_params: Additional provider-specific parameters

        Returns:
            Full authorization URL
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            **extra_params,
        }

        if state:
            params["state"] = state

        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        **extra_params: Any,
    ) -> OAuthTokens:
        """
        Exchange authorization code for access token.

        Raises:
            AuthenticationError: If the provider rejects the code
            ProviderAPIError: On network failure
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **extra_params,
        }
        return await self._token_request(data, "Token exchange")

    async def refresh_token(
        self,
        refresh_token: str,
        **extra_params: Any,
    ) -> OAuthTokens:
        """
        Refresh an expired access token.

        Raises:
            AuthenticationError: If the refresh token is rejected
            ProviderAPIError: On network failure
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **extra_params,
        }
        return await self._token_request(data, "Token refresh")

    async def _token_request(self, data: dict[str, Any], action: str) -> OAuthTokens:
        try:
            response = await self.http_client.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.RequestError as e:
            raise ProviderAPIError(
                f"Network error during {action.lower()}: {e}", provider=self.provider
            ) from e

        if response.status_code != 200:
            try:
                error_data = response.json() if response.text else {}
            except ValueError:
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or response.text
            raise AuthenticationError(f"{action} failed: {error_msg}", provider=self.provider)

        try:
            token_data = response.json()
        except ValueError as e:
            raise AuthenticationError(f"{action} returned a non-JSON body", provider=self.provider) from e
        return self._parse_token_response(token_data)

    async def revoke_token(self, token: str, token_type: str = "access_token") -> bool:
        """
        Revoke an access or refresh token.

        Returns:
            True if revocation succeeded (or the provider has no revoke endpoint)

        Raises:
            ProviderAPIError: On network failure
        """
        if not self.revoke_url:
            # Some providers don't offer a revocation endpoint
            return True

        data = {
            "token": token,
            "token_type_hint": token_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            response = await self.http_client.post(
                self.revoke_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

            # RFC 7009: successful revocations return 200
            return response.status_code == 200

        except httpx.RequestError as e:
            raise ProviderAPIError(
                f"Network error during token revocation: {e}", provider=self.provider
            ) from e

    def _parse_token_response(self, data: dict[str, Any]) -> OAuthTokens:
        """Parse a provider token response into OAuthTokens."""
        access_token = data.get("access_token")
        if not access_token:
            raise AuthenticationError("Missing access_token in response", provider=self.provider)

        refresh_token = data.get("refresh_token")
        expires_in = int(data.get("expires_in", 3600))  # Default 1 hour

        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)

        # Scopes can be a space-separated string or a list
        scope = data.get("scope", "")
        scopes = scope.split() if isinstance(scope, str) else list(scope)

        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scopes=scopes,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "OAuthHandler":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
