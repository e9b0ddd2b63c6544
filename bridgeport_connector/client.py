"""Governed HTTP client for provider APIs."""

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from .exceptions import AuthenticationError, ProviderAPIError, RateLimitError, ResponseSchemaError
from .governor import ResilienceGovernor, get_governor

logger = logging.getLogger(__name__)

MAX_PAGES = 100


class Page(BaseModel):
    """One validated page of a paginated provider listing."""

    items: list[dict[str, Any]]
    next_cursor: str | None = None


def dig(data: Any, path: str) -> Any:
    """Follow a dotted path ("paging.next.after") through nested dicts."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class ProviderClient:
    """
    JSON API client whose every request goes through the resilience governor.

    Status mapping:
    - 401/403 -> AuthenticationError
    - 429 -> RateLimitError (Retry-After honoured as a hint)
    - other non-2xx, network errors -> ProviderAPIError
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        governor: ResilienceGovernor | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.governor = governor or get_governor()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation_key: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send one governed request and return the decoded JSON body."""
        return await self.governor.call(
            self.provider,
            operation_key,
            self._send,
            method,
            path,
            access_token=access_token,
            params=params,
            json=json,
            headers=headers,
        )

    async def get(self, path: str, *, operation_key: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, operation_key=operation_key, **kwargs)

    async def post(self, path: str, *, operation_key: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, operation_key=operation_key, **kwargs)

    async def _send(
        self,
        method: str,
        path: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = {"Accept": "application/json"}
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        if headers:
            request_headers.update(headers)

        try:
            response = await self.http_client.request(
                method,
                self._url(path),
                params=params,
                json=json,
                headers=request_headers,
            )
        except httpx.RequestError as e:
            raise ProviderAPIError(
                f"Network error calling {self.provider}: {e}", provider=self.provider
            ) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.provider} rejected credentials ({response.status_code})",
                provider=self.provider,
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "60")
            raise RateLimitError(
                f"{self.provider} API rate limit exceeded",
                provider=self.provider,
                retry_after=int(retry_after) if retry_after.isdigit() else 60,
            )

        if response.status_code >= 400:
            raise ProviderAPIError(
                f"{self.provider} API error: {response.status_code} {response.text[:200]}",
                provider=self.provider,
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ResponseSchemaError(
                f"{self.provider} returned a non-JSON body",
                provider=self.provider,
                status_code=response.status_code,
            ) from e

    def parse_page(self, body: Any, items_key: str | None, cursor_key: str | None) -> Page:
        """
        Validate a listing response at the boundary.

        An empty `items_key` means the body itself is the list of records.

        Raises:
            ResponseSchemaError: If the body does not hold a list of records
        """
        if not items_key and isinstance(body, list):
            body = {"items": body}
            items_key = "items"
        if not isinstance(body, dict):
            raise ResponseSchemaError(
                f"{self.provider} listing response is not a JSON object",
                provider=self.provider,
            )
        cursor = dig(body, cursor_key) if cursor_key else None
        try:
            return Page(
                items=dig(body, items_key) or [],
                next_cursor=str(cursor) if cursor not in (None, "") else None,
            )
        except ValidationError as e:
            raise ResponseSchemaError(
                f"{self.provider} listing response has unexpected shape at '{items_key}': "
                f"{e.error_count()} validation error(s)",
                provider=self.provider,
            ) from e

    async def paginate(
        self,
        path: str,
        *,
        operation_key: str,
        items_key: str | None,
        cursor_key: str | None = None,
        cursor_param: str = "after",
        access_token: str | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        max_pages: int = MAX_PAGES,
    ) -> AsyncIterator[Page]:
        """Yield pages in provider order until the cursor is exhausted."""
        query = dict(params or {})
        for _ in range(max_pages):
            body = await self.get(
                path,
                operation_key=operation_key,
                access_token=access_token,
                headers=headers,
                params=query,
            )
            page = self.parse_page(body, items_key, cursor_key)
            yield page

            if not page.next_cursor:
                return
            query[cursor_param] = page.next_cursor

        logger.warning("%s pagination of %s stopped at the %d page cap", self.provider, path, max_pages)

    async def close(self) -> None:
        """Close the HTTP client unless it was passed in by the caller."""
        if self._owns_client:
            await self.http_client.aclose()
