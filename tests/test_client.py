"""Tests for the governed provider HTTP client."""

import pytest

from bridgeport_connector.client import ProviderClient, dig
from bridgeport_connector.exceptions import (
    AuthenticationError,
    ProviderAPIError,
    RateLimitError,
    ResponseSchemaError,
)

BASE_URL = "https://api.example.com"


@pytest.fixture
def client(fake_api, governor):
    return ProviderClient("hubspot", BASE_URL, governor=governor, http_client=fake_api.client())


def test_dig():
    """Test dotted path lookup."""
    body = {"paging": {"next": {"after": "abc"}}}

    assert dig(body, "paging.next.after") == "abc"
    assert dig(body, "paging.prev.before") is None
    assert dig({"paging": "flat"}, "paging.next") is None


class TestProviderClient:
    """Tests for ProviderClient class."""

    @pytest.mark.asyncio
    async def test_get_sends_bearer_token(self, client, fake_api):
        """Test requests carry the access token and decode JSON."""
        fake_api.add("GET", "/crm/v3/objects/contacts", (200, {"results": []}))

        body = await client.get(
            "/crm/v3/objects/contacts",
            operation_key="api.get_contacts",
            access_token="token-1",
            params={"limit": 1},
        )

        assert body == {"results": []}
        request = fake_api.calls("GET", "/crm/v3/objects/contacts")[0]
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.url.params["limit"] == "1"

    @pytest.mark.asyncio
    async def test_explicit_headers_win(self, client, fake_api):
        """Test caller headers override the bearer header."""
        fake_api.add("GET", "/cohorts/list", (200, []))

        await client.get(
            "/cohorts/list",
            operation_key="api.get_cohorts",
            headers={"Authorization": "Basic abc"},
        )

        assert fake_api.calls("GET", "/cohorts/list")[0].headers["Authorization"] == "Basic abc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_statuses(self, client, fake_api, status):
        """Test credential rejections map to AuthenticationError."""
        fake_api.add("GET", "/me", (status, {"message": "nope"}))

        with pytest.raises(AuthenticationError):
            await client.get("/me", operation_key="connection.test")

    @pytest.mark.asyncio
    async def test_rate_limited_status(self, client, fake_api):
        """Test 429 maps to RateLimitError with Retry-After."""
        fake_api.add("GET", "/me", (429, {"message": "slow down"}, {"Retry-After": "12"}))

        with pytest.raises(RateLimitError) as exc_info:
            await client.get("/me", operation_key="connection.test")

        assert exc_info.value.retry_after == 12

    @pytest.mark.asyncio
    async def test_server_error(self, client, fake_api):
        """Test other errors keep their status code."""
        fake_api.add("GET", "/me", (503, {"message": "maintenance"}))

        with pytest.raises(ProviderAPIError) as exc_info:
            await client.get("/me", operation_key="connection.test")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_empty_body(self, client, fake_api):
        """Test 204 responses decode to None."""
        fake_api.add("POST", "/revoke", (204, None))

        assert await client.post("/revoke", operation_key="auth.revoke") is None

    @pytest.mark.asyncio
    async def test_non_json_body(self, client, fake_api):
        """Test a non-JSON success body is a schema error."""
        fake_api.add("GET", "/me", (200, b"<html>maintenance</html>"))

        with pytest.raises(ResponseSchemaError):
            await client.get("/me", operation_key="connection.test")

    @pytest.mark.asyncio
    async def test_paginate_follows_cursor(self, client, fake_api):
        """Test pages are fetched in order until the cursor runs out."""
        fake_api.add(
            "GET",
            "/crm/v3/objects/deals",
            (200, {"results": [{"id": "1"}, {"id": "2"}], "paging": {"next": {"after": "2"}}}),
            (200, {"results": [{"id": "3"}]}),
        )

        pages = [
            page
            async for page in client.paginate(
                "/crm/v3/objects/deals",
                operation_key="sync.deals",
                items_key="results",
                cursor_key="paging.next.after",
                params={"limit": 2},
            )
        ]

        assert [[item["id"] for item in page.items] for page in pages] == [["1", "2"], ["3"]]
        calls = fake_api.calls("GET", "/crm/v3/objects/deals")
        assert "after" not in calls[0].url.params
        assert calls[1].url.params["after"] == "2"
        assert calls[1].url.params["limit"] == "2"

    @pytest.mark.asyncio
    async def test_paginate_page_cap(self, client, fake_api):
        """Test pagination stops at max_pages even if the cursor continues."""
        fake_api.add("GET", "/loop", (200, {"results": [{"id": "1"}], "next": "again"}))

        pages = [
            page
            async for page in client.paginate(
                "/loop",
                operation_key="api.loop",
                items_key="results",
                cursor_key="next",
                max_pages=3,
            )
        ]

        assert len(pages) == 3

    def test_parse_page_root_list(self, client):
        """Test a bare list body is the list of records."""
        page = client.parse_page([{"id": 1}, {"id": 2}], None, None)

        assert page.items == [{"id": 1}, {"id": 2}]
        assert page.next_cursor is None

    def test_parse_page_rejects_bad_shapes(self, client):
        """Test listings that aren't lists of objects are rejected."""
        with pytest.raises(ResponseSchemaError):
            client.parse_page("not json object", "results", None)

        with pytest.raises(ResponseSchemaError, match="unexpected shape"):
            client.parse_page({"results": ["a", "b"]}, "results", None)

    def test_parse_page_numeric_cursor(self, client):
        """Test cursors are normalised to strings."""
        page = client.parse_page({"elements": [], "metadata": {"paginationToken": 20}}, "elements", "metadata.paginationToken")

        assert page.next_cursor == "20"
