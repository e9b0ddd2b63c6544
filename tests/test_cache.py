"""Tests for the per-connector result cache."""

import pytest

from bridgeport_connector.cache import ResultCache


class TestResultCache:
    """Tests for ResultCache class."""

    def test_get_missing_returns_default(self):
        """Test misses return the default."""
        cache = ResultCache()

        assert cache.get("contacts", "1") is None
        assert cache.get("contacts", "1", default={}) == {}
        assert cache.misses == 2

    def test_set_and_get(self):
        """Test values are stored per resource type and sub id."""
        cache = ResultCache()
        cache.set("contacts", {"id": "1"}, sub_id="1")
        cache.set("contacts", [{"id": "1"}])

        assert cache.get("contacts", "1") == {"id": "1"}
        assert cache.get("contacts") == [{"id": "1"}]
        assert len(cache) == 2
        assert cache.hits == 2

    @pytest.mark.asyncio
    async def test_get_or_fetch_fetches_once(self):
        """Test the fetcher only runs on a miss."""
        cache = ResultCache()
        calls = []

        async def fetch():
            calls.append(True)
            return {"name": "Acme"}

        first = await cache.get_or_fetch("companies", fetch, sub_id="42")
        second = await cache.get_or_fetch("companies", fetch, sub_id="42")

        assert first == second == {"name": "Acme"}
        assert calls == [True]

    def test_invalidate_drops_one_resource_type(self):
        """Test invalidation is scoped to a resource type."""
        cache = ResultCache()
        cache.set("contacts", {"id": "1"}, sub_id="1")
        cache.set("contacts", {"id": "2"}, sub_id="2")
        cache.set("deals", {"id": "9"}, sub_id="9")

        assert cache.invalidate("contacts") == 2
        assert cache.invalidate("contacts") == 0
        assert cache.resource_types() == ["deals"]

    def test_discard_and_clear(self):
        """Test single-entry discard and full clear."""
        cache = ResultCache()
        cache.set("contacts", {"id": "1"}, sub_id="1")
        cache.set("contacts", {"id": "2"}, sub_id="2")

        cache.discard("contacts", "1")
        assert not cache.contains("contacts", "1")
        assert cache.contains("contacts", "2")

        cache.clear()
        assert len(cache) == 0
