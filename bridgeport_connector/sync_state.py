"""
Sync State Management

Tracks last sync timestamps for incremental passes, one cursor per
provider/user combination. Cursors live in process memory; a host that
needs them durable persists `list_cursors()` itself.

Usage:
    sync_state = SyncCursorStore()

    # Get last sync time
    cursor = sync_state.get_cursor("hubspot", "user123")
    last_ts = cursor.last_sync_ts if cursor else None

    # Update after a successful pass
    sync_state.update_cursor("hubspot", "user123", new_timestamp)

    # Reset cursor (force full sync)
    sync_state.reset_cursor("hubspot", "user123")
"""

from datetime import UTC, datetime
from threading import Lock

from pydantic import BaseModel


class SyncCursor(BaseModel):
    """
    Sync cursor model.

    Attributes:
        provider: Provider name
        user_id: User identifier
        last_sync_ts: Start of the last successful pass (ISO8601 UTC)
        records_synced: Total records processed across passes
        passes: Number of successful passes recorded
        created_at: Cursor creation timestamp
        updated_at: Last update timestamp
    """

    provider: str
    user_id: str
    last_sync_ts: str
    records_synced: int = 0
    passes: int = 0
    created_at: str
    updated_at: str

    def last_sync_datetime(self) -> datetime:
        ts = datetime.fromisoformat(self.last_sync_ts)
        return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


class SyncCursorStore:
    """In-memory cursor table keyed "SYNC#{provider}#{user_id}"."""

    def __init__(self) -> None:
        self._cursors: dict[str, dict] = {}
        self._lock = Lock()

    def _make_cursor_key(self, provider: str, user_id: str) -> str:
        return f"SYNC#{provider}#{user_id}"

    def get_cursor(self, provider: str, user_id: str) -> SyncCursor | None:
        """
        Get sync cursor for user/provider.

        Returns:
            SyncCursor if exists, None otherwise
        """
        cursor_data = self._cursors.get(self._make_cursor_key(provider, user_id))
        if cursor_data:
            return SyncCursor(**cursor_data)
        return None

    def update_cursor(
        self,
        provider: str,
        user_id: str,
        last_sync_ts: str,
        records_synced: int = 0,
    ) -> SyncCursor:
        """
        Update sync cursor after a successful pass.

        Args:
            provider: Provider name
            user_id: User identifier
            last_sync_ts: Timestamp of the pass (ISO8601 UTC)
            records_synced: Number of records processed in this pass

        Returns:
            Updated SyncCursor
        """
        key = self._make_cursor_key(provider, user_id)
        now = datetime.now(UTC).isoformat()

        with self._lock:
            existing = self._cursors.get(key)
            cursor_data = {
                "provider": provider,
                "user_id": user_id,
                "last_sync_ts": last_sync_ts,
                "records_synced": (existing["records_synced"] if existing else 0) + records_synced,
                "passes": (existing["passes"] if existing else 0) + 1,
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            self._cursors[key] = cursor_data

        return SyncCursor(**cursor_data)

    def reset_cursor(self, provider: str, user_id: str) -> None:
        """Reset sync cursor (forces full sync next time)."""
        with self._lock:
            self._cursors.pop(self._make_cursor_key(provider, user_id), None)

    def list_cursors(self, provider: str | None = None, limit: int = 100) -> list[SyncCursor]:
        """List sync cursors, optionally filtered by provider."""
        cursors = [
            SyncCursor(**data)
            for data in self._cursors.values()
            if provider is None or data["provider"] == provider
        ]
        return cursors[:limit]

    def get_last_sync_timestamp(self, provider: str, user_id: str) -> datetime | None:
        """Convenience accessor for the cursor timestamp."""
        cursor = self.get_cursor(provider, user_id)
        return cursor.last_sync_datetime() if cursor else None

    def has_synced_before(self, provider: str, user_id: str) -> bool:
        return self.get_cursor(provider, user_id) is not None
