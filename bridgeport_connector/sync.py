"""
Sync orchestration across a connector's independent resource streams.

A pass moves IDLE -> RUNNING -> {COMPLETED, PARTIALLY_FAILED, FAILED}. Streams
run as concurrent asyncio tasks; a stream that raises is recorded in
`SyncResult.errors` and its siblings keep going. Only an AuthenticationError
aborts the whole pass.

Incremental sync skips records modified at or before `last_sync_time`. The
cursor is a last-modified timestamp, not a change log: writes landing exactly
on the cursor boundary while a pass runs can be missed or counted twice.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from dateutil import parser as date_parser

from .clock import Clock, SystemClock
from .exceptions import AuthenticationError, IntegrationError, SyncError
from .metrics import IntegrationMetrics
from .sync_state import SyncCursorStore
from .types import StreamReport, SyncMetadata, SyncPassState, SyncResult

if TYPE_CHECKING:
    from .base import BaseConnector

logger = logging.getLogger(__name__)

Record = dict[str, Any]


def parse_timestamp(value: Any) -> datetime | None:
    """
    Normalize a provider timestamp to an aware UTC datetime.

    Accepts datetimes, ISO8601 strings and epoch numbers (seconds, or
    milliseconds when the value is too large to be seconds).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, int | float) or (isinstance(value, str) and value.isdigit()):
        number = float(value)
        if number > 1e11:
            number /= 1000.0
        ts = datetime.fromtimestamp(number, tz=UTC)
    else:
        ts = date_parser.isoparse(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


@dataclass
class ResourceStream:
    """
    One independent stream of records (contacts, deals, files, ...).

    Attributes:
        name: Stream name, also the suffix of its `sync.<name>` operation key
        fetch: Returns an async iterator of pages (lists of records) in
            provider order
        process: Handles one record; raising marks only that record failed
        modified_field: Dotted path of the record's last-modified timestamp
        id_field: Dotted path of the record id, used in item error messages
    """

    name: str
    fetch: Callable[[], AsyncIterator[list[Record]]]
    process: Callable[[Record], Awaitable[None]] | None = None
    modified_field: str | None = "updated_at"
    id_field: str = "id"

    @property
    def label(self) -> str:
        return self.name[:1].upper() + self.name[1:]

    def modified_at(self, record: Record) -> datetime | None:
        if not self.modified_field:
            return None
        return parse_timestamp(_dig(record, self.modified_field))

    def record_id(self, record: Record) -> str:
        value = _dig(record, self.id_field)
        return str(value) if value is not None else "?"


def _dig(record: Record, path: str) -> Any:
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


@dataclass
class _StreamOutcome:
    report: StreamReport
    item_errors: list[str]


class SyncOrchestrator:
    """
    Drives one sync pass over a static list of resource streams.

    Usage:
        orchestrator = SyncOrchestrator("hubspot", streams, user_id="u1")
        result = await orchestrator.run(last_sync_time=cursor)
    """

    def __init__(
        self,
        provider: str,
        streams: list[ResourceStream],
        user_id: str | None = None,
        cursor_store: SyncCursorStore | None = None,
        clock: Clock | None = None,
        metrics: IntegrationMetrics | None = None,
    ):
        self.provider = provider
        self.streams = streams
        self.user_id = user_id
        self.cursor_store = cursor_store
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.state = SyncPassState.IDLE

    @classmethod
    def for_connector(cls, connector: "BaseConnector", **kwargs: Any) -> "SyncOrchestrator":
        return cls(
            connector.provider,
            connector.resource_streams(),
            user_id=connector.user_id,
            cursor_store=connector.cursor_store,
            metrics=connector.governor.metrics,
            **kwargs,
        )

    def _resolve_cursor(self, last_sync_time: datetime | None) -> datetime | None:
        if last_sync_time is not None:
            return parse_timestamp(last_sync_time)
        if self.cursor_store and self.user_id:
            return self.cursor_store.get_last_sync_timestamp(self.provider, self.user_id)
        return None

    async def run(
        self,
        last_sync_time: datetime | None = None,
        *,
        timeout: float | None = None,
        raise_on_total_failure: bool = False,
    ) -> SyncResult:
        """
        Run one pass and aggregate the outcome.

        Args:
            last_sync_time: Skip records modified at or before this instant;
                defaults to the stored cursor for this provider/user
            timeout: Abandon the whole pass after this many seconds; streams
                still in flight are cancelled and their results lost
            raise_on_total_failure: Raise SyncError instead of returning a
                result when every stream failed

        Raises:
            AuthenticationError: Credentials were rejected by any stream
            TimeoutError: The pass exceeded `timeout`
            SyncError: Every stream failed and raise_on_total_failure is set
        """
        if self.state == SyncPassState.RUNNING:
            raise IntegrationError("A sync pass is already running", provider=self.provider)

        cursor = self._resolve_cursor(last_sync_time)
        started_at = self.clock.now()
        started = self.clock.monotonic()
        self.state = SyncPassState.RUNNING
        logger.info(
            "Sync pass started for %s (%d streams, cursor=%s)",
            self.provider,
            len(self.streams),
            cursor.isoformat() if cursor else "none",
        )

        try:
            outcomes = await self._run_streams(cursor, timeout)
        except BaseException:
            self.state = SyncPassState.IDLE
            if self.metrics:
                self.metrics.track_sync(self.provider, "aborted")
            raise

        result = self._aggregate(outcomes, started_at, started)
        self.state = result.metadata.state
        if self.metrics:
            self.metrics.track_sync(self.provider, self.state.value, result)

        logger.info(
            "Sync pass %s for %s: %d processed, %d skipped, %d errors",
            self.state.value,
            self.provider,
            result.items_processed,
            result.items_skipped,
            len(result.errors),
        )

        # a failed stream or record keeps the previous cursor
        clean = result.metadata.state == SyncPassState.COMPLETED and not result.errors
        if clean and self.cursor_store and self.user_id:
            self.cursor_store.update_cursor(
                self.provider,
                self.user_id,
                last_sync_ts=started_at.isoformat(),
                records_synced=result.items_processed,
            )

        if not result.success and raise_on_total_failure:
            raise SyncError(
                f"{self.provider} sync failed: every stream failed",
                provider=self.provider,
                result=result,
            )

        return result

    async def _run_streams(self, cursor: datetime | None, timeout: float | None) -> list[_StreamOutcome]:
        if not self.streams:
            return []

        tasks = [
            asyncio.create_task(self._run_stream(stream, cursor), name=f"sync:{self.provider}:{stream.name}")
            for stream in self.streams
        ]
        try:
            async with asyncio.timeout(timeout):
                await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # only auth failures (or cancellation) escape a stream
        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        return [task.result() for task in tasks]

    async def _run_stream(self, stream: ResourceStream, cursor: datetime | None) -> _StreamOutcome:
        report = StreamReport(name=stream.name)
        item_errors: list[str] = []

        try:
            async for page in stream.fetch():
                report.pages += 1
                for record in page:
                    report.items_fetched += 1

                    modified = stream.modified_at(record)
                    if cursor is not None and modified is not None and modified <= cursor:
                        report.items_skipped += 1
                        continue

                    if stream.process is None:
                        report.items_processed += 1
                        continue

                    try:
                        await stream.process(record)
                        report.items_processed += 1
                    except AuthenticationError:
                        raise
                    except Exception as e:
                        report.items_skipped += 1
                        item_errors.append(
                            f"{stream.label} item {stream.record_id(record)} failed: {e}"
                        )
        except AuthenticationError:
            logger.warning("%s stream %s aborted the pass: authentication failed", self.provider, stream.name)
            raise
        except Exception as e:
            report.failed = True
            report.error = str(e) or type(e).__name__
            logger.warning("%s stream %s failed: %s", self.provider, stream.name, report.error)

        return _StreamOutcome(report=report, item_errors=item_errors)

    def _aggregate(
        self,
        outcomes: list[_StreamOutcome],
        started_at: datetime,
        started: float,
    ) -> SyncResult:
        errors: list[str] = []
        for outcome in outcomes:
            if outcome.report.failed:
                label = outcome.report.name[:1].upper() + outcome.report.name[1:]
                errors.append(f"{label} sync failed: {outcome.report.error}")
            errors.extend(outcome.item_errors)

        failed = sum(1 for outcome in outcomes if outcome.report.failed)
        if failed == 0:
            state = SyncPassState.COMPLETED
        elif failed < len(outcomes):
            state = SyncPassState.PARTIALLY_FAILED
        else:
            state = SyncPassState.FAILED

        return SyncResult(
            success=state != SyncPassState.FAILED,
            items_processed=sum(o.report.items_processed for o in outcomes),
            items_skipped=sum(o.report.items_skipped for o in outcomes),
            errors=errors,
            metadata=SyncMetadata(
                synced_at=started_at,
                provider=self.provider,
                state=state,
                duration_ms=int((self.clock.monotonic() - started) * 1000),
                streams=[o.report for o in outcomes],
            ),
        )
