"""Long-running driver for the app state synchronizer.

Holds the current :class:`AppState`, a local copy of the values, and an
optional :class:`LocalSnapshot`. Operations are serialized: while one flush
or poll is outstanding, further calls wait their turn in FIFO order, up to
``max_queued`` waiting callers.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..dynamo.backend import DynamoBackend
from ..dynamo.errors import TransportError
from . import app_state
from .app_state import AppState, AppStateError, Updates
from .snapshot import LocalSnapshot

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Outcome of a flush or poll."""

    SUCCESS = "success"
    SKIPPED = "skipped"  # Period not elapsed or client inactive
    FAILED = "failed"
    OFFLINE = "offline"  # Service unreachable


@dataclass
class SyncResult:
    """Result of a session operation."""

    status: SyncStatus
    keys_flushed: int = 0
    keys_updated: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class QueueFullError(Exception):
    """Too many callers are already waiting for the session."""


UpdatesCallback = Callable[[Updates], None]


def now_ms() -> int:
    return int(time.time() * 1000)


def _failure(error: AppStateError) -> SyncResult:
    offline = isinstance(error.error, TransportError)
    return SyncResult(
        status=SyncStatus.OFFLINE if offline else SyncStatus.FAILED,
        error=str(error),
        timestamp=datetime.now(),
    )


class SyncSession:
    """Keeps one client's view of the shared table up to date."""

    def __init__(
        self,
        backend: DynamoBackend,
        state: AppState,
        snapshot: LocalSnapshot | None = None,
        max_queued: int = 16,
        on_updates: UpdatesCallback | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the session.

        Args:
            backend: Table backend.
            state: Starting state, usually from ``make_app_state``.
            snapshot: Connected snapshot store to restore from and save to.
            max_queued: Maximum callers allowed to wait behind a running call.
            on_updates: Called with every non-empty poll result.
            clock: Millisecond clock, replaceable for tests.
        """
        self.backend = backend
        self.state = state
        self.snapshot = snapshot
        self.max_queued = max_queued
        self.on_updates = on_updates
        self.clock = clock
        self.values: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    @asynccontextmanager
    async def _turn(self) -> AsyncIterator[None]:
        if self._lock.locked() and self._waiting >= self.max_queued:
            raise QueueFullError(f"{self._waiting} operations already queued")

        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._lock.release()

    def _persist(self) -> None:
        if self.snapshot is not None:
            self.snapshot.save_state(self.state, self.values)

    def _apply(self, updates: Updates) -> int:
        """Merge a poll result into the local values.

        Keys with a staged local write keep the local value; it is flushed later.
        """
        applied = 0
        for key, value in updates.updates.items():
            if key in self.state.updates:
                continue
            if value is None:
                self.values.pop(key, None)
            else:
                self.values[key] = value
            applied += 1

        if self.on_updates and updates.updates:
            self.on_updates(updates)
        return applied

    async def start(self) -> SyncResult:
        """Restore the snapshot (if any) and reconcile it with the table."""
        async with self._turn():
            if self.snapshot is not None:
                data = self.snapshot.load()
                self.values = dict(data.values)
                self.state = replace(
                    self.state,
                    save_count=data.save_count,
                    key_counts=dict(data.key_counts),
                    updates=dict(data.updates),
                )
                if data.is_empty:
                    logger.info("Snapshot is empty, loading everything from the table")
                else:
                    logger.info(
                        f"Restored snapshot: save_count={data.save_count}, "
                        f"{len(data.values)} values, {len(data.updates)} pending"
                    )

            now = self.clock()
            try:
                updates = await app_state.initial_load(
                    self.backend, self.state, self.state.save_count, self.state.key_counts
                )
            except AppStateError as e:
                self._consecutive_failures += 1
                return _failure(e)

            applied = 0
            if updates is not None:
                self.state = replace(
                    self.state,
                    save_count=max(self.state.save_count, updates.save_count),
                    key_counts=dict(updates.key_counts),
                )
                applied = self._apply(updates)
            self.state = replace(self.state, last_update_time=now)
            self.state = app_state.go_active(now, self.state)
            self._persist()
            return self._success(keys_updated=applied)

    def _success(self, keys_flushed: int = 0, keys_updated: int = 0) -> SyncResult:
        self._consecutive_failures = 0
        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            keys_flushed=keys_flushed,
            keys_updated=keys_updated,
            timestamp=self._last_sync,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    async def save(self, key: str, value: Any) -> int:
        """Stage a write (None deletes) and update the local view immediately.

        Returns:
            Number of keys flushed as a side effect (0 if only staged).

        Raises:
            QueueFullError: Too many operations are waiting.
            AppStateError: A forced flush failed; the write stays staged.
        """
        async with self._turn():
            now = self.clock()
            state = app_state.go_active(now, self.state)
            error: AppStateError | None = None
            try:
                self.state, flushed = await app_state.save(
                    self.backend, now, key, value, state
                )
            except AppStateError as e:
                self.state = e.state
                self._consecutive_failures += 1
                error = e

            if value is None:
                self.values.pop(key, None)
            else:
                self.values[key] = value
            self._persist()

            if error is not None:
                raise error
            return flushed

    async def delete(self, key: str) -> int:
        return await self.save(key, None)

    async def flush(self, force: bool = False) -> SyncResult:
        """Flush staged writes once the idle period has passed.

        Args:
            force: Flush now regardless of the idle period.
        """
        async with self._turn():
            now = self.clock()
            try:
                if force:
                    result = await app_state.store(self.backend, now, self.state)
                else:
                    result = await app_state.idle(self.backend, now, self.state)
            except AppStateError as e:
                self.state = e.state
                self._consecutive_failures += 1
                return _failure(e)

            if result is None:
                return SyncResult(status=SyncStatus.SKIPPED)

            self.state, flushed = result
            if flushed:
                self._persist()
            return self._success(keys_flushed=flushed)

    async def poll(self) -> SyncResult:
        """Fetch remote changes if active and the update period has passed."""
        async with self._turn():
            now = self.clock()
            if not app_state.is_active(now, self.state):
                logger.debug("Session inactive, skipping poll")
                return SyncResult(status=SyncStatus.SKIPPED)

            try:
                result = await app_state.update(self.backend, now, self.state)
            except AppStateError as e:
                self.state = e.state
                self._consecutive_failures += 1
                return _failure(e)

            if result is None:
                return SyncResult(status=SyncStatus.SKIPPED)

            self.state, updates = result
            applied = self._apply(updates) if updates is not None else 0
            if updates is not None:
                self._persist()
            return self._success(keys_updated=applied)

    def go_active(self) -> None:
        """Mark the client active so polling resumes."""
        self.state = app_state.go_active(self.clock(), self.state)

    async def tick(self) -> SyncResult:
        """Flush if idle, then poll. Combines both results."""
        flush_result = await self.flush()
        if flush_result.status == SyncStatus.OFFLINE:
            return flush_result

        poll_result = await self.poll()

        failed = [
            r for r in (flush_result, poll_result)
            if r.status in (SyncStatus.FAILED, SyncStatus.OFFLINE)
        ]
        if failed:
            status = failed[0].status
        elif SyncStatus.SUCCESS in (flush_result.status, poll_result.status):
            status = SyncStatus.SUCCESS
        else:
            status = SyncStatus.SKIPPED

        return SyncResult(
            status=status,
            keys_flushed=flush_result.keys_flushed,
            keys_updated=poll_result.keys_updated,
            error=failed[0].error if failed else None,
            timestamp=datetime.now(),
        )

    async def run(
        self,
        interval_seconds: float = 1.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Call :meth:`tick` until ``stop_event`` is set.

        Args:
            interval_seconds: Seconds between ticks.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            result = await self.tick()
            if result.status != SyncStatus.SKIPPED:
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"flushed={result.keys_flushed}, "
                    f"updated={result.keys_updated}"
                )

            # Back off while the service keeps failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    300,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    def get_status(self) -> dict[str, Any]:
        """Summary of the session for display."""
        return {
            "table": self.state.table,
            "key_prefix": self.state.key_prefix,
            "save_count": self.state.save_count,
            "pending_updates": len(self.state.updates),
            "known_keys": len(self.values),
            "active": app_state.is_active(self.clock(), self.state),
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "consecutive_failures": self._consecutive_failures,
        }
