"""Shared application state over a single DynamoDB table.

Several independent clients keep a key/value map in one table without locks.
Two reserved items make change detection cheap:

- the *counter* item holds a global save count, bumped by one on every flush;
- the *key map* item holds, for every key ever written, the save count at
  which it was last written.

A client stages writes locally (:func:`save`), flushes them after an idle
period as one transaction that also rewrites the counter and key map
(:func:`idle` / :func:`store`), and polls the counter and key map to find
keys whose version differs from its own (:func:`update` /
:func:`initial_load`).

``AppState`` is a plain value. Every operation returns a new state instead of
mutating its argument, and failures raise :class:`AppStateError` holding the
state as it was before the failed call.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from ..dynamo.attributes import AttrNumber, AttrString, Item
from ..dynamo.backend import (
    MAX_TRANSACTION_ITEMS,
    Account,
    Delete,
    DynamoBackend,
    Put,
    TransactGet,
    WriteOperation,
)
from ..dynamo.errors import ConflictRetriesExhausted, DecodeError, DynamoError

logger = logging.getLogger(__name__)

# Two slots of every transaction go to the counter and key map items
MAX_BATCH = MAX_TRANSACTION_ITEMS - 2

# last_active_time value meaning "never time out"
ALWAYS_ACTIVE = -1

DEFAULT_IDLE_PERIOD = 2000
DEFAULT_UPDATE_PERIOD = 10000
DEFAULT_ACTIVE_PERIOD = 5000


@dataclass
class AppState:
    """Local view of the shared state plus the writes not yet flushed.

    Times are milliseconds. ``updates`` maps a key to its staged value, with
    None meaning "delete". ``key_counts`` maps a key to the save count at
    which this client last saw it written.
    """

    account: Account
    key_name: str = "key"
    value_attribute_name: str = "value"
    save_count_attribute_name: str = "saveCount"
    save_count_key: str = "saveCount"
    key_counts_key: str = "keyCounts"
    key_prefix: str | None = None
    idle_period: int = DEFAULT_IDLE_PERIOD
    update_period: int = DEFAULT_UPDATE_PERIOD
    active_period: int = DEFAULT_ACTIVE_PERIOD
    last_idle_time: int = 0
    last_update_time: int = 0
    last_active_time: int = 0
    save_count: int = 0
    updates: dict[str, Any] = field(default_factory=dict)
    key_counts: dict[str, int] = field(default_factory=dict)
    max_conflict_retries: int = 5
    conflict_backoff: float = 0.1

    @property
    def table(self) -> str:
        return self.account.table_name

    def remote_key(self, key: str) -> str:
        """Key as stored in the table, with the namespace prefix applied."""
        return f"{self.key_prefix or ''}{key}"

    def key_item(self, key: str) -> Item:
        return {self.key_name: AttrString(self.remote_key(key))}

    @property
    def reserved_keys(self) -> tuple[str, str]:
        return (self.save_count_key, self.key_counts_key)


@dataclass
class Updates:
    """Result of a poll that found the remote state different from ours.

    ``updates`` holds only the keys whose remote version differs; a None
    value means the item was deleted remotely. It may be empty.
    """

    save_count: int
    key_counts: dict[str, int]
    updates: dict[str, Any] = field(default_factory=dict)


class AppStateError(Exception):
    """A synchronizer operation failed.

    Attributes:
        error: The underlying DynamoError.
        state: The state to retry from; never partially updated.
    """

    def __init__(self, error: Exception, state: AppState):
        self.error = error
        self.state = state
        super().__init__(str(error))


class _RemoteChanged(Exception):
    """Another writer flushed between the two reads of a poll."""


def make_app_state(account: Account, **overrides: Any) -> AppState:
    """Create a fresh state for ``account`` with default names and periods.

    Args:
        account: Table locator and credentials.
        **overrides: Any AppState field, e.g. ``key_prefix="myapp:"``.
    """
    return AppState(account=account, **overrides)


def account_incomplete(target: AppState | Account) -> bool:
    """True if the account cannot be used to reach the table.

    Callers are expected to check this before any other operation.
    """
    account = target.account if isinstance(target, AppState) else target
    return account.is_incomplete()


def is_active(now: int, state: AppState) -> bool:
    if state.last_active_time == ALWAYS_ACTIVE:
        return True
    return now <= state.last_active_time + state.active_period


def go_active(now: int, state: AppState) -> AppState:
    return replace(state, last_active_time=now)


def _check_key(state: AppState, key: str) -> None:
    if key in state.reserved_keys:
        raise ValueError(f"Key {key!r} is reserved for synchronization metadata")


def _encode_value(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


async def save(
    backend: DynamoBackend,
    now: int,
    key: str,
    value: Any,
    state: AppState,
) -> tuple[AppState, int]:
    """Stage ``key -> value`` (None deletes the key).

    Staging restarts the idle period. Once :data:`MAX_BATCH` distinct keys are
    staged the batch is flushed immediately.

    Returns:
        The new state and the number of keys flushed (0 if only staged).

    Raises:
        ValueError: ``key`` is one of the reserved metadata keys.
        TypeError: ``value`` is not JSON serializable.
        AppStateError: The forced flush failed. Its ``state`` still holds
            the staged write.
    """
    _check_key(state, key)
    if value is not None:
        _encode_value(value)

    staged = replace(state, updates={**state.updates, key: value}, last_idle_time=now)

    if len(staged.updates) < MAX_BATCH:
        return staged, 0

    logger.info(f"Batch full ({len(staged.updates)} keys), flushing")
    return await store(backend, now, staged)


async def idle(
    backend: DynamoBackend, now: int, state: AppState
) -> tuple[AppState, int] | None:
    """Flush staged writes if the idle period has passed since the last one.

    Returns:
        None if the idle period has not elapsed yet; otherwise the new state
        and the number of keys flushed (0 when nothing was staged).
    """
    if now <= state.last_idle_time + state.idle_period:
        return None
    if not state.updates:
        return state, 0
    return await store(backend, now, state)


def _write_operations(
    state: AppState, save_count: int, key_counts: dict[str, int]
) -> list[WriteOperation]:
    operations: list[WriteOperation] = []

    for key, value in state.updates.items():
        if value is None:
            operations.append(Delete(state.table, state.key_item(key)))
        else:
            operations.append(
                Put(
                    state.table,
                    {
                        **state.key_item(key),
                        state.value_attribute_name: AttrString(_encode_value(value)),
                        state.save_count_attribute_name: AttrNumber.of(save_count),
                    },
                )
            )

    operations.append(
        Put(
            state.table,
            {
                **state.key_item(state.save_count_key),
                state.save_count_attribute_name: AttrNumber.of(save_count),
            },
        )
    )
    operations.append(
        Put(
            state.table,
            {
                **state.key_item(state.key_counts_key),
                state.value_attribute_name: AttrString(_encode_value(key_counts)),
            },
        )
    )
    return operations


async def store(
    backend: DynamoBackend, now: int, state: AppState
) -> tuple[AppState, int]:
    """Write every staged change, the counter and the key map in one transaction.

    Returns:
        The state with staged writes cleared, ``save_count`` bumped by one and
        ``key_counts`` updated, plus the number of keys written.

    Raises:
        AppStateError: The transaction was rejected or never reached the
            service. Nothing was applied and ``error.state is state``.
    """
    if not state.updates:
        return state, 0

    new_save_count = state.save_count + 1
    new_key_counts = dict(state.key_counts)
    for key in state.updates:
        new_key_counts[key] = new_save_count

    operations = _write_operations(state, new_save_count, new_key_counts)

    try:
        await backend.transact_write_items(operations)
    except DynamoError as e:
        logger.error(f"Flush of {len(state.updates)} keys failed: {e}")
        raise AppStateError(e, state) from e

    written = len(state.updates)
    logger.info(f"Flushed {written} keys at save count {new_save_count}")

    new_state = replace(
        state,
        updates={},
        save_count=new_save_count,
        key_counts=new_key_counts,
        last_idle_time=now,
        last_update_time=now,
    )
    return new_state, written


def _header_gets(state: AppState) -> list[TransactGet]:
    return [
        TransactGet(
            state.table,
            state.key_item(state.save_count_key),
            [state.save_count_attribute_name],
        ),
        TransactGet(
            state.table,
            state.key_item(state.key_counts_key),
            [state.value_attribute_name],
        ),
    ]


def _decode_save_count(state: AppState, item: Item | None) -> int:
    if item is None:
        return 0
    value = item.get(state.save_count_attribute_name)
    if not isinstance(value, AttrNumber):
        raise DecodeError(
            f"Counter item has no numeric {state.save_count_attribute_name!r}"
        )
    return value.as_int()


def _decode_key_counts(state: AppState, item: Item | None) -> dict[str, int]:
    if item is None:
        return {}
    value = item.get(state.value_attribute_name)
    if not isinstance(value, AttrString):
        raise DecodeError(f"Key map item has no string {state.value_attribute_name!r}")
    try:
        counts = json.loads(value.value)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Key map is not valid JSON: {e}") from e

    if not isinstance(counts, dict) or not all(
        isinstance(c, int) and not isinstance(c, bool) for c in counts.values()
    ):
        raise DecodeError("Key map must be an object of integer counts")
    return counts


def _decode_header(
    state: AppState, results: list[Item | None], expected: int
) -> tuple[int, dict[str, int]]:
    if len(results) != expected:
        raise DecodeError(f"Expected {expected} read results, got {len(results)}")
    return _decode_save_count(state, results[0]), _decode_key_counts(state, results[1])


def _decode_stored_value(state: AppState, key: str, item: Item | None) -> Any:
    """Decode a user key's value; None if the item no longer exists."""
    if item is None:
        return None
    value = item.get(state.value_attribute_name)
    if not isinstance(value, AttrString):
        raise DecodeError(f"Item {key!r} has no string {state.value_attribute_name!r}")
    try:
        return json.loads(value.value)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Item {key!r} holds invalid JSON: {e}") from e


async def _load_once(
    backend: DynamoBackend,
    state: AppState,
    save_count: int,
    key_counts: dict[str, int],
) -> Updates | None:
    header = _header_gets(state)
    results = await backend.transact_get_items(header)
    remote_count, remote_counts = _decode_header(state, results, len(header))

    if save_count >= remote_count and key_counts == remote_counts:
        return None

    changed = [k for k, c in remote_counts.items() if key_counts.get(k) != c]
    values: dict[str, Any] = {}

    # Each read repeats the counter and key map so every chunk can be
    # checked against the first read.
    for start in range(0, max(len(changed), 1), MAX_BATCH):
        chunk = changed[start:start + MAX_BATCH]
        gets = header + [
            TransactGet(state.table, state.key_item(k), [state.value_attribute_name])
            for k in chunk
        ]
        results = await backend.transact_get_items(gets)
        if len(results) != len(gets):
            raise DecodeError(f"Expected {len(gets)} read results, got {len(results)}")
        count, counts = _decode_header(state, results[:2], 2)
        if count != remote_count or counts != remote_counts:
            raise _RemoteChanged()

        for key, item in zip(chunk, results[2:]):
            values[key] = _decode_stored_value(state, key, item)

    logger.info(
        f"Remote save count {remote_count} (local {save_count}), "
        f"{len(values)} changed keys"
    )
    return Updates(save_count=remote_count, key_counts=remote_counts, updates=values)


async def initial_load(
    backend: DynamoBackend,
    state: AppState,
    save_count: int,
    key_counts: dict[str, int],
) -> Updates | None:
    """Compare ``save_count``/``key_counts`` with the table and fetch what differs.

    Also used at startup to reconcile a persisted snapshot.

    Returns:
        None if nothing changed remotely, else an :class:`Updates` whose
        ``updates`` holds every key with a different remote version.

    Raises:
        AppStateError: A read failed, a stored value could not be decoded, or
            the remote state kept changing for more than
            ``state.max_conflict_retries`` restarts.
    """
    attempts = 0
    while True:
        try:
            return await _load_once(backend, state, save_count, key_counts)
        except _RemoteChanged:
            attempts += 1
        except DynamoError as e:
            logger.error(f"Poll failed: {e}")
            raise AppStateError(e, state) from e

        if attempts > state.max_conflict_retries:
            error = ConflictRetriesExhausted(attempts)
            logger.error(str(error))
            raise AppStateError(error, state)

        delay = state.conflict_backoff * (2 ** (attempts - 1))
        logger.warning(
            f"Remote state changed during poll, retry {attempts}/"
            f"{state.max_conflict_retries} in {delay:.2f}s"
        )
        await asyncio.sleep(delay)


async def update(
    backend: DynamoBackend, now: int, state: AppState
) -> tuple[AppState, Updates | None] | None:
    """Poll for remote changes if the update period has passed.

    Returns:
        None if it is too soon to poll. Otherwise the new state and the poll
        result (None when nothing changed). Staged local writes are kept; the
        remote save count and key map are adopted.
    """
    if now <= state.last_update_time + state.update_period:
        return None

    updates = await initial_load(backend, state, state.save_count, state.key_counts)

    new_state = replace(state, last_update_time=now)
    if updates is not None:
        new_state = replace(
            new_state,
            save_count=max(state.save_count, updates.save_count),
            key_counts=dict(updates.key_counts),
        )
    return new_state, updates


async def get_value(backend: DynamoBackend, state: AppState, key: str) -> Any:
    """Read one key's current remote value directly, bypassing the counters.

    Returns:
        The decoded value, or None if the key is not stored.
    """
    try:
        item = await backend.get_item(
            state.table, state.key_item(key), [state.value_attribute_name]
        )
        return _decode_stored_value(state, key, item)
    except DynamoError as e:
        raise AppStateError(e, state) from e


async def scan_keys(
    backend: DynamoBackend, state: AppState, fetch_values: bool = False
) -> dict[str, Any]:
    """List every key stored under the state's prefix.

    The counter and key map items are excluded.

    Args:
        backend: Table backend.
        state: Supplies table, prefix and attribute names.
        fetch_values: Also fetch and decode values; otherwise every value is None.

    Raises:
        AppStateError: The scan failed or a value could not be decoded.
    """
    prefix = state.key_prefix or ""
    reserved = {state.remote_key(k) for k in state.reserved_keys}
    attributes = [state.key_name]
    if fetch_values:
        attributes.append(state.value_attribute_name)

    found: dict[str, Any] = {}
    try:
        async for item in backend.scan_all(state.table, attributes=attributes):
            key_value = item.get(state.key_name)
            if not isinstance(key_value, AttrString):
                continue
            remote = key_value.value
            if not remote.startswith(prefix) or remote in reserved:
                continue
            key = remote[len(prefix):]
            found[key] = _decode_stored_value(state, key, item) if fetch_values else None
    except DynamoError as e:
        raise AppStateError(e, state) from e

    return found
