"""In-process backend with DynamoDB's transactional semantics.

Useful for tests and for running the synchronizer without network access.
Enforces the limits the synchronizer depends on: at most 100 operations
per transaction, one operation per item per transaction, all-or-nothing
writes.
"""

import copy
import json
import logging

from .attributes import Item, encode_value
from .backend import (
    MAX_TRANSACTION_ITEMS,
    Delete,
    DynamoBackend,
    Put,
    ScanPage,
    TransactGet,
    WriteOperation,
)
from .errors import ServiceError

logger = logging.getLogger(__name__)

KeyId = tuple[str, ...]


def _validation(message: str) -> ServiceError:
    return ServiceError("ValidationException", message, status_code=400)


class InMemoryDynamo(DynamoBackend):
    """Dictionary-backed tables keyed by one or more key attributes."""

    def __init__(self):
        self._schemas: dict[str, tuple[str, ...]] = {}
        self._tables: dict[str, dict[KeyId, Item]] = {}

    def create_table(self, name: str, key_names: tuple[str, ...] = ("key",)) -> None:
        """Create an empty table whose items are identified by ``key_names``."""
        self._schemas[name] = tuple(key_names)
        self._tables[name] = {}
        logger.debug(f"Created in-memory table {name} keyed by {key_names}")

    def items(self, table: str) -> list[Item]:
        """Snapshot of every stored item, in insertion order."""
        return [copy.deepcopy(item) for item in self._table(table).values()]

    def _table(self, name: str) -> dict[KeyId, Item]:
        if name not in self._tables:
            raise ServiceError(
                "ResourceNotFoundException",
                f"Requested resource not found: Table: {name} not found",
            )
        return self._tables[name]

    def _key_id(self, table: str, key: Item) -> KeyId:
        self._table(table)
        parts = []
        for name in self._schemas[table]:
            if name not in key:
                raise _validation(
                    "The provided key element does not match the schema"
                )
            parts.append(json.dumps(encode_value(key[name]), sort_keys=True))
        return tuple(parts)

    @staticmethod
    def _project(item: Item, attributes: list[str] | None) -> Item:
        if not attributes:
            return copy.deepcopy(item)
        return {k: copy.deepcopy(v) for k, v in item.items() if k in attributes}

    async def get_item(
        self, table: str, key: Item, attributes: list[str] | None = None
    ) -> Item | None:
        item = self._table(table).get(self._key_id(table, key))
        return None if item is None else self._project(item, attributes)

    async def put_item(self, table: str, item: Item) -> None:
        self._table(table)[self._key_id(table, item)] = copy.deepcopy(item)

    async def delete_item(self, table: str, key: Item) -> None:
        self._table(table).pop(self._key_id(table, key), None)

    async def scan(
        self,
        table: str,
        attributes: list[str] | None = None,
        limit: int | None = None,
        start_key: Item | None = None,
    ) -> ScanPage:
        rows = list(self._table(table).items())

        start = 0
        if start_key is not None:
            start_id = self._key_id(table, start_key)
            for index, (key_id, _) in enumerate(rows):
                if key_id == start_id:
                    start = index + 1
                    break

        end = len(rows) if limit is None else min(len(rows), start + limit)
        page = rows[start:end]

        last_key = None
        if end < len(rows) and page:
            last_item = page[-1][1]
            last_key = {
                name: copy.deepcopy(last_item[name]) for name in self._schemas[table]
            }

        return ScanPage(
            items=[self._project(item, attributes) for _, item in page],
            last_key=last_key,
        )

    def _check_transaction(self, entries: list[tuple[str, Item]]) -> None:
        if not entries:
            raise _validation("TransactItems must not be empty")
        if len(entries) > MAX_TRANSACTION_ITEMS:
            raise _validation(
                f"Member must have length less than or equal to {MAX_TRANSACTION_ITEMS}"
            )
        seen: set[tuple[str, KeyId]] = set()
        for table, key in entries:
            ident = (table, self._key_id(table, key))
            if ident in seen:
                raise _validation(
                    "Transaction request cannot include multiple operations on one item"
                )
            seen.add(ident)

    async def transact_get_items(self, gets: list[TransactGet]) -> list[Item | None]:
        self._check_transaction([(g.table, g.key) for g in gets])
        return [await self.get_item(g.table, g.key, g.attributes) for g in gets]

    async def transact_write_items(self, operations: list[WriteOperation]) -> None:
        entries = []
        for op in operations:
            if isinstance(op, Put):
                entries.append((op.table, op.item))
            elif isinstance(op, Delete):
                entries.append((op.table, op.key))
            else:
                raise TypeError(f"Unsupported write operation: {op!r}")
        # Validation happens before any mutation, so a rejected
        # transaction leaves every table untouched.
        self._check_transaction(entries)

        for op in operations:
            if isinstance(op, Put):
                await self.put_item(op.table, op.item)
            else:
                await self.delete_item(op.table, op.key)
