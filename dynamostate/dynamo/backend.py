"""Abstract contract every DynamoDB backend implements."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Union

from .attributes import Item

# Hard service limit on operations inside one TransactGetItems/TransactWriteItems
MAX_TRANSACTION_ITEMS = 100


@dataclass
class Account:
    """Credentials and table locator for one DynamoDB table."""

    access_key: str = ""
    secret_key: str = ""
    region: str = ""
    table_name: str = ""
    session_token: str | None = None
    endpoint_url: str | None = None

    @property
    def endpoint(self) -> str:
        if self.endpoint_url:
            return self.endpoint_url
        return f"https://dynamodb.{self.region}.amazonaws.com/"

    def is_incomplete(self) -> bool:
        """True if any field needed to reach the table is empty."""
        return not (
            self.access_key and self.secret_key and self.region and self.table_name
        )

    def __repr__(self) -> str:
        return (
            f"Account(region={self.region!r}, table_name={self.table_name!r}, "
            f"endpoint_url={self.endpoint_url!r})"
        )


@dataclass
class TransactGet:
    """One read inside a transactional get."""

    table: str
    key: Item
    attributes: list[str] | None = None


@dataclass
class Put:
    """Insert or replace a whole item."""

    table: str
    item: Item


@dataclass
class Delete:
    """Remove an item by key. Deleting a missing item is not an error."""

    table: str
    key: Item


WriteOperation = Union[Put, Delete]


@dataclass
class ScanPage:
    """One page of scan results."""

    items: list[Item] = field(default_factory=list)
    last_key: Item | None = None


class DynamoBackend(ABC):
    """Operations the state synchronizer and CLI need from a table store.

    Implementations raise subclasses of
    :class:`~dynamostate.dynamo.errors.DynamoError` on failure.
    """

    @abstractmethod
    async def get_item(
        self, table: str, key: Item, attributes: list[str] | None = None
    ) -> Item | None:
        """Fetch one item, or None if it does not exist."""
        pass

    @abstractmethod
    async def put_item(self, table: str, item: Item) -> None:
        pass

    @abstractmethod
    async def delete_item(self, table: str, key: Item) -> None:
        pass

    @abstractmethod
    async def scan(
        self,
        table: str,
        attributes: list[str] | None = None,
        limit: int | None = None,
        start_key: Item | None = None,
    ) -> ScanPage:
        """Read one page of the table.

        Args:
            table: Table name.
            attributes: Optional projection.
            limit: Maximum items to evaluate for this page.
            start_key: ``last_key`` of the previous page.
        """
        pass

    @abstractmethod
    async def transact_get_items(self, gets: list[TransactGet]) -> list[Item | None]:
        """Read several items atomically.

        Returns:
            One entry per request, in request order; None for missing items.
        """
        pass

    @abstractmethod
    async def transact_write_items(self, operations: list[WriteOperation]) -> None:
        """Apply every operation or none of them."""
        pass

    async def scan_all(
        self,
        table: str,
        attributes: list[str] | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[Item]:
        """Iterate over every item, following scan pagination."""
        start_key = None
        while True:
            page = await self.scan(
                table, attributes=attributes, limit=page_size, start_key=start_key
            )
            for item in page.items:
                yield item
            if page.last_key is None:
                break
            start_key = page.last_key

    async def close(self) -> None:
        """Release any held resources."""
        return None
