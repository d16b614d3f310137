"""Tests for the in-memory backend's transactional rules."""

import pytest

from dynamostate.dynamo import (
    AttrNumber,
    AttrString,
    Delete,
    InMemoryDynamo,
    Put,
    ServiceError,
    TransactGet,
)


@pytest.fixture
def backend():
    dynamo = InMemoryDynamo()
    dynamo.create_table("t")
    return dynamo


def _put(key: str, value: str = "v") -> Put:
    return Put("t", {"key": AttrString(key), "value": AttrString(value)})


class TestItems:
    """Tests for single-item operations."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self, backend):
        """Test single-item put, get with projection and delete."""
        await backend.put_item("t", {"key": AttrString("a"), "n": AttrNumber("1")})

        assert await backend.get_item("t", {"key": AttrString("a")}) == {
            "key": AttrString("a"),
            "n": AttrNumber("1"),
        }
        assert await backend.get_item("t", {"key": AttrString("a")}, ["n"]) == {
            "n": AttrNumber("1")
        }

        await backend.delete_item("t", {"key": AttrString("a")})
        assert await backend.get_item("t", {"key": AttrString("a")}) is None

    @pytest.mark.asyncio
    async def test_missing_table(self, backend):
        """Test unknown tables raise ResourceNotFoundException."""
        with pytest.raises(ServiceError) as exc_info:
            await backend.get_item("nope", {"key": AttrString("a")})
        assert exc_info.value.code == "ResourceNotFoundException"

    @pytest.mark.asyncio
    async def test_key_must_match_schema(self, backend):
        """Test items without the key attribute are rejected."""
        with pytest.raises(ServiceError) as exc_info:
            await backend.put_item("t", {"other": AttrString("a")})
        assert exc_info.value.code == "ValidationException"

    @pytest.mark.asyncio
    async def test_scan_pages(self, backend):
        """Test scans paginate in insertion order."""
        for key in "abcde":
            await backend.put_item("t", {"key": AttrString(key)})

        first = await backend.scan("t", limit=2)
        second = await backend.scan("t", limit=2, start_key=first.last_key)

        assert [i["key"].value for i in first.items] == ["a", "b"]
        assert [i["key"].value for i in second.items] == ["c", "d"]
        assert [i["key"].value async for i in backend.scan_all("t", page_size=2)] == list("abcde")


class TestTransactions:
    """Tests for transactional limits and atomicity."""

    @pytest.mark.asyncio
    async def test_write_is_all_or_nothing(self, backend):
        """Test a rejected transaction applies nothing."""
        await backend.put_item("t", {"key": AttrString("keep")})

        with pytest.raises(ServiceError):
            await backend.transact_write_items(
                [_put("new"), Delete("t", {"key": AttrString("keep")}), _put("new")]
            )

        assert [i["key"].value for i in backend.items("t")] == ["keep"]

    @pytest.mark.asyncio
    async def test_hundred_operations_allowed(self, backend):
        """Test a transaction of 100 operations succeeds."""
        await backend.transact_write_items([_put(f"k{i}") for i in range(100)])

        assert len(backend.items("t")) == 100

    @pytest.mark.asyncio
    async def test_over_hundred_rejected(self, backend):
        """Test a transaction over 100 operations is rejected."""
        with pytest.raises(ServiceError) as exc_info:
            await backend.transact_write_items([_put(f"k{i}") for i in range(101)])

        assert exc_info.value.code == "ValidationException"
        assert backend.items("t") == []

    @pytest.mark.asyncio
    async def test_transact_get_order(self, backend):
        """Test transactional reads keep request order."""
        await backend.put_item("t", {"key": AttrString("b"), "value": AttrString("2")})

        results = await backend.transact_get_items(
            [
                TransactGet("t", {"key": AttrString("a")}),
                TransactGet("t", {"key": AttrString("b")}, ["value"]),
            ]
        )

        assert results == [None, {"value": AttrString("2")}]
