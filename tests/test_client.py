"""Tests for the httpx DynamoDB client."""

import json

import httpx
import pytest

from dynamostate.dynamo import (
    Account,
    AttrNumber,
    AttrString,
    DecodeError,
    Delete,
    DynamoClient,
    Put,
    ServiceError,
    TransactGet,
    TransportError,
)


@pytest.fixture
def account():
    return Account(
        access_key="AKIDEXAMPLE",
        secret_key="secret",
        region="us-east-1",
        table_name="app-state",
        endpoint_url="http://dynamo.test/",
    )


class FakeService:
    """Records requests and replies with queued responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def reply(self, status_code: int = 200, body=None, content: bytes | None = None):
        if content is not None:
            self.responses.append(httpx.Response(status_code, content=content))
        else:
            self.responses.append(httpx.Response(status_code, json=body or {}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def target(self, index: int = -1) -> str:
        return self.requests[index].headers["X-Amz-Target"]


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def client(account, service):
    http = httpx.AsyncClient(transport=httpx.MockTransport(service.handler))
    return DynamoClient(account, http_client=http)


class TestRequestFormat:
    """Tests for headers and signing."""

    @pytest.mark.asyncio
    async def test_signed_json_request(self, client, service):
        """Test requests carry the target, content type and SigV4 headers."""
        service.reply(body={})

        await client.put_item("app-state", {"key": AttrString("a")})

        request = service.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://dynamo.test/"
        assert request.headers["X-Amz-Target"] == "DynamoDB_20120810.PutItem"
        assert request.headers["Content-Type"] == "application/x-amz-json-1.0"
        assert request.headers["Authorization"].startswith("AWS4-HMAC-SHA256")
        assert "AKIDEXAMPLE/" in request.headers["Authorization"]
        assert "X-Amz-Date" in request.headers

    def test_default_endpoint_from_region(self):
        """Test the endpoint defaults to the regional URL."""
        account = Account("a", "b", "eu-west-1", "t")
        assert account.endpoint == "https://dynamodb.eu-west-1.amazonaws.com/"

    def test_repr_hides_secret(self, account):
        """Test the account repr does not show the secret key."""
        assert "secret" not in repr(account)


class TestSingleItemOperations:
    """Tests for GetItem, PutItem, DeleteItem."""

    @pytest.mark.asyncio
    async def test_get_item_with_projection(self, client, service):
        """Test GetItem sends a projection with placeholders."""
        service.reply(body={"Item": {"key": {"S": "a"}, "value": {"S": "1"}}})

        item = await client.get_item("app-state", {"key": AttrString("a")}, ["value"])

        assert item == {"key": AttrString("a"), "value": AttrString("1")}
        payload = service.payload()
        assert payload["Key"] == {"key": {"S": "a"}}
        assert payload["ProjectionExpression"] == "#p0"
        assert payload["ExpressionAttributeNames"] == {"#p0": "value"}

    @pytest.mark.asyncio
    async def test_get_missing_item(self, client, service):
        """Test a missing item returns None."""
        service.reply(body={})

        assert await client.get_item("app-state", {"key": AttrString("a")}) is None

    @pytest.mark.asyncio
    async def test_delete_item(self, client, service):
        """Test DeleteItem payload."""
        service.reply(body={})

        await client.delete_item("app-state", {"key": AttrString("gone")})

        assert service.target() == "DynamoDB_20120810.DeleteItem"
        assert service.payload() == {"TableName": "app-state", "Key": {"key": {"S": "gone"}}}


class TestScan:
    """Tests for Scan and pagination."""

    @pytest.mark.asyncio
    async def test_scan_page(self, client, service):
        """Test one Scan page and its last key."""
        service.reply(
            body={
                "Items": [{"key": {"S": "a"}}],
                "LastEvaluatedKey": {"key": {"S": "a"}},
            }
        )

        page = await client.scan("app-state", attributes=["key"], limit=1)

        assert page.items == [{"key": AttrString("a")}]
        assert page.last_key == {"key": AttrString("a")}
        assert service.payload()["Limit"] == 1

    @pytest.mark.asyncio
    async def test_scan_all_follows_pages(self, client, service):
        """Test scan_all follows LastEvaluatedKey."""
        service.reply(
            body={"Items": [{"key": {"S": "a"}}], "LastEvaluatedKey": {"key": {"S": "a"}}}
        )
        service.reply(body={"Items": [{"key": {"S": "b"}}]})

        keys = [item["key"].value async for item in client.scan_all("app-state")]

        assert keys == ["a", "b"]
        assert service.payload(1)["ExclusiveStartKey"] == {"key": {"S": "a"}}


class TestTransactions:
    """Tests for TransactGetItems and TransactWriteItems."""

    @pytest.mark.asyncio
    async def test_transact_get_preserves_order_and_missing(self, client, service):
        """Test results keep request order and missing items are None."""
        service.reply(
            body={"Responses": [{"Item": {"saveCount": {"N": "3"}}}, {}]}
        )

        results = await client.transact_get_items(
            [
                TransactGet("app-state", {"key": AttrString("saveCount")}, ["saveCount"]),
                TransactGet("app-state", {"key": AttrString("keyCounts")}),
            ]
        )

        assert results == [{"saveCount": AttrNumber("3")}, None]
        gets = service.payload()["TransactItems"]
        assert gets[0]["Get"]["ProjectionExpression"] == "#p0"
        assert "ProjectionExpression" not in gets[1]["Get"]

    @pytest.mark.asyncio
    async def test_transact_get_wrong_count(self, client, service):
        """Test a result count mismatch raises DecodeError."""
        service.reply(body={"Responses": [{}]})

        with pytest.raises(DecodeError):
            await client.transact_get_items(
                [
                    TransactGet("app-state", {"key": AttrString("a")}),
                    TransactGet("app-state", {"key": AttrString("b")}),
                ]
            )

    @pytest.mark.asyncio
    async def test_transact_write_payload(self, client, service):
        """Test TransactWriteItems payload for puts and deletes."""
        service.reply(body={})

        await client.transact_write_items(
            [
                Put("app-state", {"key": AttrString("a"), "value": AttrString("1")}),
                Delete("app-state", {"key": AttrString("b")}),
            ]
        )

        assert service.target() == "DynamoDB_20120810.TransactWriteItems"
        assert service.payload()["TransactItems"] == [
            {"Put": {"TableName": "app-state", "Item": {"key": {"S": "a"}, "value": {"S": "1"}}}},
            {"Delete": {"TableName": "app-state", "Key": {"key": {"S": "b"}}}},
        ]


class TestErrors:
    """Tests for error mapping."""

    @pytest.mark.asyncio
    async def test_service_error(self, client, service):
        """Test service errors carry code, message and cancellation reasons."""
        service.reply(
            400,
            body={
                "__type": "com.amazonaws.dynamodb.v20120810#TransactionCanceledException",
                "Message": "Transaction cancelled",
                "CancellationReasons": [{"Code": "None"}, {"Code": "ConditionalCheckFailed"}],
            },
        )

        with pytest.raises(ServiceError) as exc_info:
            await client.transact_write_items([Delete("app-state", {"key": AttrString("a")})])

        error = exc_info.value
        assert error.code == "TransactionCanceledException"
        assert error.message == "Transaction cancelled"
        assert error.status_code == 400
        assert error.cancellation_reasons[1]["Code"] == "ConditionalCheckFailed"
        assert not error.retryable

    @pytest.mark.asyncio
    async def test_throttling_is_retryable(self, client, service):
        """Test throttling errors are retryable."""
        service.reply(
            400,
            body={
                "__type": "com.amazonaws.dynamodb.v20120810#ThrottlingException",
                "message": "Rate exceeded",
            },
        )

        with pytest.raises(ServiceError) as exc_info:
            await client.get_item("app-state", {"key": AttrString("a")})

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_non_json_server_error(self, client, service):
        """Test a non-JSON 5xx reply is a retryable ServiceError."""
        service.reply(503, content=b"<html>unavailable</html>")

        with pytest.raises(ServiceError) as exc_info:
            await client.get_item("app-state", {"key": AttrString("a")})

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_server_error_with_non_object_body(self, client, service):
        """Test a 5xx reply with a JSON list body is a ServiceError."""
        service.reply(503, body=["unavailable"])

        with pytest.raises(ServiceError) as exc_info:
            await client.get_item("app-state", {"key": AttrString("a")})

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_success_with_non_object_body(self, client, service):
        """Test a 200 reply with a JSON list body raises DecodeError."""
        service.reply(200, body=["unexpected"])

        with pytest.raises(DecodeError):
            await client.get_item("app-state", {"key": AttrString("a")})

    @pytest.mark.asyncio
    async def test_invalid_json_success(self, client, service):
        """Test invalid JSON on success raises DecodeError."""
        service.reply(200, content=b"not json")

        with pytest.raises(DecodeError):
            await client.get_item("app-state", {"key": AttrString("a")})

    @pytest.mark.asyncio
    async def test_connection_failure(self, account):
        """Test connection errors become TransportError."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        client = DynamoClient(account, http_client=http)

        with pytest.raises(TransportError):
            await client.put_item("app-state", {"key": AttrString("a")})
