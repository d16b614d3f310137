"""Async DynamoDB client speaking the service's JSON protocol over httpx.

Requests are signed with botocore's SigV4 signer. Only the operations the
state synchronizer and CLI need are implemented.
"""

import json
import logging
from typing import Any

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from .attributes import Item, decode_item, encode_item
from .backend import (
    Account,
    Delete,
    DynamoBackend,
    Put,
    ScanPage,
    TransactGet,
    WriteOperation,
)
from .errors import DecodeError, ServiceError, TransportError

logger = logging.getLogger(__name__)

TARGET_PREFIX = "DynamoDB_20120810"
CONTENT_TYPE = "application/x-amz-json-1.0"


def _projection(attributes: list[str] | None) -> dict[str, Any]:
    """Build ProjectionExpression params with placeholders for every name.

    Placeholders avoid clashes with DynamoDB reserved words such as "key"
    and "value".
    """
    if not attributes:
        return {}
    names = {f"#p{i}": name for i, name in enumerate(attributes)}
    return {
        "ProjectionExpression": ", ".join(names),
        "ExpressionAttributeNames": names,
    }


def _write_entry(operation: WriteOperation) -> dict[str, Any]:
    if isinstance(operation, Put):
        return {
            "Put": {
                "TableName": operation.table,
                "Item": encode_item(operation.item),
            }
        }
    if isinstance(operation, Delete):
        return {
            "Delete": {
                "TableName": operation.table,
                "Key": encode_item(operation.key),
            }
        }
    raise TypeError(f"Unsupported write operation: {operation!r}")


class DynamoClient(DynamoBackend):
    """Backend that talks to a real (or local) DynamoDB endpoint."""

    def __init__(
        self,
        account: Account,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            account: Credentials, region and optional endpoint override.
            timeout: Request timeout in seconds.
            http_client: Preconfigured httpx client; one is created if omitted.
        """
        self.account = account
        self.timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._credentials = Credentials(
            account.access_key, account.secret_key, account.session_token
        )

    async def __aenter__(self) -> "DynamoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _signed_headers(self, target: str, body: bytes) -> dict[str, str]:
        request = AWSRequest(
            method="POST",
            url=self.account.endpoint,
            data=body,
            headers={
                "Content-Type": CONTENT_TYPE,
                "X-Amz-Target": f"{TARGET_PREFIX}.{target}",
            },
        )
        SigV4Auth(self._credentials, "dynamodb", self.account.region).add_auth(request)
        return dict(request.headers.items())

    async def _call(self, target: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one signed request and return the decoded JSON body.

        Raises:
            TransportError: No response was received.
            ServiceError: The service answered with an error status.
            DecodeError: The response body was not a JSON object.
        """
        body = json.dumps(payload).encode("utf-8")
        headers = self._signed_headers(target, body)
        logger.debug(f"{target} -> {self.account.endpoint}")

        try:
            response = await self._http.post(
                self.account.endpoint, content=body, headers=headers
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{target} failed: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError as e:
            if response.status_code >= 400:
                raise ServiceError(
                    "HTTPError", response.text, status_code=response.status_code
                ) from e
            raise DecodeError(f"{target} returned invalid JSON") from e

        if response.status_code >= 400:
            if isinstance(data, dict):
                error = ServiceError.from_response(response.status_code, data)
            else:
                error = ServiceError(
                    "HTTPError", response.text, status_code=response.status_code
                )
            logger.warning(f"{target} rejected: {error}")
            raise error

        if not isinstance(data, dict):
            raise DecodeError(f"{target} returned {type(data).__name__}, expected object")

        return data

    async def get_item(
        self, table: str, key: Item, attributes: list[str] | None = None
    ) -> Item | None:
        data = await self._call(
            "GetItem",
            {"TableName": table, "Key": encode_item(key), **_projection(attributes)},
        )
        if "Item" not in data:
            return None
        return decode_item(data["Item"])

    async def put_item(self, table: str, item: Item) -> None:
        await self._call("PutItem", {"TableName": table, "Item": encode_item(item)})

    async def delete_item(self, table: str, key: Item) -> None:
        await self._call("DeleteItem", {"TableName": table, "Key": encode_item(key)})

    async def scan(
        self,
        table: str,
        attributes: list[str] | None = None,
        limit: int | None = None,
        start_key: Item | None = None,
    ) -> ScanPage:
        payload: dict[str, Any] = {"TableName": table, **_projection(attributes)}
        if limit is not None:
            payload["Limit"] = limit
        if start_key is not None:
            payload["ExclusiveStartKey"] = encode_item(start_key)

        data = await self._call("Scan", payload)

        items = data.get("Items", [])
        if not isinstance(items, list):
            raise DecodeError("Scan Items must be a list")
        last_key = data.get("LastEvaluatedKey")
        return ScanPage(
            items=[decode_item(i) for i in items],
            last_key=decode_item(last_key) if last_key else None,
        )

    async def transact_get_items(self, gets: list[TransactGet]) -> list[Item | None]:
        payload = {
            "TransactItems": [
                {
                    "Get": {
                        "TableName": get.table,
                        "Key": encode_item(get.key),
                        **_projection(get.attributes),
                    }
                }
                for get in gets
            ]
        }
        data = await self._call("TransactGetItems", payload)

        responses = data.get("Responses")
        if not isinstance(responses, list):
            raise DecodeError("TransactGetItems response has no Responses list")
        if len(responses) != len(gets):
            raise DecodeError(
                f"TransactGetItems returned {len(responses)} results for {len(gets)} gets"
            )

        results: list[Item | None] = []
        for entry in responses:
            if not isinstance(entry, dict):
                raise DecodeError("TransactGetItems result must be an object")
            item = entry.get("Item")
            results.append(decode_item(item) if item is not None else None)
        return results

    async def transact_write_items(self, operations: list[WriteOperation]) -> None:
        payload = {"TransactItems": [_write_entry(op) for op in operations]}
        await self._call("TransactWriteItems", payload)
        logger.debug(f"TransactWriteItems applied {len(operations)} operations")
