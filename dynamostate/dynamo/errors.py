"""Error types raised by the DynamoDB transport and codec."""

from typing import Any

# Service error codes that are safe to retry unchanged
RETRYABLE_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "ThrottlingException",
        "TransactionConflictException",
        "TransactionInProgressException",
        "InternalServerError",
        "ServiceUnavailable",
    }
)


class DynamoError(Exception):
    """Base class for every error surfaced by this package's DynamoDB layer."""


class TransportError(DynamoError):
    """The request never produced a service response (network, timeout)."""


class ServiceError(DynamoError):
    """The service rejected the request.

    Attributes:
        code: Short error type, e.g. "ValidationException".
        message: Human readable message from the service.
        status_code: HTTP status of the response.
        retryable: Whether resending the same request may succeed.
        cancellation_reasons: Per-operation reasons for a cancelled transaction.
    """

    def __init__(
        self,
        code: str,
        message: str = "",
        status_code: int = 400,
        cancellation_reasons: list[dict[str, Any]] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.cancellation_reasons = cancellation_reasons or []
        super().__init__(f"{code}: {message}" if message else code)

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500 or self.code in RETRYABLE_CODES

    @classmethod
    def from_response(cls, status_code: int, body: dict[str, Any]) -> "ServiceError":
        """Build from a DynamoDB JSON error body.

        The ``__type`` field looks like
        ``com.amazonaws.dynamodb.v20120810#ValidationException``.
        """
        error_type = str(body.get("__type", "UnknownError"))
        code = error_type.rsplit("#", 1)[-1]
        message = body.get("message") or body.get("Message") or ""
        return cls(
            code=code,
            message=str(message),
            status_code=status_code,
            cancellation_reasons=body.get("CancellationReasons"),
        )


class DecodeError(DynamoError):
    """A response or stored value did not have the expected shape."""


class ConflictRetriesExhausted(DynamoError):
    """Remote state kept changing between the two reads of a poll."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Remote state changed during {attempts} consecutive poll attempts"
        )
