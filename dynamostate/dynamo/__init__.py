"""DynamoDB access layer.

- :mod:`attributes`: typed attribute values and their JSON encoding
- :mod:`backend`: the backend contract and request types
- :mod:`client`: httpx client for a real endpoint
- :mod:`memory`: in-process backend for tests and offline use
"""

from .attributes import (
    AttrBinary,
    AttrBinarySet,
    AttrBool,
    AttributeValue,
    AttrList,
    AttrMap,
    AttrNull,
    AttrNumber,
    AttrNumberSet,
    AttrString,
    AttrStringSet,
    Item,
    decode_item,
    decode_value,
    encode_item,
    encode_value,
)
from .backend import (
    MAX_TRANSACTION_ITEMS,
    Account,
    Delete,
    DynamoBackend,
    Put,
    ScanPage,
    TransactGet,
)
from .client import DynamoClient
from .errors import (
    ConflictRetriesExhausted,
    DecodeError,
    DynamoError,
    ServiceError,
    TransportError,
)
from .memory import InMemoryDynamo

__all__ = [
    "AttrBinary",
    "AttrBinarySet",
    "AttrBool",
    "AttributeValue",
    "AttrList",
    "AttrMap",
    "AttrNull",
    "AttrNumber",
    "AttrNumberSet",
    "AttrString",
    "AttrStringSet",
    "Item",
    "decode_item",
    "decode_value",
    "encode_item",
    "encode_value",
    "MAX_TRANSACTION_ITEMS",
    "Account",
    "Delete",
    "DynamoBackend",
    "Put",
    "ScanPage",
    "TransactGet",
    "DynamoClient",
    "ConflictRetriesExhausted",
    "DecodeError",
    "DynamoError",
    "ServiceError",
    "TransportError",
    "InMemoryDynamo",
]
