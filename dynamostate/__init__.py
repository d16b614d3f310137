"""dynamostate: shared application state on DynamoDB.

A small DynamoDB client (typed attribute codec, signed JSON-protocol
transport) and a synchronizer that lets independent clients share a
key/value map through one table using version counters instead of locks.
"""

__version__ = "0.1.0"
