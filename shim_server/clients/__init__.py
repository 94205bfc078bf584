"""Expose storage backends."""

from .dynamodb import DynamoDBCorrelationStore, DynamoDBCredentialStore
from .sqlite_store import SQLiteCorrelationStore, SQLiteCredentialStore
from .stores import CorrelationStore, CredentialStore, DuplicateStateKeyError

__all__ = [
    "CorrelationStore",
    "CredentialStore",
    "DuplicateStateKeyError",
    "DynamoDBCorrelationStore",
    "DynamoDBCredentialStore",
    "SQLiteCorrelationStore",
    "SQLiteCredentialStore",
]
