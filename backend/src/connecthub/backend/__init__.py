"""Backend client: table queries, auth and object storage."""

from .auth import TokenAuth
from .base import (
    Backend,
    BackendError,
    BackendQueryError,
    ChangePublisher,
    Filter,
    Query,
    QueryBuilder,
    QueryResult,
)
from .rest import RestBackend
from .sql import SqlBackend
from .storage import InvalidObjectPath, LocalStorage

__all__ = [
    "Backend",
    "BackendError",
    "BackendQueryError",
    "ChangePublisher",
    "Filter",
    "InvalidObjectPath",
    "LocalStorage",
    "Query",
    "QueryBuilder",
    "QueryResult",
    "RestBackend",
    "SqlBackend",
    "TokenAuth",
]
