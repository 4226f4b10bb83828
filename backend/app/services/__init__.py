"""Application service helpers."""

from .backend import get_backend, get_local_storage, get_token_auth, init_datastore
from .realtime import get_realtime_client, shutdown_realtime, startup_realtime

__all__ = [
    "get_backend",
    "get_local_storage",
    "get_token_auth",
    "init_datastore",
    "get_realtime_client",
    "shutdown_realtime",
    "startup_realtime",
]
