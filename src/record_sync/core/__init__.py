"""Remote store access shared by sync runs."""

from .async_utils import BlockingRemoteStore, run_blocking
from .client import RecordStoreClient, RemoteStoreError

__all__ = [
    "BlockingRemoteStore",
    "RecordStoreClient",
    "RemoteStoreError",
    "run_blocking",
]
