"""Async utilities for driving coroutine-based remote clients from the sync engine.

The engine treats every phase call as blocking.  ``BlockingRemoteStore``
wraps a remote client whose methods are coroutines so each call returns a
single complete result, however the client performs its I/O internally.
"""

import asyncio
import logging
from typing import Any, Coroutine, Protocol, Sequence, TypeVar

from ..sync.models import ChangePage, PushOutcome, Record, RecordID

T = TypeVar("T")
logger = logging.getLogger(__name__)


class AsyncRemoteStoreClient(Protocol):
    """Coroutine flavour of the ``RemoteStoreClient`` contract."""

    async def push(
        self, upserts: Sequence[Record], deletes: Sequence[RecordID]
    ) -> list[PushOutcome]: ...  # pragma: no cover

    async def fetch_changes(
        self, since: str | None
    ) -> ChangePage: ...  # pragma: no cover

    async def fetch_current(
        self, ids: Sequence[RecordID]
    ) -> list[Record]: ...  # pragma: no cover


def run_blocking(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro* to completion and return its result.

    Must not be called from inside a running event loop.

    Raises:
        RuntimeError: If an event loop is already running in this thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError(
        "run_blocking() cannot be used from a running event loop; "
        "run the sync engine in a worker thread instead"
    )


class BlockingRemoteStore:
    """Adapt an ``AsyncRemoteStoreClient`` to the blocking engine contract.

    Args:
        client: The coroutine-based client.
    """

    def __init__(self, client: AsyncRemoteStoreClient) -> None:
        self.client = client

    def push(
        self, upserts: Sequence[Record], deletes: Sequence[RecordID]
    ) -> list[PushOutcome]:
        return list(run_blocking(self.client.push(upserts, deletes)))

    def fetch_changes(self, since: str | None) -> ChangePage:
        return run_blocking(self.client.fetch_changes(since))

    def fetch_current(self, ids: Sequence[RecordID]) -> list[Record]:
        return list(run_blocking(self.client.fetch_current(ids)))
