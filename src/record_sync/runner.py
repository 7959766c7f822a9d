"""Build a ``SyncEngine`` from the unified configuration.

Wires the configured remote, cursor profile, conflict policy, entity
types and page limit into one engine so callers only supply the local
side (change tracker and local store).
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import Config
from .core.client import RecordStoreClient
from .sync.contracts import ChangeTracker, LocalStore, RemoteStoreClient
from .sync.engine import CompletionCallback, SyncEngine
from .sync.resolver import ResolutionFn
from .sync.state import FileCursorStore

logger = logging.getLogger(__name__)


def build_engine(
    config: Config,
    tracker: ChangeTracker,
    local_store: LocalStore,
    resolution_fn: ResolutionFn | None = None,
    completion: CompletionCallback | None = None,
    remote: RemoteStoreClient | None = None,
) -> SyncEngine:
    """Create a ``SyncEngine`` configured from *config*.

    Args:
        config: Loaded configuration (see ``load_settings``).
        tracker: Local change tracker.
        local_store: Local replica the pulled changes are applied to.
        resolution_fn: Required when the policy is
            ``client-tells-which-wins``.
        completion: Optional callback invoked once per run.
        remote: Remote store client.  Defaults to a ``RecordStoreClient``
            built from *config*.

    Raises:
        UnsupportedPolicyError: If the configured policy cannot be used
            (``keep-both``, or ``client-tells-which-wins`` without a
            resolution function).
    """
    cursor_store = FileCursorStore(Path(config.state_dir), config.profile)
    if remote is None:
        remote = RecordStoreClient(config)
    logger.debug(
        "Building sync engine: policy=%s profile=%s state=%s",
        config.conflict_policy,
        config.profile,
        cursor_store.state_path,
    )
    return SyncEngine(
        tracker=tracker,
        cursor_store=cursor_store,
        remote=remote,
        local_store=local_store,
        policy=config.conflict_policy,
        resolution_fn=resolution_fn,
        entity_types=config.entity_types,
        completion=completion,
        max_pull_pages=config.max_pull_pages,
    )
