"""File-backed cursor store.

Persists the remote change-stream cursor in a JSON state file in the
``.record_sync/`` directory.  Each sync profile gets its own file
(``cursor_{profile_name}.json``).

Key design choices:

* **Staged then committed** -- ``stage()`` only keeps the new cursor in
  memory; ``current()`` keeps returning the committed value until
  ``commit()`` has written it, so a crash mid-run leaves the previous
  cursor on disk.
* **Atomic writes** -- ``commit()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .models import Cursor

logger = logging.getLogger(__name__)

_UNSET = object()


class FileCursorStore:
    """Load, stage, and commit the cursor for a given profile.

    Args:
        state_dir: Directory where state files are stored (typically
            ``.record_sync/``).
        profile_name: Sync profile name (used in the filename).
    """

    def __init__(self, state_dir: Path, profile_name: str = "default") -> None:
        self._state_dir = Path(state_dir)
        self.profile_name = profile_name
        self._staged: object = _UNSET

    # ------------------------------------------------------------------
    # CursorStore contract
    # ------------------------------------------------------------------

    def current(self) -> Cursor | None:
        """Return the committed cursor, or ``None`` if none was committed."""
        return self.load().get("cursor")

    def stage(self, cursor: Cursor | None) -> None:
        """Hold *cursor* in memory until ``commit()``."""
        self._staged = cursor

    def commit(self) -> None:
        """Persist the staged cursor.  No-op when nothing is staged."""
        if self._staged is _UNSET:
            logger.debug("No staged cursor to commit")
            return
        state = self.load()
        state["cursor"] = self._staged
        self.save(state)
        self._staged = _UNSET
        logger.debug(
            "Committed cursor for profile '%s'", self.profile_name
        )

    def discard(self) -> None:
        """Drop any staged cursor without persisting it."""
        self._staged = _UNSET

    @property
    def has_staged(self) -> bool:
        return self._staged is not _UNSET

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """Load state from disk.

        Returns:
            The state dict.  If the file does not exist an empty state
            with ``version=1`` is returned.
        """
        path = self.state_path
        if not path.exists():
            return {
                "version": 1,
                "last_commit": None,
                "profile": self.profile_name,
                "cursor": None,
            }
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, state: dict) -> None:
        """Persist state to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates ``state_dir`` if it does not exist.
        The ``last_commit`` field is set to the current UTC ISO 8601
        timestamp before writing.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        state["last_commit"] = datetime.now(timezone.utc).isoformat()

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.state_path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @property
    def state_path(self) -> Path:
        """Path to the state file for this profile."""
        return self._state_dir / f"cursor_{self.profile_name}.json"
