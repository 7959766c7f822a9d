"""Error taxonomy for the sync engine.

Every failure of a run surfaces as exactly one ``SyncError`` subclass
carrying the phase it happened in and, when a collaborator raised, the
underlying exception (also chained as ``__cause__``).
"""

from __future__ import annotations

from .models import SyncPhase


class SyncError(Exception):
    """Terminal failure of a sync run.

    Args:
        message: Human-readable description.
        phase: Phase the run was in when it failed.
        cause: Underlying exception, if any.
    """

    default_phase = SyncPhase.IDLE

    def __init__(
        self,
        message: str,
        phase: SyncPhase | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.cause = cause

    def __str__(self) -> str:
        text = f"[{self.phase.value}] {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text


class LocalSnapshotError(SyncError):
    """The change tracker could not enumerate pending mutations."""

    default_phase = SyncPhase.SNAPSHOTTING


class PushRejectedError(SyncError):
    """The remote store failed a push for a reason other than a conflict."""

    default_phase = SyncPhase.PUSHING

    def __init__(
        self,
        message: str,
        phase: SyncPhase | None = None,
        cause: BaseException | None = None,
        reasons: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, phase, cause)
        self.reasons = reasons or {}


class UnresolvedConflictError(SyncError):
    """Conflicts could not be resolved in a single resolve-and-retry round."""

    default_phase = SyncPhase.CONFLICT_RESOLVING

    def __init__(
        self,
        message: str,
        phase: SyncPhase | None = None,
        cause: BaseException | None = None,
        record_ids: list[str] | None = None,
    ) -> None:
        super().__init__(message, phase, cause)
        self.record_ids = record_ids or []


class PullError(SyncError):
    """Fetching a page of remote changes failed."""

    default_phase = SyncPhase.PULLING


class ApplyError(SyncError):
    """Writing a record to, or deleting one from, the local store failed."""

    default_phase = SyncPhase.APPLYING


class CommitError(SyncError):
    """The cursor could not be made durable."""

    default_phase = SyncPhase.COMMITTING


class ClearError(SyncError):
    """The change tracker could not be cleared after the cursor commit."""

    default_phase = SyncPhase.COMMITTING


class UnsupportedPolicyError(SyncError):
    """A conflict policy cannot be used as configured."""
