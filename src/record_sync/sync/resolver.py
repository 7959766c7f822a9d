"""Conflict resolution strategies for the sync engine.

Provides one resolver per supported ``ConflictPolicy``:

- ``ServerWinsResolver``: Keeps the server record; the client write is
  discarded.
- ``ClientWinsResolver``: Keeps the client's fields on top of the server
  record so the server's version stamp is respected on re-push.
- ``ClientTellsWhichWinsResolver``: Delegates to a caller-supplied
  function.

``KeepBoth`` has no resolver.  No field-merge rule is defined for it, so
``create_resolver()`` rejects it at configuration time.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from .errors import UnresolvedConflictError, UnsupportedPolicyError
from .models import ConflictEntry, ConflictPolicy, Record

logger = logging.getLogger(__name__)

ResolutionFn = Callable[[Record, Record], Record]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all conflict resolvers must satisfy."""

    policy: ConflictPolicy

    def resolve(self, entry: ConflictEntry) -> Record:
        """Return the record to persist for a conflicting pair.

        Args:
            entry: Client and server versions of the same record.

        Returns:
            The record to re-push.
        """
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Simple resolvers
# ---------------------------------------------------------------------------


class ServerWinsResolver:
    """Always resolve conflicts in favour of the server record."""

    policy = ConflictPolicy.SERVER_WINS

    def resolve(self, entry: ConflictEntry) -> Record:
        """Return the server record unchanged."""
        return entry.server_record


class ClientWinsResolver:
    """Resolve conflicts in favour of the client's field values.

    Every server field is overwritten by the client field of the same
    name.  Fields only the server has are kept.  The server's
    ``version_tag`` is preserved.
    """

    policy = ConflictPolicy.CLIENT_WINS

    def resolve(self, entry: ConflictEntry) -> Record:
        fields = dict(entry.server_record.fields)
        fields.update(entry.client_record.fields)
        return entry.server_record.with_fields(fields)


class ClientTellsWhichWinsResolver:
    """Delegate resolution to an externally supplied function.

    Args:
        resolution_fn: ``(client, server) -> Record``.
    """

    policy = ConflictPolicy.CLIENT_TELLS_WHICH_WINS

    def __init__(self, resolution_fn: ResolutionFn) -> None:
        self.resolution_fn = resolution_fn

    def resolve(self, entry: ConflictEntry) -> Record:
        """Call the resolution function and check the result's identity.

        Raises:
            UnresolvedConflictError: If the function raises, or returns
                something other than a record with the pair's ID.
        """
        record_id = entry.record_id
        try:
            resolved = self.resolution_fn(
                entry.client_record, entry.server_record
            )
        except Exception as exc:
            raise UnresolvedConflictError(
                f"Resolution function failed for {record_id}",
                cause=exc,
                record_ids=[str(record_id)],
            ) from exc

        if not isinstance(resolved, Record):
            raise UnresolvedConflictError(
                f"Resolution function returned {type(resolved).__name__} "
                f"for {record_id}, expected Record",
                record_ids=[str(record_id)],
            )
        if not resolved.record_id.name or resolved.record_id != record_id:
            raise UnresolvedConflictError(
                f"Resolution function returned record "
                f"'{resolved.record_id}' for conflict on '{record_id}'",
                record_ids=[str(record_id)],
            )
        return resolved


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_POLICY_MAP: dict[ConflictPolicy, type] = {
    ConflictPolicy.SERVER_WINS: ServerWinsResolver,
    ConflictPolicy.CLIENT_WINS: ClientWinsResolver,
}


def create_resolver(
    policy: ConflictPolicy | str,
    resolution_fn: ResolutionFn | None = None,
) -> ConflictResolver:
    """Create a conflict resolver for *policy*.

    Args:
        policy: A ``ConflictPolicy`` or its string value.
        resolution_fn: Required for ``client-tells-which-wins``.

    Returns:
        A ``ConflictResolver`` implementation instance.

    Raises:
        UnsupportedPolicyError: If the policy is unknown, is ``keep-both``,
            or is ``client-tells-which-wins`` without a function.
    """
    try:
        policy = ConflictPolicy(policy)
    except ValueError:
        valid = sorted(p.value for p in ConflictPolicy)
        raise UnsupportedPolicyError(
            f"Unknown conflict policy: '{policy}'. Valid policies: {valid}"
        ) from None

    if policy == ConflictPolicy.KEEP_BOTH:
        raise UnsupportedPolicyError(
            "Conflict policy 'keep-both' is not supported: no field-merge "
            "rule is defined. Use 'server-wins', 'client-wins' or "
            "'client-tells-which-wins'."
        )

    if policy == ConflictPolicy.CLIENT_TELLS_WHICH_WINS:
        if resolution_fn is None:
            raise UnsupportedPolicyError(
                "Conflict policy 'client-tells-which-wins' requires a "
                "resolution function"
            )
        return ClientTellsWhichWinsResolver(resolution_fn)

    if resolution_fn is not None:
        logger.warning(
            "Resolution function ignored for conflict policy '%s'",
            policy.value,
        )
    return _POLICY_MAP[policy]()  # type: ignore[return-value]


def resolve(
    entry: ConflictEntry,
    policy: ConflictPolicy | str,
    resolution_fn: ResolutionFn | None = None,
) -> Record:
    """Resolve a single conflict under *policy*."""
    return create_resolver(policy, resolution_fn).resolve(entry)
