import logging
import threading
from typing import Any, Sequence

import requests

from ..config import Config
from ..sync.models import ChangePage, PushOutcome, Record, RecordID
from ..validators import validate_record, validate_record_id

logger = logging.getLogger(__name__)

# Per-item error code the remote store uses for a version-tag mismatch.
SERVER_RECORD_CHANGED = "SERVER_RECORD_CHANGED"


class RemoteStoreError(Exception):
    """The remote store answered with a malformed or error payload."""


class RecordStoreClient:
    """JSON-over-HTTP client for the remote record store.

    Implements the ``RemoteStoreClient`` contract used by ``SyncEngine``.
    All endpoints live under ``{remote_url}/zones/{zone}/``.

    A pushed item is reported as conflicted when the server marks it with
    ``"status": "conflict"`` or ``"serverErrorCode": "SERVER_RECORD_CHANGED"``.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = self._get_base_url()

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    def _get_base_url(self) -> str:
        return f"{self.config.remote_url.rstrip('/')}/zones/{self.config.zone}"

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = (self.config.username, self.config.password)
        session.verify = not self.config.insecure
        session.headers.update({"Accept": "application/json"})
        return session

    def _request(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* as JSON to *path* and return the decoded body."""
        url = f"{self.base_url}/{path}"
        logger.debug("POST %s", url)
        response = self._get_session().post(
            url,
            json=payload,
            timeout=(10, self.config.timeout),
        )
        response.raise_for_status()

        body = response.json()
        if not isinstance(body, dict):
            raise RemoteStoreError(
                f"Unexpected response from {path}: {type(body).__name__}"
            )
        if "error" in body:
            raise RemoteStoreError(f"{path}: {body['error']}")
        return body

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    @staticmethod
    def _encode_id(record_id: RecordID) -> dict[str, Any]:
        data: dict[str, Any] = {"recordName": record_id.name}
        if record_id.entity_type is not None:
            data["recordType"] = record_id.entity_type
        return data

    @staticmethod
    def _decode_id(data: dict[str, Any]) -> RecordID:
        return RecordID(
            name=data["recordName"], entity_type=data.get("recordType")
        )

    def _encode_record(self, record: Record) -> dict[str, Any]:
        data = self._encode_id(record.record_id)
        data["fields"] = dict(record.fields)
        if record.version_tag is not None:
            data["recordChangeTag"] = record.version_tag
        return data

    def _decode_record(self, data: dict[str, Any]) -> Record:
        return Record(
            record_id=self._decode_id(data),
            fields=data.get("fields") or {},
            version_tag=data.get("recordChangeTag"),
        )

    def _decode_outcome(self, item: dict[str, Any]) -> PushOutcome:
        record_id = self._decode_id(item)
        status = item.get("status", "")
        error_code = item.get("serverErrorCode")

        if status == "conflict" or error_code == SERVER_RECORD_CHANGED:
            return PushOutcome.conflicted(record_id)
        if status in ("saved", "deleted") and error_code is None:
            return PushOutcome.accepted(
                record_id, item.get("recordChangeTag")
            )
        reason = item.get("reason") or error_code or f"status '{status}'"
        return PushOutcome.rejected(record_id, reason)

    # ------------------------------------------------------------------
    # RemoteStoreClient contract
    # ------------------------------------------------------------------

    def push(
        self, upserts: Sequence[Record], deletes: Sequence[RecordID]
    ) -> list[PushOutcome]:
        """
        Save and delete records in one batched request.

        Returns:
            One PushOutcome per item reported by the server.

        Raises:
            ValueError: If a record or ID fails validation
            requests.HTTPError: On a non-2xx response
        """
        for record in upserts:
            ok, message = validate_record(record)
            if not ok:
                raise ValueError(message)
        for record_id in deletes:
            ok, message = validate_record_id(record_id, require_type=False)
            if not ok:
                raise ValueError(message)

        body = self._request(
            "records/modify",
            {
                "operations": [
                    {"operationType": "save", "record": self._encode_record(r)}
                    for r in upserts
                ]
                + [
                    {"operationType": "delete", "record": self._encode_id(rid)}
                    for rid in deletes
                ],
                "atomic": False,
            },
        )
        return [self._decode_outcome(item) for item in body.get("records", [])]

    def fetch_changes(self, since: str | None) -> ChangePage:
        """
        Fetch one page of changes after the cursor *since*.
        """
        payload: dict[str, Any] = {}
        if since is not None:
            payload["syncToken"] = since
        body = self._request("records/changes", payload)

        upserted: list[Record] = []
        deleted: list[RecordID] = []
        for item in body.get("records", []):
            if item.get("deleted"):
                deleted.append(self._decode_id(item))
            else:
                upserted.append(self._decode_record(item))

        return ChangePage(
            upserted=tuple(upserted),
            deleted=tuple(deleted),
            next_cursor=body.get("syncToken"),
            has_more=bool(body.get("moreComing", False)),
        )

    def fetch_current(self, ids: Sequence[RecordID]) -> list[Record]:
        """
        Look up the current server version of each record in *ids*.

        Records the server reports as missing are omitted.
        """
        if not ids:
            return []
        body = self._request(
            "records/lookup",
            {"records": [self._encode_id(rid) for rid in ids]},
        )
        records = []
        for item in body.get("records", []):
            if item.get("serverErrorCode"):
                logger.warning(
                    "Lookup of %s failed: %s",
                    item.get("recordName"),
                    item["serverErrorCode"],
                )
                continue
            records.append(self._decode_record(item))
        return records

    def validate_connection(self) -> str:
        """
        Validate connection and credentials.
        Returns the zone name reported by the server.
        """
        body = self._request("info", {})
        return str(body.get("zoneName", self.config.zone))
