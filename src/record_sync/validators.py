"""
Input validation functions for record sync requests.

Checks record identities and field payloads before they are sent to the
remote record store.
"""

import json
import re

from .sync.models import Record, RecordID

_ENTITY_TYPE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Record name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_record_id(
    record_id: RecordID, require_type: bool = True
) -> tuple[bool, str]:
    """
    Validate a record identity.

    Args:
        record_id: The record ID to validate
        require_type: Whether the entity type must be present

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Name cannot be empty or whitespace-only
        - Name cannot contain '/'
        - Entity type, when present, must match ^[A-Za-z][A-Za-z0-9_]*$
    """
    if not record_id.name or not record_id.name.strip():
        return (
            False,
            format_validation_error("Record name", "cannot be empty"),
        )

    if "/" in record_id.name:
        return (
            False,
            format_validation_error("Record name", "cannot contain '/'"),
        )

    if record_id.entity_type is None:
        if require_type:
            return (
                False,
                format_validation_error(
                    "Entity type", f"is required for '{record_id.name}'"
                ),
            )
        return (True, "")

    if not _ENTITY_TYPE_PATTERN.match(record_id.entity_type):
        return (
            False,
            format_validation_error(
                "Entity type",
                f"'{record_id.entity_type}' must start with a letter and "
                f"contain only letters, digits and '_'",
            ),
        )

    return (True, "")


def validate_record(
    record: Record, max_size: int = 1_000_000
) -> tuple[bool, str]:
    """
    Validate a record before pushing it.

    Args:
        record: The record to validate
        max_size: Maximum encoded field size in bytes (default: 1,000,000)

    Returns:
        Tuple of (is_valid, error_message).

    Validation rules:
        - Record ID must be valid and typed
        - Fields must be JSON-serialisable
        - Encoded fields cannot exceed max_size bytes
    """
    ok, message = validate_record_id(record.record_id)
    if not ok:
        return (False, message)

    try:
        encoded = json.dumps(record.fields)
    except (TypeError, ValueError) as exc:
        return (
            False,
            format_validation_error(
                "Fields", f"of '{record.record_id}' are not serialisable: {exc}"
            ),
        )

    if len(encoded.encode("utf-8")) > max_size:
        return (
            False,
            format_validation_error(
                "Fields",
                f"of '{record.record_id}' exceed maximum size of {max_size} bytes",
            ),
        )

    return (True, "")
