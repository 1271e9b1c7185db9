"""Pure logic for reconciling bulk updates: classify, verify, diff, summarise.

No I/O here; the reconciler service supplies records and failure lists.
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any

from src.core.errors import (
    CircuitOpenError,
    PartialRelationUpdateError,
    RelationAuthError,
    VerificationError,
)
from src.models.bulk import (
    VERIFIABLE_FIELDS,
    BulkAcknowledgement,
    BulkField,
    BulkRecords,
    MembershipDiff,
    parse_iso_datetime,
)
from src.utils.auth_errors import is_authentication_error

if TYPE_CHECKING:
    from src.models.batch_result import FailureRecord
    from src.models.bulk import BulkFieldUpdatePlan, BulkResponse


def parse_bulk_response(raw: Any) -> BulkResponse:
    """Map the backend's raw bulk-update body onto the BulkResponse variants.

    A JSON array becomes BulkRecords; an object with a "message" key becomes
    BulkAcknowledgement. Anything else raises ValueError.
    """
    if isinstance(raw, list):
        return BulkRecords(records=[r for r in raw if isinstance(r, dict)])
    if isinstance(raw, dict) and "message" in raw:
        return BulkAcknowledgement(message=str(raw["message"]))
    msg = f"Unrecognised bulk update response shape: {type(raw).__name__}"
    raise ValueError(msg)


def field_matches(record: dict[str, Any], field: BulkField, expected: Any) -> bool:
    """Whether a returned record reflects the requested value.

    Only directly comparable scalar fields are checked; other fields are
    assumed applied.
    """
    if field not in VERIFIABLE_FIELDS:
        return True
    actual = record.get(field.value)
    if field is BulkField.DUE_DATE and isinstance(actual, str) and isinstance(expected, str):
        try:
            return parse_iso_datetime(actual) == parse_iso_datetime(expected)
        except ValueError:
            return actual == expected
    return actual == expected


def verify_bulk_response(response: BulkResponse, plan: BulkFieldUpdatePlan) -> list[dict[str, Any]]:
    """Check a bulk response against the plan.

    Returns the verified records; an empty list for an acknowledgement, meaning
    every task must be re-fetched. Raises VerificationError when any record
    does not reflect the requested value, or when no records came back.
    """
    if isinstance(response, BulkAcknowledgement):
        return []

    if not response.records:
        raise VerificationError(plan.field.value, None, plan.expected_value, None)

    for record in response.records:
        if not field_matches(record, plan.field, plan.expected_value):
            raise VerificationError(
                plan.field.value,
                record.get("id"),
                plan.expected_value,
                record.get(plan.field.value),
            )
    return list(response.records)


def membership_ids(record: dict[str, Any], field: BulkField) -> list[int]:
    """IDs of a task's current assignees or labels, in record order."""
    members = record.get(field.value) or []
    ids: list[int] = []
    for member in members:
        member_id = member.get("id") if isinstance(member, dict) else member
        if isinstance(member_id, int) and member_id not in ids:
            ids.append(member_id)
    return ids


def compute_membership_diff(current: list[int], desired: list[int]) -> MembershipDiff:
    """to_add = desired - current, to_remove = current - desired, order kept."""
    current_set = set(current)
    desired_set = set(desired)
    return MembershipDiff(
        to_add=tuple(dict.fromkeys(m for m in desired if m not in current_set)),
        to_remove=tuple(dict.fromkeys(m for m in current if m not in desired_set)),
    )


def build_update_payload(current: dict[str, Any], field: BulkField, value: Any) -> dict[str, Any]:
    """Merge the new field value over the task's current state."""
    payload = dict(current)
    payload[field.value] = value
    return payload


def _cause_key(error: BaseException) -> tuple[str, str] | None:
    """Group key for failures sharing one known root cause."""
    if isinstance(error, PartialRelationUpdateError):
        return ("partial_relation", error.field)
    if isinstance(error, RelationAuthError):
        return ("relation_auth", error.field)
    if isinstance(error, CircuitOpenError):
        return ("circuit_open", error.breaker_name)
    if is_authentication_error(error):
        return ("auth", "")
    return None


def summarize_common_cause(failures: list[FailureRecord], field: str | None = None) -> str | None:
    """One explanatory message when every failure has the same known cause."""
    if not failures:
        return None
    keys = Counter(_cause_key(f.error) for f in failures)
    if len(keys) != 1:
        return None
    key = next(iter(keys))
    if key is None:
        return None

    kind, detail = key
    count = len(failures)
    if kind == "relation_auth":
        return (
            f"{detail.capitalize()} operations may have authentication issues with certain "
            f"Vikunja API versions. This is a known limitation that prevents bulk updating "
            f"{detail} ({count} tasks affected)."
        )
    if kind == "partial_relation":
        return (
            f"New {detail} were added but old {detail} could not be removed on "
            f"{count} tasks; those tasks now carry both old and new {detail}."
        )
    if kind == "circuit_open":
        return (
            f'Circuit breaker "{detail}" is open; the remote API is treated as unavailable '
            f"and {count} operations were not attempted."
        )
    scope = f" updating {field}" if field else ""
    return f"All {count} failures{scope} were authentication errors. Re-authenticate and retry."


def failure_messages(failures: list[FailureRecord]) -> list[str]:
    """One "item: error" line per failure."""
    return [f"{f.original_item}: {f.error_message}" for f in failures]
