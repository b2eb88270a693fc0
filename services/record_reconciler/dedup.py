"""
Duplicate guard for child item creation.

Child items (inbox items, opportunities, ...) carry an external trace key,
e.g. the Gmail message id. Before creating, the guard looks the key up; on a
hit it appends a line to the record's activity log instead of creating.
Repeated delivery of the same key therefore always converges to one record.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import structlog

from .client import RecordStoreClient, field_equals
from .errors import InvalidIdentity, InvalidLink, UpstreamError
from .helpers import is_record_id

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChildSchema:
    """Table and field names of a deduplicated child table."""
    table: str = "Inbox Items"
    trace_field: str = "Gmail Message ID"
    audit_field: str = "Activity Log"
    parent_field: str = "Company"
    source_label: str = "inbox ingestion"

    @classmethod
    def from_settings(cls, config) -> "ChildSchema":
        return cls(
            table=config.inbox_items_table,
            trace_field=config.inbox_item_trace_field,
            audit_field=config.inbox_item_audit_field,
            parent_field=config.inbox_item_company_field,
        )


@dataclass(frozen=True)
class ChildResult:
    id: str
    was_duplicate: bool

    def to_response(self) -> Dict[str, Any]:
        return {"ok": True, "id": self.id, "wasDuplicate": self.was_duplicate}


def audit_line(message: str, trace_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Format one timestamped activity log line."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
    suffix = f" ({trace_id})" if trace_id else ""
    return f"[{timestamp}] {message}{suffix}"


def normalize_links(parent_links: Optional[Mapping[str, Any]]) -> Dict[str, List[str]]:
    """
    Validate parent links and express them as lists of record ids.

    Linking by display name is rejected: names collide and the store cannot
    resolve every name, so only ``rec...`` ids are accepted.

    Raises:
        InvalidLink: A link value is not a record id
    """
    links: Dict[str, List[str]] = {}
    for field, value in (parent_links or {}).items():
        ids = value if isinstance(value, (list, tuple)) else [value]
        ids = [item for item in ids if item is not None]
        if not ids:
            continue
        for item in ids:
            if not is_record_id(item):
                raise InvalidLink(
                    f"Link field '{field}' must reference record ids, got {item!r}",
                    field=field,
                )
        links[field] = [item.strip() for item in ids]
    return links


async def find_by_trace(
    client: RecordStoreClient,
    trace_key: str,
    *,
    schema: ChildSchema,
    trace_id: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Return the existing child whose trace field equals ``trace_key``."""
    record = await client.find_one(
        schema.table, field_equals(schema.trace_field, trace_key), trace_id=trace_id
    )
    if record:
        logger.info(
            "CHILD_DUPLICATE_FOUND",
            trace_id=trace_id,
            table=schema.table,
            record_id=record["id"],
            trace_key=trace_key
        )
    return record


async def append_audit_entry(
    client: RecordStoreClient,
    record: Dict[str, Any],
    message: str,
    *,
    schema: ChildSchema,
    trace_id: Optional[str] = None
) -> bool:
    """
    Append a line to a record's activity log (read-modify-write).

    Best effort: a failed write is logged and reported as False, never
    raised, so it cannot fail the create-or-dedup call it belongs to.
    """
    existing = record.get("fields", {}).get(schema.audit_field)
    entry = audit_line(message, trace_id)
    updated = f"{existing}\n{entry}" if existing else entry

    try:
        await client.update_record(
            schema.table, record["id"], {schema.audit_field: updated}, trace_id=trace_id
        )
    except UpstreamError as exc:
        logger.warning(
            "CHILD_ACTIVITY_APPEND_FAILED",
            trace_id=trace_id,
            record_id=record["id"],
            error=str(exc),
            upstream_status=exc.upstream_status
        )
        return False

    logger.info("CHILD_ACTIVITY_APPENDED", trace_id=trace_id, record_id=record["id"])
    return True


async def create_child(
    client: RecordStoreClient,
    trace_key: str,
    child_fields: Mapping[str, Any],
    parent_links: Optional[Mapping[str, Any]] = None,
    *,
    schema: ChildSchema,
    trace_id: Optional[str] = None
) -> str:
    """Create a child record with its trace key, links and initial activity log."""
    fields: Dict[str, Any] = dict(child_fields)
    fields.update(normalize_links(parent_links))
    fields[schema.trace_field] = trace_key
    fields[schema.audit_field] = audit_line(f"Created via {schema.source_label}", trace_id)

    logger.info("CHILD_CREATING", trace_id=trace_id, table=schema.table, trace_key=trace_key)
    created = await client.create_record(schema.table, fields, trace_id=trace_id)
    logger.info("CHILD_CREATED", trace_id=trace_id, table=schema.table, record_id=created["id"])

    return created["id"]


async def create_child_or_skip(
    client: RecordStoreClient,
    trace_key: str,
    child_fields: Mapping[str, Any],
    parent_links: Optional[Mapping[str, Any]] = None,
    *,
    schema: ChildSchema,
    trace_id: Optional[str] = None
) -> ChildResult:
    """
    Create a child record unless one with the same trace key exists.

    Args:
        client: Record store client
        trace_key: External identifier used as the dedup key
        child_fields: Fields of the new record
        parent_links: Link field -> record id (or list of record ids)
        schema: Child table layout
        trace_id: Trace id for log correlation

    Returns:
        ChildResult; ``was_duplicate`` is True when an existing record was reused

    Raises:
        InvalidIdentity: trace_key is empty
        InvalidLink: A parent link is not a record id
        UpstreamError: The lookup or the create failed
    """
    trace_key = trace_key.strip() if isinstance(trace_key, str) else ""
    if not trace_key:
        raise InvalidIdentity("Trace key is required")

    # Links are validated before any store call
    links = normalize_links(parent_links)

    existing = await find_by_trace(client, trace_key, schema=schema, trace_id=trace_id)
    if existing:
        await append_audit_entry(
            client, existing, "Duplicate ingestion attempt", schema=schema, trace_id=trace_id
        )
        return ChildResult(id=existing["id"], was_duplicate=True)

    record_id = await create_child(
        client, trace_key, child_fields, links, schema=schema, trace_id=trace_id
    )
    return ChildResult(id=record_id, was_duplicate=False)
