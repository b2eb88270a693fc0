"""
Get-or-create resolution of parent entities (companies/clients).

Companies are keyed by their normalized domain. The companies table grew two
identity fields over time: current records carry the primary one
(``Normalized Domain``) while older records only carry the legacy one
(``Domain``). Resolution probes both, in that order, before creating.

Strategy:
- Read-only probes first; exactly one write on a total miss
- No locking: two concurrent requests for the same domain may both create
  (the record store offers no insert-if-absent primitive)
- Store errors propagate as UpstreamError; retries live in the client
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from .client import RecordStoreClient, field_equals
from .errors import InvalidIdentity
from .helpers import normalize_domain

logger = structlog.get_logger(__name__)

MATCHED_BY_PRIMARY = "primary"
MATCHED_BY_SECONDARY = "secondary"


@dataclass(frozen=True)
class ParentSchema:
    """Table and field names of the parent entity."""
    table: str = "Companies"
    name_field: str = "Company Name"
    primary_field: str = "Normalized Domain"
    secondary_field: str = "Domain"
    source_field: str = "Source System"
    source_system: Optional[str] = None

    @classmethod
    def from_settings(cls, config) -> "ParentSchema":
        return cls(
            table=config.companies_table,
            name_field=config.company_name_field,
            primary_field=config.company_primary_identity_field,
            secondary_field=config.company_secondary_identity_field,
            source_system=config.source_system,
        )


@dataclass(frozen=True)
class ParentResolution:
    """Outcome of a get-or-create call."""
    record_id: str
    created: bool
    matched_by: Optional[str]
    name: str
    identity: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "recordId": self.record_id,
            "created": self.created,
            "matchedBy": self.matched_by,
            "name": self.name,
            "domain": self.identity,
        }


def _existing(record: Dict[str, Any], schema: ParentSchema, identity: str, matched_by: str) -> ParentResolution:
    name = record.get("fields", {}).get(schema.name_field) or identity
    return ParentResolution(
        record_id=record["id"],
        created=False,
        matched_by=matched_by,
        name=name,
        identity=identity,
    )


async def get_or_create_parent(
    client: RecordStoreClient,
    identity_value: str,
    display_name_hint: Optional[str] = None,
    *,
    schema: ParentSchema,
    trace_id: Optional[str] = None
) -> ParentResolution:
    """
    Find a parent record by normalized domain, creating it on a total miss.

    Args:
        client: Record store client
        identity_value: Domain, URL or host identifying the parent
        display_name_hint: Name for a newly created parent
        schema: Parent table layout
        trace_id: Trace id for log correlation

    Returns:
        ParentResolution with ``created`` and ``matched_by`` set

    Raises:
        InvalidIdentity: identity_value normalizes to an empty string
        UpstreamError: Any record store call failed
    """
    identity = normalize_domain(identity_value)
    if not identity:
        raise InvalidIdentity(
            "Cannot determine identity: value is empty after normalization",
            identityValue=identity_value if isinstance(identity_value, str) else None,
        )

    logger.info("COMPANY_LOOKUP", trace_id=trace_id, raw=identity_value, identity=identity)

    for field, matched_by in (
        (schema.primary_field, MATCHED_BY_PRIMARY),
        (schema.secondary_field, MATCHED_BY_SECONDARY),
    ):
        record = await client.find_one(
            schema.table, field_equals(field, identity), trace_id=trace_id
        )
        if record:
            logger.info(
                f"COMPANY_FOUND_BY_{matched_by.upper()}",
                trace_id=trace_id,
                record_id=record["id"],
                identity=identity
            )
            return _existing(record, schema, identity, matched_by)

    name = (display_name_hint or "").strip() or identity
    fields: Dict[str, Any] = {
        schema.name_field: name,
        schema.primary_field: identity,
        schema.secondary_field: identity,
    }
    if schema.source_system:
        fields[schema.source_field] = schema.source_system

    logger.info("COMPANY_CREATING", trace_id=trace_id, fields=fields)
    created = await client.create_record(schema.table, fields, trace_id=trace_id)
    logger.info("COMPANY_CREATED", trace_id=trace_id, record_id=created["id"], identity=identity)

    return ParentResolution(
        record_id=created["id"],
        created=True,
        matched_by=None,
        name=name,
        identity=identity,
    )
