"""
Inbox ingestion pipelines.

Two entry points feed the inbox tables:

- ``ingest_email``: one Gmail message -> company (get-or-create by sender
  domain), optional opportunity (attached by thread id), and one inbox item
  deduplicated by message id.
- ``create_intake_items``: a batch of loosely-typed intake items written to
  the Inbox table in chunks of ten.
"""

import json
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .client import RecordStoreClient, field_equals
from .dedup import ChildSchema, append_audit_entry, create_child, find_by_trace
from .errors import InvalidIdentity
from .helpers import coerce, extract_domain_from_email
from .identity import ParentResolution, ParentSchema, get_or_create_parent
from .log_config import log_processing_batch

logger = structlog.get_logger(__name__)

BODY_TEXT_LIMIT = 10000
RAW_PAYLOAD_LIMIT = 50000

# Placeholder value intake callers send for unknown fields
UNKNOWN_MARKER = "TBD"

DUE_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# intake item key -> Inbox field names
INTAKE_FIELD_MAP = {
    "title": ("Project",),
    "item_type": ("Item Type",),
    "details": ("Details", "Description"),
    "client": ("Client",),
    "program": ("Program",),
    "workstream": ("Workstream",),
    "owner": ("Owner",),
    "source": ("Source",),
    "confidence": ("Confidence",),
}


class EmailSender(BaseModel):
    email: str
    name: Optional[str] = None


class EmailPayload(BaseModel):
    """Gmail message forwarded by the mailbox automation."""

    model_config = ConfigDict(populate_by_name=True)

    gmail_message_id: str = Field(alias="gmailMessageId", min_length=1)
    gmail_thread_id: str = Field(alias="gmailThreadId", min_length=1)
    gmail_url: Optional[str] = Field(default=None, alias="gmailUrl")
    sender: EmailSender = Field(alias="from")
    subject: str = Field(min_length=1)
    snippet: Optional[str] = None
    body_text: Optional[str] = Field(default=None, alias="bodyText")
    received_at: Optional[str] = Field(default=None, alias="receivedAt")
    mode: Literal["opportunity", "company_only", "log_only"] = "opportunity"


@dataclass(frozen=True)
class InboxSchema:
    company: ParentSchema
    inbox_item: ChildSchema
    opportunities_table: str = "Opportunities"
    opportunity_name_field: str = "Opportunity Name"
    opportunity_thread_field: str = "Gmail Thread ID"
    opportunity_company_field: str = "Company"
    opportunity_stage: str = "Qualification"
    opportunity_link_field: str = "Opportunity"
    source_system: Optional[str] = None

    @classmethod
    def from_settings(cls, config) -> "InboxSchema":
        return cls(
            company=ParentSchema.from_settings(config),
            inbox_item=ChildSchema.from_settings(config),
            opportunities_table=config.opportunities_table,
            opportunity_name_field=config.opportunity_name_field,
            opportunity_thread_field=config.opportunity_thread_field,
            opportunity_company_field=config.opportunity_company_field,
            opportunity_stage=config.opportunity_default_stage,
            opportunity_link_field=config.inbox_item_opportunity_field,
            source_system=config.source_system,
        )


@dataclass
class OpportunityResult:
    id: str
    name: str
    attached: bool


@dataclass
class IngestResult:
    status: str
    trace_id: str
    company: ParentResolution
    inbox_item_id: str
    opportunity: Optional[OpportunityResult] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": True,
            "status": self.status,
            "traceId": self.trace_id,
            "company": {
                "id": self.company.record_id,
                "name": self.company.name,
                "domain": self.company.identity,
                "created": self.company.created,
            },
            "inboxItem": {"id": self.inbox_item_id},
        }
        if self.opportunity:
            body["opportunity"] = {
                "id": self.opportunity.id,
                "name": self.opportunity.name,
                "attached": self.opportunity.attached,
            }
        return body


async def _find_or_create_opportunity(
    client: RecordStoreClient,
    payload: EmailPayload,
    company: ParentResolution,
    schema: InboxSchema,
    trace_id: str
) -> OpportunityResult:
    existing = await client.find_one(
        schema.opportunities_table,
        field_equals(schema.opportunity_thread_field, payload.gmail_thread_id),
        trace_id=trace_id,
    )
    if existing:
        logger.info("OPPORTUNITY_THREAD_MATCH", trace_id=trace_id, opportunity_id=existing["id"])
        return OpportunityResult(
            id=existing["id"],
            name=existing.get("fields", {}).get(schema.opportunity_name_field) or "Unnamed",
            attached=True,
        )

    name = payload.subject.strip() or f"{company.name} - New Opportunity"
    fields: Dict[str, Any] = {
        schema.opportunity_name_field: name,
        schema.opportunity_company_field: [company.record_id],
        "Stage": schema.opportunity_stage,
        schema.opportunity_thread_field: payload.gmail_thread_id,
    }
    if schema.source_system:
        fields["Source System"] = schema.source_system

    created = await client.create_record(schema.opportunities_table, fields, trace_id=trace_id)
    logger.info("OPPORTUNITY_CREATED", trace_id=trace_id, opportunity_id=created["id"])
    return OpportunityResult(id=created["id"], name=name, attached=False)


def _inbox_item_fields(payload: EmailPayload, domain: str, disposition: str, trace_id: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "Trace ID": trace_id,
        "Gmail Thread ID": payload.gmail_thread_id,
        "Subject": payload.subject,
        "From Email": payload.sender.email,
        "Domain": domain,
        "Disposition": disposition,
    }
    optional = {
        "Gmail URL": payload.gmail_url,
        "Snippet": payload.snippet,
        "Body Text": payload.body_text[:BODY_TEXT_LIMIT] if payload.body_text else None,
        "From Name": payload.sender.name,
        "Received At": payload.received_at,
    }
    fields.update({key: value for key, value in optional.items() if value})
    fields["Raw Payload"] = json.dumps(
        payload.model_dump(by_alias=True), ensure_ascii=False
    )[:RAW_PAYLOAD_LIMIT]
    return fields


async def ingest_email(
    client: RecordStoreClient,
    payload: EmailPayload,
    *,
    schema: InboxSchema,
    trace_id: str
) -> IngestResult:
    """
    Ingest one email into the inbox tables.

    Steps:
    1. Derive the company domain from the sender address
    2. Get or create the company
    3. Skip (and log activity) when the message id was already ingested
    4. Depending on mode, attach to or create an opportunity
    5. Create the inbox item linked to company and opportunity

    Raises:
        InvalidIdentity: The sender address has no usable domain
        UpstreamError: A record store call failed
    """
    domain = extract_domain_from_email(payload.sender.email)
    if not domain:
        raise InvalidIdentity("Cannot extract domain from sender email")

    logger.info(
        "INBOX_EMAIL_PARSED",
        trace_id=trace_id,
        mode=payload.mode,
        gmail_message_id=payload.gmail_message_id,
        gmail_thread_id=payload.gmail_thread_id,
        domain=domain,
        subject=payload.subject[:100]
    )

    company = await get_or_create_parent(
        client, domain, payload.sender.name, schema=schema.company, trace_id=trace_id
    )

    duplicate = await find_by_trace(
        client, payload.gmail_message_id, schema=schema.inbox_item, trace_id=trace_id
    )
    if duplicate:
        await append_audit_entry(
            client,
            duplicate,
            "Duplicate ingestion attempt",
            schema=schema.inbox_item,
            trace_id=trace_id,
        )
        return IngestResult(
            status="duplicate",
            trace_id=trace_id,
            company=company,
            inbox_item_id=duplicate["id"],
        )

    opportunity: Optional[OpportunityResult] = None
    if payload.mode == "log_only":
        disposition, status = "Logged", "logged"
    elif payload.mode == "company_only":
        disposition = "Company Created" if company.created else "Company Exists"
        status = "company_only"
    else:
        opportunity = await _find_or_create_opportunity(client, payload, company, schema, trace_id)
        if opportunity.attached:
            disposition, status = "Attached", "attached"
        else:
            disposition, status = "Opportunity Created", "opportunity_created"

    links: Dict[str, List[str]] = {schema.inbox_item.parent_field: [company.record_id]}
    if opportunity:
        links[schema.opportunity_link_field] = [opportunity.id]

    inbox_item_id = await create_child(
        client,
        payload.gmail_message_id,
        _inbox_item_fields(payload, domain, disposition, trace_id),
        links,
        schema=schema.inbox_item,
        trace_id=trace_id,
    )

    logger.info(
        "INBOX_EMAIL_COMPLETE",
        trace_id=trace_id,
        status=status,
        company_id=company.record_id,
        company_created=company.created,
        opportunity_id=opportunity.id if opportunity else None,
        inbox_item_id=inbox_item_id
    )

    return IngestResult(
        status=status,
        trace_id=trace_id,
        company=company,
        inbox_item_id=inbox_item_id,
        opportunity=opportunity,
    )


def _known(value: Any) -> Optional[str]:
    text = coerce(value)
    if text is None or text == UNKNOWN_MARKER:
        return None
    return text


def build_intake_fields(item: Mapping) -> Dict[str, Any]:
    """
    Map a loosely-typed intake item to Inbox fields.

    "TBD" values and due dates not in YYYY-MM-DD form are skipped; every
    item starts with ``Status = New``.

    Example:
        >>> build_intake_fields({"title": "Launch", "owner": "TBD", "due_date": "soon"})
        {'Project': 'Launch', 'Status': 'New'}
    """
    fields: Dict[str, Any] = {}
    for key, targets in INTAKE_FIELD_MAP.items():
        value = _known(item.get(key))
        if value is None:
            continue
        for target in targets:
            fields[target] = value

    due_date = _known(item.get("due_date"))
    if due_date and DUE_DATE_RE.match(due_date):
        fields["Due Date"] = due_date

    fields["Status"] = "New"
    return fields


async def create_intake_items(
    client: RecordStoreClient,
    items: List[Mapping],
    *,
    table: str,
    trace_id: Optional[str] = None
) -> List[str]:
    """Create Inbox records for intake items; returns the created ids."""
    start_time = time.monotonic()
    fields_list = [build_intake_fields(item) for item in items]

    created = await client.create_records(table, fields_list, trace_id=trace_id, typecast=True)

    log_processing_batch(
        logger,
        batch_id=f"intake_{trace_id or 'batch'}",
        items_processed=len(created),
        items_failed=len(fields_list) - len(created),
        duration_ms=(time.monotonic() - start_time) * 1000,
        trace_id=trace_id
    )
    return [record["id"] for record in created]
