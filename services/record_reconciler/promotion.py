"""
Promote an inbox record into tasks and decisions, then delete it.

State machine:

    START -> TASKS_CREATED -> DECISIONS_CREATED -> SOURCE_DELETED

Failure exits:
- FAILED_NO_WRITES: the request declared no children
- FAILED_PARTIAL: a batch came back short; the source is retained and
  already committed children stay in place (no compensating deletes)
- FAILED_PARTIAL_ORPHAN_RISK: every child exists but the final delete failed;
  reported as ok, the leftover source needs manual cleanup

The source is deleted if and only if every declared child was created, and
the delete is always the last call of the workflow. No failure branch ever
deletes, so a failure before the delete leaves the source re-promotable.
"""

import enum
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from .client import MAX_BATCH_SIZE, RecordStoreClient
from .errors import (
    EmptyPromotion,
    InvalidIdentity,
    InvalidPromotionItem,
    PartialFailure,
    SourceNotFound,
    UpstreamError,
)
from .helpers import is_record_id
from .log_config import log_processing_batch

logger = structlog.get_logger(__name__)


class PromotionState(str, enum.Enum):
    START = "START"
    TASKS_CREATED = "TASKS_CREATED"
    DECISIONS_CREATED = "DECISIONS_CREATED"
    SOURCE_DELETED = "SOURCE_DELETED"
    FAILED_NO_WRITES = "FAILED_NO_WRITES"
    FAILED_PARTIAL = "FAILED_PARTIAL"
    FAILED_PARTIAL_ORPHAN_RISK = "FAILED_PARTIAL_ORPHAN_RISK"


@dataclass(frozen=True)
class PromotionSchema:
    source_table: str = "Inbox"
    tasks_table: str = "Tasks"
    decisions_table: str = "Decisions"
    name_field: str = "Name"

    @classmethod
    def from_settings(cls, config) -> "PromotionSchema":
        return cls(
            source_table=config.inbox_table,
            tasks_table=config.tasks_table,
            decisions_table=config.decisions_table,
            name_field=config.promoted_item_name_field,
        )


@dataclass
class PromotionResult:
    """Outcome of a promotion, including every id created along the way."""
    source_id: str
    state: PromotionState = PromotionState.START
    created_tasks: List[str] = field(default_factory=list)
    created_decisions: List[str] = field(default_factory=list)
    source_deleted: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in (
            PromotionState.SOURCE_DELETED,
            PromotionState.FAILED_PARTIAL_ORPHAN_RISK,
        )

    def to_error(self) -> Optional[Exception]:
        """Typed error for failed promotions, None when ok."""
        if self.state == PromotionState.FAILED_NO_WRITES:
            return EmptyPromotion(self.error or "Nothing to promote", **self._details())
        if self.state == PromotionState.FAILED_PARTIAL:
            return PartialFailure(self.error or "Promotion stopped mid-way", **self._details())
        return None

    def _details(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "createdTasks": list(self.created_tasks),
            "createdDecisions": list(self.created_decisions),
            "sourceDeleted": self.source_deleted,
        }

    def to_response(self) -> Dict[str, Any]:
        error = self.to_error()
        if error is not None:
            return error.to_dict()

        body: Dict[str, Any] = {"ok": True, **self._details()}
        if self.error:
            body["error"] = self.error
        return body


def build_child_fields(item: Any, name_field: str) -> Optional[Dict[str, Any]]:
    """
    Turn a declared task/decision into record fields.

    A string becomes ``{name_field: value}``. A mapping keeps its values as
    typed: strings are stripped, lists of record ids become links, numbers,
    booleans, other lists and objects pass through unchanged. None, blank
    strings, empty lists and non-finite numbers are left out. Anything else,
    or a mapping left without fields, yields None.
    """
    if isinstance(item, str):
        name = item.strip()
        return {name_field: name} if name else None

    if not isinstance(item, Mapping):
        return None

    fields: Dict[str, Any] = {}
    for key, value in item.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        elif isinstance(value, float) and not math.isfinite(value):
            continue
        elif isinstance(value, list):
            if not value:
                continue
            if all(is_record_id(v) for v in value):
                value = [v.strip() for v in value]
        fields[key] = value
    return fields or None


def build_children(items: Optional[List[Any]], name_field: str, kind: str) -> List[Dict[str, Any]]:
    """
    Build the fields of every declared item, one entry per item.

    Raises:
        InvalidPromotionItem: An item yields no fields
    """
    children: List[Dict[str, Any]] = []
    for index, item in enumerate(items or []):
        fields = build_child_fields(item, name_field)
        if fields is None:
            raise InvalidPromotionItem(
                f"{kind}[{index}] has no usable fields",
                kind=kind,
                index=index
            )
        children.append(fields)
    return children


async def _create_batch(
    client: RecordStoreClient,
    table: str,
    fields_list: List[Dict[str, Any]],
    trace_id: Optional[str]
) -> tuple:
    """
    Create all records of one logical batch, chunked to the store's limit.

    Stops at the first failing chunk. Returns the ids created so far and the
    error message, if any.
    """
    created: List[str] = []
    for start in range(0, len(fields_list), MAX_BATCH_SIZE):
        chunk = fields_list[start:start + MAX_BATCH_SIZE]
        try:
            records = await client.create_batch(table, chunk, trace_id=trace_id)
        except UpstreamError as exc:
            return created, str(exc)
        created.extend(record["id"] for record in records)
        if len(records) != len(chunk):
            return created, None
    return created, None


async def promote(
    client: RecordStoreClient,
    source_id: str,
    tasks: List[Any],
    decisions: List[Any],
    *,
    schema: PromotionSchema,
    trace_id: Optional[str] = None
) -> PromotionResult:
    """
    Create the declared children, then delete the source record.

    Args:
        client: Record store client
        source_id: Inbox record being promoted
        tasks: Declared task items (strings or field mappings)
        decisions: Declared decision items (strings or field mappings)
        schema: Table layout
        trace_id: Trace id for log correlation

    Returns:
        PromotionResult in a terminal state

    Raises:
        InvalidIdentity: source_id is not a record id (nothing called)
        InvalidPromotionItem: A declared item has no usable fields (nothing called)
        SourceNotFound: The source record does not exist (nothing written)
        UpstreamError: The source lookup failed (nothing written)
    """
    if not is_record_id(source_id):
        raise InvalidIdentity("sourceId must be a record id", sourceId=source_id)

    source_id = source_id.strip()
    task_fields = build_children(tasks, schema.name_field, "tasks")
    decision_fields = build_children(decisions, schema.name_field, "decisions")

    start_time = time.monotonic()
    result = PromotionResult(source_id=source_id)

    source = await client.get_record(schema.source_table, source_id, trace_id=trace_id)
    if source is None:
        raise SourceNotFound(f"Source record {source_id} not found", sourceId=source_id)

    logger.info(
        "PROMOTION_START",
        trace_id=trace_id,
        source_id=source_id,
        tasks_requested=len(task_fields),
        decisions_requested=len(decision_fields)
    )

    for table, fields_list, created, next_state, label in (
        (schema.tasks_table, task_fields, result.created_tasks, PromotionState.TASKS_CREATED, "tasks"),
        (schema.decisions_table, decision_fields, result.created_decisions, PromotionState.DECISIONS_CREATED, "decisions"),
    ):
        ids, error = await _create_batch(client, table, fields_list, trace_id)
        created.extend(ids)

        if len(ids) != len(fields_list):
            result.state = PromotionState.FAILED_PARTIAL
            result.error = (
                f"Created {len(ids)} of {len(fields_list)} {label}; source retained"
                + (f": {error}" if error else "")
            )
            logger.error(
                "PROMOTION_BATCH_MISMATCH",
                trace_id=trace_id,
                source_id=source_id,
                batch=label,
                requested=len(fields_list),
                created=len(ids),
                created_tasks=result.created_tasks,
                created_decisions=result.created_decisions,
                error=error
            )
            return result

        result.state = next_state

    total = len(result.created_tasks) + len(result.created_decisions)
    if total == 0:
        result.state = PromotionState.FAILED_NO_WRITES
        result.error = "Promotion request declared no tasks or decisions"
        logger.warning("PROMOTION_EMPTY", trace_id=trace_id, source_id=source_id)
        return result

    # Last operation of the workflow
    try:
        await client.delete_record(schema.source_table, source_id, trace_id=trace_id)
    except UpstreamError as exc:
        result.state = PromotionState.FAILED_PARTIAL_ORPHAN_RISK
        result.error = f"Children created but source delete failed: {exc}"
        logger.error(
            "PROMOTION_SOURCE_DELETE_FAILED",
            trace_id=trace_id,
            source_id=source_id,
            created_tasks=result.created_tasks,
            created_decisions=result.created_decisions,
            upstream_status=exc.upstream_status,
            error=str(exc)
        )
        return result

    result.state = PromotionState.SOURCE_DELETED
    result.source_deleted = True

    log_processing_batch(
        logger,
        batch_id=f"promote_{source_id}",
        items_processed=total,
        duration_ms=(time.monotonic() - start_time) * 1000,
        trace_id=trace_id
    )
    return result
