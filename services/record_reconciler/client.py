"""
HTTPX client for the Airtable REST API with rate-limit backoff.

Airtable signals rate limiting with HTTP 429. Those responses are retried
with exponential backoff (1s, 2s, 4s, ...); every other status is returned
to the caller immediately and non-2xx statuses become UpstreamError.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from .errors import RateLimited, UpstreamError
from .log_config import log_api_call

logger = structlog.get_logger(__name__)

RATE_LIMIT_STATUS = 429

# Airtable accepts at most 10 records per create request
MAX_BATCH_SIZE = 10

DEFAULT_BASE_URL = "https://api.airtable.com/v0"


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate the delay after a rate-limited attempt.

    Args:
        attempt: Attempt that was just rate limited (1-based)
        base_delay: Delay after the first attempt, in seconds
        max_delay: Maximum delay in seconds

    Returns:
        ``base_delay * 2 ** (attempt - 1)`` capped at ``max_delay``
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    max_attempts: int = 3,
) -> httpx.Response:
    """
    Send a request, retrying on HTTP 429 with exponential backoff.

    Any non-429 response is returned immediately. After ``max_attempts``
    rate-limited attempts the last 429 response is returned as-is; deciding
    what to do with it is left to the caller's status check.

    Args:
        send: Zero-argument coroutine function issuing the request
        max_attempts: Total number of attempts, including the first one

    Returns:
        The first non-429 response, or the last 429 response
    """
    attempt = 1
    while True:
        response = await send()

        if response.status_code != RATE_LIMIT_STATUS or attempt >= max_attempts:
            return response

        delay = calculate_backoff_delay(attempt)
        logger.warning(
            "Rate limited, retrying",
            status_code=response.status_code,
            attempt=attempt,
            max_attempts=max_attempts,
            retry_after=delay
        )
        await asyncio.sleep(delay)
        attempt += 1


def escape_formula_value(value: str) -> str:
    """Escape a string for use inside an Airtable formula string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def field_equals(field: str, value: str) -> str:
    """
    Build an equality formula for ``filterByFormula``.

    Example:
        >>> field_equals("Domain", 'ac"me.com')
        '{Domain}="ac\\\\"me.com"'
    """
    return f'{{{field}}}="{escape_formula_value(value)}"'


class RecordStoreClient:
    """
    Async client for one Airtable base.

    Features:
    - Bearer authentication
    - Backoff on 429 via ``with_retry``
    - UpstreamError (RateLimited for exhausted 429s) on non-2xx responses
    - Structured logging of every call
    """

    def __init__(
        self,
        api_key: str,
        base_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        **client_kwargs
    ):
        """
        Initialize the client.

        Args:
            api_key: Airtable personal access token
            base_id: Airtable base id (``app...``)
            base_url: REST API root
            timeout: Request timeout in seconds
            max_attempts: Total attempts for rate-limited requests
            **client_kwargs: Additional arguments for httpx.AsyncClient
        """
        if not api_key:
            raise ValueError("RecordStoreClient: api_key is required")
        if not base_id:
            raise ValueError("RecordStoreClient: base_id is required")

        self.base_id = base_id
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts

        client_kwargs.setdefault("timeout", timeout)
        client_kwargs.setdefault("headers", {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        self._client = httpx.AsyncClient(**client_kwargs)

    @classmethod
    def from_settings(cls, config, **client_kwargs) -> "RecordStoreClient":
        """Build a client from a Settings instance."""
        client_kwargs.setdefault("headers", config.get_api_headers())
        return cls(
            api_key=config.airtable_api_key,
            base_id=config.airtable_base_id,
            base_url=config.airtable_api_base_url,
            timeout=config.airtable_timeout,
            max_attempts=config.airtable_max_attempts,
            **client_kwargs
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _table_url(self, table: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{self.base_id}/{quote(table, safe='')}"
        if record_id:
            url = f"{url}/{quote(record_id, safe='')}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        trace_id: Optional[str] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Issue a request through the rate-limit wrapper and log it.

        Raises:
            UpstreamError: The request never got a response (timeout, network)
        """
        start = time.monotonic()

        async def send() -> httpx.Response:
            return await self._client.request(method, url, **kwargs)

        try:
            response = await with_retry(send, max_attempts=self.max_attempts)
        except httpx.RequestError as exc:
            logger.error(
                "API call transport error",
                method=method,
                url=url,
                operation=operation,
                trace_id=trace_id,
                error_type=type(exc).__name__,
                error=str(exc),
                duration_ms=round((time.monotonic() - start) * 1000, 2)
            )
            raise UpstreamError(
                f"Airtable {operation} failed: {type(exc).__name__}",
                upstream_status=None,
                body=str(exc),
            ) from exc

        log_api_call(
            logger,
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=(time.monotonic() - start) * 1000,
            operation=operation,
            trace_id=trace_id
        )
        return response

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return

        message = f"Airtable {operation} failed with HTTP {response.status_code}"
        try:
            payload = response.json()
            upstream_message = (payload.get("error") or {}).get("message")
            if upstream_message:
                message = f"{message}: {upstream_message}"
        except (ValueError, AttributeError):
            pass

        error_class = RateLimited if response.status_code == RATE_LIMIT_STATUS else UpstreamError
        raise error_class(message, upstream_status=response.status_code, body=response.text)

    def _json(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"Airtable {operation} returned invalid JSON",
                upstream_status=response.status_code,
                body=response.text
            ) from exc

    async def find_many(
        self,
        table: str,
        formula: str,
        max_records: int = 100,
        trace_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Find records matching a formula.

        Args:
            table: Table name or id
            formula: Airtable ``filterByFormula`` expression
            max_records: Maximum number of records to return
            trace_id: Trace id for log correlation

        Returns:
            List of records (``{"id", "fields", "createdTime"}``)
        """
        response = await self._request(
            "GET",
            self._table_url(table),
            "find",
            trace_id=trace_id,
            params={"filterByFormula": formula, "maxRecords": max_records},
        )
        self._raise_for_status(response, "find")
        return self._json(response, "find").get("records", [])

    async def find_one(
        self,
        table: str,
        formula: str,
        trace_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Find the first record matching a formula, or None."""
        records = await self.find_many(table, formula, max_records=1, trace_id=trace_id)
        return records[0] if records else None

    async def get_record(
        self,
        table: str,
        record_id: str,
        trace_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Get a record by id. Returns None when the record does not exist."""
        response = await self._request(
            "GET", self._table_url(table, record_id), "get", trace_id=trace_id
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "get")
        return self._json(response, "get")

    async def create_record(
        self,
        table: str,
        fields: Dict[str, Any],
        trace_id: Optional[str] = None,
        typecast: bool = False
    ) -> Dict[str, Any]:
        """Create a single record and return it."""
        body: Dict[str, Any] = {"fields": fields}
        if typecast:
            body["typecast"] = True

        response = await self._request(
            "POST", self._table_url(table), "create", trace_id=trace_id, json=body
        )
        self._raise_for_status(response, "create")
        return self._json(response, "create")

    async def create_batch(
        self,
        table: str,
        fields_list: List[Dict[str, Any]],
        trace_id: Optional[str] = None,
        typecast: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Create up to ten records in a single request.

        The returned list may be shorter than ``fields_list``; callers that
        need all-or-nothing semantics must compare the counts themselves.

        Raises:
            ValueError: When more than ten records are requested
        """
        if len(fields_list) > MAX_BATCH_SIZE:
            raise ValueError(f"create_batch accepts at most {MAX_BATCH_SIZE} records")
        if not fields_list:
            return []

        body: Dict[str, Any] = {"records": [{"fields": fields} for fields in fields_list]}
        if typecast:
            body["typecast"] = True

        response = await self._request(
            "POST", self._table_url(table), "create_batch", trace_id=trace_id, json=body
        )
        self._raise_for_status(response, "create_batch")
        return self._json(response, "create_batch").get("records", [])

    async def create_records(
        self,
        table: str,
        fields_list: List[Dict[str, Any]],
        trace_id: Optional[str] = None,
        typecast: bool = False
    ) -> List[Dict[str, Any]]:
        """Create any number of records, chunked into batches of ten."""
        created: List[Dict[str, Any]] = []
        for start in range(0, len(fields_list), MAX_BATCH_SIZE):
            chunk = fields_list[start:start + MAX_BATCH_SIZE]
            created.extend(
                await self.create_batch(table, chunk, trace_id=trace_id, typecast=typecast)
            )
        return created

    async def update_record(
        self,
        table: str,
        record_id: str,
        fields: Dict[str, Any],
        trace_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Partially update a record (PATCH)."""
        response = await self._request(
            "PATCH",
            self._table_url(table, record_id),
            "update",
            trace_id=trace_id,
            json={"fields": fields},
        )
        self._raise_for_status(response, "update")
        return self._json(response, "update")

    async def delete_record(
        self,
        table: str,
        record_id: str,
        trace_id: Optional[str] = None
    ) -> None:
        """Delete a record."""
        response = await self._request(
            "DELETE", self._table_url(table, record_id), "delete", trace_id=trace_id
        )
        self._raise_for_status(response, "delete")
