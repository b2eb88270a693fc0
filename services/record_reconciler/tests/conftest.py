"""
Pytest fixtures for record_reconciler tests.

The record store is an in-memory Airtable emulator mounted on
``httpx.MockTransport``, so the real RecordStoreClient (URL building,
formula escaping, status handling, retries) is exercised end to end
without network access.
"""

import json
import re
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from services.record_reconciler.app import create_app
from services.record_reconciler.client import RecordStoreClient
from services.record_reconciler.settings import Settings

BASE_ID = "appTEST"

_FORMULA_RE = re.compile(r'^\{(.+?)\}="((?:[^"\\]|\\.)*)"$')
_ESCAPE_RE = re.compile(r"\\(.)")


def parse_formula(formula: str):
    """Parse ``{Field}="value"`` into (field, value)."""
    match = _FORMULA_RE.match(formula or "")
    if not match:
        raise AssertionError(f"Unsupported formula: {formula!r}")
    return match.group(1), _ESCAPE_RE.sub(r"\1", match.group(2))


class FakeAirtable:
    """
    Minimal Airtable REST emulator.

    Supports list (equality ``filterByFormula`` only), get, single and batch
    create, PATCH update and delete. Failure injection:

    - ``rate_limit(times)``: answer the next ``times`` requests with 429
    - ``fail(method, table, status)``: answer matching requests with ``status``
    - ``truncate_batches(table, keep)``: batch creates only create ``keep`` records
    - ``time_out(method, table, error)``: raise a transport error for matching requests
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self._counter = 0
        self._rate_limited = 0
        self._failures: Dict[tuple, int] = {}
        self._transport_errors: Dict[tuple, type] = {}
        self._truncate: Dict[str, int] = {}

    # Test helpers

    def seed(self, table: str, fields: Dict[str, Any]) -> str:
        record = self._new_record(fields)
        self.tables.setdefault(table, {})[record["id"]] = record
        return record["id"]

    def records(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def rate_limit(self, times: int) -> None:
        self._rate_limited = times

    def fail(self, method: str, table: str, status: int = 500) -> None:
        self._failures[(method.upper(), table)] = status

    def recover(self, method: str, table: str) -> None:
        self._failures.pop((method.upper(), table), None)
        self._transport_errors.pop((method.upper(), table), None)

    def time_out(self, method: str, table: str, error: type = httpx.ReadTimeout) -> None:
        self._transport_errors[(method.upper(), table)] = error

    def truncate_batches(self, table: str, keep: int) -> None:
        self._truncate[table] = keep

    def calls(self, method: Optional[str] = None) -> List[httpx.Request]:
        return [r for r in self.requests if method is None or r.method == method.upper()]

    # Transport

    def _new_record(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._counter += 1
        return {
            "id": f"rec{self._counter:014d}",
            "createdTime": "2025-01-01T00:00:00.000Z",
            "fields": dict(fields),
        }

    def _error(self, status: int, message: str) -> httpx.Response:
        return httpx.Response(status, json={"error": {"type": "ERROR", "message": message}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self._rate_limited > 0:
            self._rate_limited -= 1
            return self._error(429, "Rate limit exceeded")

        parts = request.url.path.strip("/").split("/")
        assert parts[0] == "v0" and parts[1] == BASE_ID, request.url
        table = parts[2]
        record_id = parts[3] if len(parts) > 3 else None

        error = self._transport_errors.get((request.method, table))
        if error:
            raise error(f"Injected {request.method} {error.__name__}", request=request)

        status = self._failures.get((request.method, table))
        if status:
            return self._error(status, f"Injected {request.method} failure")

        rows = self.tables.setdefault(table, {})

        if request.method == "GET" and record_id is None:
            formula = request.url.params.get("filterByFormula")
            max_records = int(request.url.params.get("maxRecords", 100))
            field, value = parse_formula(formula)
            found = [r for r in rows.values() if r["fields"].get(field) == value]
            return httpx.Response(200, json={"records": found[:max_records]})

        if request.method == "GET":
            if record_id not in rows:
                return self._error(404, "Could not find record")
            return httpx.Response(200, json=rows[record_id])

        if request.method == "POST":
            body = json.loads(request.content)
            if "records" in body:
                items = body["records"]
                assert len(items) <= 10, "Airtable rejects batches over 10"
                items = items[:self._truncate.get(table, len(items))]
                created = [self._new_record(item["fields"]) for item in items]
                for record in created:
                    rows[record["id"]] = record
                return httpx.Response(200, json={"records": created})
            record = self._new_record(body["fields"])
            rows[record["id"]] = record
            return httpx.Response(200, json=record)

        if request.method == "PATCH":
            if record_id not in rows:
                return self._error(404, "Could not find record")
            rows[record_id]["fields"].update(json.loads(request.content)["fields"])
            return httpx.Response(200, json=rows[record_id])

        if request.method == "DELETE":
            if rows.pop(record_id, None) is None:
                return self._error(404, "Could not find record")
            return httpx.Response(200, json={"id": record_id, "deleted": True})

        return self._error(405, "Method not allowed")


@pytest.fixture
def fake_airtable() -> FakeAirtable:
    return FakeAirtable()


@pytest.fixture
def config() -> Settings:
    return Settings(
        _env_file=None,
        airtable_api_key="key",
        airtable_base_id=BASE_ID,
        intake_token="secret",
        inbox_shared_secret="inbox-secret",
    )


def build_client(fake: FakeAirtable, **kwargs) -> RecordStoreClient:
    return RecordStoreClient(
        api_key="key",
        base_id=BASE_ID,
        transport=httpx.MockTransport(fake.handler),
        **kwargs
    )


@pytest_asyncio.fixture
async def record_store(fake_airtable):
    client = build_client(fake_airtable)
    yield client
    await client.aclose()


@pytest.fixture
def api(config, fake_airtable):
    """TestClient for the API, backed by the emulator."""
    app = create_app(config, record_store=build_client(fake_airtable))
    with TestClient(app) as client:
        yield client
