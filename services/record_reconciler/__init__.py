"""
Record Reconciler

Idempotent reconciliation between automation callers and Airtable:
- Value coercion and placeholder merge maps
- Get-or-create of companies keyed by normalized domain
- Duplicate guard for child records keyed by an external trace id
- Promote-then-delete workflow for inbox records
- HTTPX client with rate-limit backoff, structlog logging, pydantic settings
"""

__version__ = "0.1.0"
