"""
Error taxonomy for the record reconciler.

Every error carries a stable machine-readable ``reason`` and the HTTP status
the API layer answers with, so automation callers can branch on the outcome
without parsing the free-text message.
"""

from typing import Any, Dict, Optional

# Upstream bodies are truncated before being attached to errors
BODY_SNIPPET_LIMIT = 500


class ReconcilerError(Exception):
    """Base exception for reconciliation errors."""

    reason = "internal_error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as an API response body."""
        return {
            "ok": False,
            "error": self.message,
            "reason": self.reason,
            **self.details,
        }


class InvalidIdentity(ReconcilerError):
    """Identity value or trace key is empty after normalization."""

    reason = "invalid_identity"
    status_code = 400


class InvalidLink(ReconcilerError):
    """A parent link is not a record id (e.g. a display name)."""

    reason = "invalid_link"
    status_code = 400


class SourceNotFound(ReconcilerError):
    """Promotion source record does not exist."""

    reason = "source_not_found"
    status_code = 404


class EmptyPromotion(ReconcilerError):
    """Promotion request declared no children."""

    reason = "empty_promotion"
    status_code = 400


class InvalidPromotionItem(ReconcilerError):
    """A declared task or decision cannot become a record."""

    reason = "invalid_request"
    status_code = 400


class PartialFailure(ReconcilerError):
    """Promotion stopped after some children were committed."""

    reason = "partial_failure"
    status_code = 500


class Unauthorized(ReconcilerError):
    reason = "unauthorized"
    status_code = 401


class NotConfigured(ReconcilerError):
    reason = "not_configured"
    status_code = 500


class UpstreamError(ReconcilerError):
    """RecordStore answered with a non-2xx status or could not be reached."""

    reason = "upstream_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        body: str = "",
        **details: Any
    ):
        snippet = (body or "")[:BODY_SNIPPET_LIMIT]
        super().__init__(
            message,
            upstream_status=upstream_status,
            upstream_body=snippet,
            **details
        )
        self.upstream_status = upstream_status
        self.body_snippet = snippet


class RateLimited(UpstreamError):
    """RecordStore kept answering 429 after every retry attempt."""

    reason = "rate_limited"
    status_code = 429
