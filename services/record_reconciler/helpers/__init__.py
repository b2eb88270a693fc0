"""
Helper utilities for value coercion and key normalization.

This module provides the pure functions the reconciler builds on: turning
loosely-typed field values into canonical strings and canonicalizing
placeholder keys, domains and record ids.
"""

from .coerce import coerce
from .keys import extract_domain_from_email, is_record_id, normalize_domain, normalize_key

__all__ = [
    "coerce",
    "normalize_key",
    "normalize_domain",
    "extract_domain_from_email",
    "is_record_id",
]
