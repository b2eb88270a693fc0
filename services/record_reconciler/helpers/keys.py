"""
Key, domain and record-id normalization.

Placeholder keys arrive as ``{{Content}}``, ``content`` or ``CONTENT``;
company domains arrive as full URLs, bare hosts or email addresses. The
functions here canonicalize both so they can be used as map keys and
identity keys. All of them are idempotent and never raise.
"""

import re

_SCHEME_RE = re.compile(r"^https?://")
_ANGLE_ADDRESS_RE = re.compile(r"<([^>]+)>")


def normalize_key(key: str) -> str:
    """
    Normalize a placeholder key to uppercase without braces.

    Examples:
        >>> normalize_key("{{CONTENT}}")
        'CONTENT'
        >>> normalize_key("  {{ project }}  ")
        'PROJECT'
        >>> normalize_key("content")
        'CONTENT'
    """
    if not isinstance(key, str):
        return ""

    result = key.strip()
    while len(result) >= 4 and result.startswith("{{") and result.endswith("}}"):
        result = result[2:-2].strip()

    return result.upper()


def normalize_domain(value: str) -> str:
    """
    Normalize a domain: lowercase, no scheme, no path or query, no leading www.

    An empty result means "no identity available"; callers must fail fast
    instead of keying a record by the empty string.

    Examples:
        >>> normalize_domain("HTTPS://WWW.Example.com/path?x=1")
        'example.com'
        >>> normalize_domain("example.com")
        'example.com'
        >>> normalize_domain("")
        ''
    """
    if not value or not isinstance(value, str):
        return ""

    domain = value.strip().lower()
    domain = _SCHEME_RE.sub("", domain)
    domain = domain.split("/", 1)[0].split("?", 1)[0]
    while domain.startswith("www."):
        domain = domain[4:]

    return domain


def extract_domain_from_email(address: str):
    """
    Extract the normalized domain from an email address.

    Handles the ``Name <user@host>`` form.

    Examples:
        >>> extract_domain_from_email("Jane Doe <jane@Mail.Acme.com>")
        'mail.acme.com'
        >>> extract_domain_from_email("not-an-email") is None
        True
    """
    if not address or not isinstance(address, str):
        return None

    match = _ANGLE_ADDRESS_RE.search(address)
    email = match.group(1) if match else address

    at_index = email.rfind("@")
    if at_index == -1:
        return None

    domain = normalize_domain(email[at_index + 1:])
    return domain or None


def is_record_id(value) -> bool:
    """Check that a value looks like a RecordStore record id (``rec...``)."""
    return isinstance(value, str) and value.strip().startswith("rec") and len(value.strip()) > 3
