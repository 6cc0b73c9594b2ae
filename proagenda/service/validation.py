from __future__ import annotations

import re
import unicodedata

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")

# Zero-width and bidi override characters that can spoof an address
_INVISIBLE = {"\u200b", "\u200c", "\u200d", "\ufeff"}
_INVISIBLE.update(chr(c) for c in range(0x202A, 0x202F))
_INVISIBLE.update(chr(c) for c in range(0x2066, 0x206A))


def _normalize_unicode(value: str) -> str:
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Return the canonical (lower-case, NFKC) form of an address or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_slug(value: str) -> str:
    slug = value.strip().lower()
    if not _SLUG_PATTERN.match(slug):
        raise ValueError("slug must be 1-64 lowercase letters, digits or hyphens")
    return slug
