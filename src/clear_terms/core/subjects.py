from __future__ import annotations

import hashlib
import re
from urllib.parse import urlsplit

UNKNOWN_SUBJECT = "unknown"

_ALLOWED_SCHEMES = {"http", "https"}
_BLOCKED_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
_PRIVATE_PREFIXES = ("192.168.", "10.")
_HEX_RE = re.compile(r"^[a-f0-9]+$", re.I)


class InvalidSubjectReference(ValueError):
    pass


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sanitize_subject_reference(raw: str | None, *, block_internal: bool = False) -> str:
    """
    Validate a submitted page URL.

    Blank values map to ``"unknown"`` so that unattributed documents still share one
    cache subject. Only absolute http(s) URLs are accepted; with ``block_internal``
    loopback and private-network hosts are rejected as well.
    """
    if raw is None:
        return UNKNOWN_SUBJECT
    if not isinstance(raw, str):
        raise InvalidSubjectReference("URL must be a string")
    url = raw.strip()
    if not url:
        return UNKNOWN_SUBJECT

    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise InvalidSubjectReference("Invalid URL format") from e
    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidSubjectReference("URL scheme not allowed")
    if not parts.hostname:
        raise InvalidSubjectReference("Invalid URL format")

    if block_internal:
        host = parts.hostname.lower()
        if host in _BLOCKED_HOSTS or host.startswith(_PRIVATE_PREFIXES):
            raise InvalidSubjectReference("Internal URLs not allowed")
    return url


def normalize_subject_reference(reference: str | None) -> str:
    # scheme://host/path; query string and fragment never identify a different subject
    if not reference:
        return ""
    try:
        parts = urlsplit(reference.strip())
    except ValueError:
        return reference
    if not parts.scheme or not parts.netloc:
        return reference
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"


def subject_domain(reference: str | None) -> str:
    if not reference:
        return UNKNOWN_SUBJECT
    try:
        host = urlsplit(reference).hostname
    except ValueError:
        host = None
    return host or UNKNOWN_SUBJECT


def subject_hash(reference: str | None) -> str:
    return _sha256_hex(normalize_subject_reference(reference).encode("utf-8"))


def content_hash(content: str) -> str:
    return _sha256_hex((content or "").encode("utf-8", errors="ignore"))


def is_subject_hash(value: str) -> bool:
    return bool(value) and bool(_HEX_RE.match(value))


def clean_text(text: str) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ")
    t = re.sub(r"[ \t\f\v]+", " ", t)
    t = re.sub(r"\n\s*\n+", "\n\n", t)
    return t.strip()
