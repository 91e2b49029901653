"""Deterministic names for the resources that make up a sandbox.

Every name is derived from the session id alone, so any process can find the
container, route and database of a session without a lookup table.

Each resource kind only allows a subset of characters. A session id that
already fits that subset is used as is. Any other id is sanitized and gets
a hash of the raw id appended after a separator the sanitized form never
contains, so ids that differ only in case or punctuation stay apart.
"""

import hashlib
import re

SANDBOX_NAME_PREFIX = "shipyard-sandbox"
PREVIEW_HOST_PREFIX = "preview"
PREVIEW_DATABASE_PREFIX = "preview"

# Postgres identifiers and DNS labels
MAX_IDENTIFIER_LENGTH = 63

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")
_NON_IDENT_RE = re.compile(r"[^a-z0-9_]")
_ALNUM_RE = re.compile(r"[a-zA-Z0-9]+")
_LOWER_ALNUM_RE = re.compile(r"[a-z0-9]+")


def _hex8(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def _derive(
    prefix: str,
    session_id: str,
    sanitized: str,
    exact: bool,
    separator: str,
    max_length: int | None = None,
) -> str:
    """prefix + sanitized id, hash-suffixed when lossy or too long."""
    name = f"{prefix}{sanitized}"
    if exact and (max_length is None or len(name) <= max_length):
        return name

    suffix = f"{separator}{_hex8(session_id)}"
    if max_length is not None:
        name = name[: max_length - len(suffix)].rstrip(separator)
    return f"{name}{suffix}"


def _alnum(session_id: str) -> str:
    cleaned = _NON_ALNUM_RE.sub("", session_id)
    if not cleaned:
        raise ValueError(f"Session id {session_id!r} has no usable characters")
    return cleaned


def sandbox_container_name(session_id: str) -> str:
    """shipyard-sandbox_{session id with separators removed}[-{hash}]"""
    return _derive(
        f"{SANDBOX_NAME_PREFIX}_",
        session_id,
        _alnum(session_id),
        exact=_ALNUM_RE.fullmatch(session_id) is not None,
        separator="-",
    )


def _dns_label(prefix: str, session_id: str, max_length: int | None) -> str:
    return _derive(
        prefix,
        session_id,
        _alnum(session_id).lower(),
        exact=_LOWER_ALNUM_RE.fullmatch(session_id) is not None,
        separator="-",
        max_length=max_length,
    )


def sandbox_router_name(session_id: str) -> str:
    """Name used for the reverse-proxy router and service labels."""
    return _dns_label(f"{SANDBOX_NAME_PREFIX}-", session_id, None)


def preview_hostname(session_id: str, base_domain: str) -> str:
    label = _dns_label(
        f"{PREVIEW_HOST_PREFIX}-", session_id, MAX_IDENTIFIER_LENGTH
    )
    return f"{label}.{base_domain}"


def preview_database_name(session_id: str) -> str:
    """preview_{session id}, lowercased, '-' and other symbols mapped to '_'.

    Ids that are not plain lowercase alphanumerics also get a '_{hash}'
    suffix, so 'a-b' and 'a_b' map to different databases.
    """
    return _derive(
        f"{PREVIEW_DATABASE_PREFIX}_",
        session_id,
        _NON_IDENT_RE.sub("_", session_id.lower()),
        exact=_LOWER_ALNUM_RE.fullmatch(session_id) is not None,
        separator="_",
        max_length=MAX_IDENTIFIER_LENGTH,
    )
