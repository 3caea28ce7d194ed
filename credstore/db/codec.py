"""Key hashing and document encoding for storage.

HASHED KEYS
-----------
Identifiers like DIDs and URLs are unbounded in length.  Indexing them
directly makes index entries large and uneven.  Instead every indexed
field is stored as ``hash(value)``: a SHA-256 hex digest, always 64
characters.  Lookups hash the requested value the same way, so
``{"id": hash(credential_id)}`` finds the record.

ENCODING
--------
Credentials are stored as nested documents so callers can query into
them (``{"credential.claim.id": ...}``).  Document databases reserve two
characters in keys: ``$`` (operators) and ``.`` (path separator).  JSON-LD
documents use both freely (``@context`` entries, IRIs as keys).  encode()
percent-escapes them in every mapping key, along with ``%`` itself so the
escaping is reversible:

    %  -> %25
    $  -> %24
    .  -> %2E

decode(encode(x)) == x for every JSON-representable value.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_ESCAPES = {"%": "%25", "$": "%24", ".": "%2E"}
_UNESCAPES = {v: k for k, v in _ESCAPES.items()}
_ESCAPE_RE = re.compile(r"[%$.]")
_UNESCAPE_RE = re.compile(r"%(?:25|24|2E)")


def hash(value: Any) -> str:  # noqa: A001
    if not isinstance(value, str):
        value = json.dumps(value, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _escape_key(key: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], key)


def _unescape_key(key: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(0)], key)


def encode(document: Any) -> Any:
    """Return a storable copy of ``document`` with reserved key characters escaped."""
    if isinstance(document, dict):
        return {_escape_key(k): encode(v) for k, v in document.items()}
    if isinstance(document, list):
        return [encode(v) for v in document]
    return document


def decode(document: Any) -> Any:
    """Reverse encode()."""
    if isinstance(document, dict):
        return {_unescape_key(k): decode(v) for k, v in document.items()}
    if isinstance(document, list):
        return [decode(v) for v in document]
    return document
