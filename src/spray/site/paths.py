"""Request path normalization."""

from __future__ import annotations

import re
from urllib.parse import unquote_to_bytes

from .errors import InvalidPath

INDEX_DOCUMENT = "index.html"

_BAD_ESCAPE = re.compile(rb"%(?![0-9A-Fa-f]{2})")


def decode_path(raw_path: str | bytes) -> str:
    """Percent-decode ``raw_path``, rejecting malformed escapes and non UTF-8 bytes.

    Bytes are taken as they arrived on the wire; text is encoded as UTF-8 first.
    """
    try:
        raw = raw_path.encode("utf-8") if isinstance(raw_path, str) else raw_path
        if _BAD_ESCAPE.search(raw):
            raise InvalidPath(f"error decoding path {raw_path!r}: malformed escape")
        return unquote_to_bytes(raw).decode("utf-8")
    except UnicodeError as exc:
        raise InvalidPath(f"error decoding path {raw_path!r}: {exc}") from exc


def resolve_path(raw_path: str | bytes) -> str:
    """Map a raw request path onto a storage key.

    ``/`` and empty paths resolve to ``index.html``, repeated slashes collapse,
    and a trailing slash selects the directory's ``index.html``. Any key still
    containing ``..`` after normalization is rejected.
    """
    decoded = decode_path(raw_path)
    if decoded == "/":
        return INDEX_DOCUMENT

    segments = [segment for segment in decoded.split("/") if segment]
    if not segments:
        return INDEX_DOCUMENT

    key = "/".join(segments)
    if decoded.endswith("/"):
        key += "/" + INDEX_DOCUMENT

    if ".." in key:
        raise InvalidPath("invalid path: directory traversal attempt")
    return key
