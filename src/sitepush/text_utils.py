from __future__ import annotations

import unicodedata
from pathlib import PurePosixPath


def normalize_text(value: str) -> str:
    """Return UTF-8 safe text by collapsing surrogate-escaped bytes.

    Filesystem paths may contain undecodable bytes represented as lone surrogates.
    FTP and SFTP servers reject those, so normalize them to replacement characters
    while keeping valid UTF-8 data untouched.
    Also canonicalize to NFC so macOS/Linux path forms match for unicode names.
    """
    safe = value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    return unicodedata.normalize("NFC", safe)


def is_nested_under(relpath: str, parent: str) -> bool:
    if not parent:
        return bool(relpath)
    return relpath.startswith(f"{parent}/")


def parent_paths(relpath: str) -> list[str]:
    parts = PurePosixPath(relpath).parts
    return ["/".join(parts[:idx]) for idx in range(1, len(parts))]
