"""Canonical remote paths and safe shell quoting.

Remote commands are assembled from caller supplied paths, so every path must
pass through :func:`canonicalize` and be quoted with :func:`quote` before it
reaches the command channel.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import Iterable, Optional

from gateway_errors import InvalidRemotePath

_FORBIDDEN_CHARS = {"\x00", "\n", "\r"}


def canonicalize(path: str) -> str:
    """Return the canonical absolute POSIX form of ``path``.

    Rejects relative paths, control characters and any path that still
    contains a parent reference after normalisation.
    """

    if not isinstance(path, str):
        raise InvalidRemotePath("Remote path must be a string")
    text = path.strip()
    if not text:
        raise InvalidRemotePath("Remote path is required")
    if any(char in text for char in _FORBIDDEN_CHARS):
        raise InvalidRemotePath("Remote path contains control characters")
    if not text.startswith("/"):
        raise InvalidRemotePath("Remote path must be absolute")
    if ".." in text.split("/"):
        raise InvalidRemotePath("Remote path cannot contain parent references")
    normalized = posixpath.normpath(text)
    # normpath keeps a leading '//' as-is on POSIX
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if normalized == "/":
        raise InvalidRemotePath("Remote path cannot be the filesystem root")
    return normalized


def quote(path: str) -> str:
    return shlex.quote(canonicalize(path))


def safe_segment(name: str) -> str:
    """Validate a single path segment such as a folder or file name."""

    cleaned = (name or "").strip().strip("/")
    if not cleaned or cleaned in {".", ".."}:
        raise InvalidRemotePath("Invalid name")
    if "/" in cleaned or "\\" in cleaned:
        raise InvalidRemotePath("Names cannot contain path separators")
    if any(char in cleaned for char in _FORBIDDEN_CHARS):
        raise InvalidRemotePath("Names cannot contain control characters")
    return cleaned


def join(base: str, *segments: Optional[str]) -> str:
    parts = [safe_segment(segment) for segment in segments if segment]
    return canonicalize(posixpath.join(base, *parts))


def extension(path: str) -> str:
    return posixpath.splitext(posixpath.basename(path))[1].lower()


def has_extension(path: str, extensions: Iterable[str]) -> bool:
    return extension(path) in set(extensions)


def build_renamed_path(remote_path: str, new_name: str) -> str:
    """Return the sibling path for ``new_name``, keeping the original extension.

    A full absolute path is accepted as-is (after canonicalisation) so callers
    that already computed the destination are not second-guessed.
    """

    if isinstance(new_name, str) and new_name.strip().startswith("/"):
        return canonicalize(new_name)
    source = canonicalize(remote_path)
    stem = safe_segment(new_name)
    ext = posixpath.splitext(posixpath.basename(source))[1]
    if ext and not stem.lower().endswith(ext.lower()):
        stem = f"{stem}{ext}"
    return canonicalize(posixpath.join(posixpath.dirname(source), stem))
