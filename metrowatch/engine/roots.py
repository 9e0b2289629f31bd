"""Helpers for project roots that may be local paths or remote URIs.

Remote roots look like ``nuclide://host/path`` or ``ssh://[user@]host/path``.
Anything else is a local filesystem path.
"""
from __future__ import annotations

import posixpath
from urllib.parse import urlparse

REMOTE_SCHEMES = ("nuclide", "ssh")


def is_remote(root: str) -> bool:
    return urlparse(root).scheme in REMOTE_SCHEMES


def get_hostname(root: str) -> str:
    """Host part of a remote root (including any user@ prefix)."""
    parsed = urlparse(root)
    if parsed.scheme not in REMOTE_SCHEMES:
        raise ValueError(f"Not a remote root: {root}")
    host = parsed.hostname or ""
    if parsed.username:
        return f"{parsed.username}@{host}"
    return host


def get_path(root: str) -> str:
    """Filesystem path of a root on the machine that hosts it."""
    if is_remote(root):
        return urlparse(root).path or "/"
    return root


def display_name(root: str) -> str:
    path = get_path(root).rstrip("/")
    return posixpath.basename(path) or path or root
