"""Path and ``file://`` URI helpers."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname


def file_to_uri(path: str) -> str:
    """Convert a filesystem path to a file:// URI."""
    return Path(os.path.abspath(path)).as_uri()


def uri_to_path(uri: str) -> str:
    """Convert a file:// URI to an absolute path.

    Anything that is not a ``file`` URI is returned unchanged.
    """
    if not uri.startswith("file:"):
        return uri
    parsed = urlparse(uri)
    path = url2pathname(parsed.path)
    if parsed.netloc and parsed.netloc != "localhost":
        path = f"//{parsed.netloc}{path}"
    return os.path.normpath(path)


def normalize_path(path: str, cwd: str | None = None) -> str:
    """Return an absolute, normalized path, resolving relative paths from *cwd*."""
    if not os.path.isabs(path):
        path = os.path.join(cwd or os.getcwd(), path)
    return os.path.normpath(path)
