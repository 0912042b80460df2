from __future__ import annotations

import os
from typing import Iterable

from .errors import InvalidInput


# Separators of the local filesystem. On POSIX a backslash is an ordinary
# filename character and must survive untouched.
_LOCAL_SEPS = tuple(s for s in {os.sep, os.altsep} if s and s != "/")


def norm_path(p: str) -> str:
    """Normalize snapshot paths to a canonical forward-slash form.

    Local separators become slashes, empty and '.' segments are dropped and
    '..' segments are rejected.
    """
    for sep in _LOCAL_SEPS:
        p = p.replace(sep, "/")
    p = p.strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    if ".." in parts:
        raise InvalidInput(f"Path may not contain '..': {p}")
    return "/".join(parts)


def path_selected(path: str, wanted: Iterable[str]) -> bool:
    wanted = list(wanted)
    if not wanted:
        return True
    return any(path == w or path.startswith(w + "/") for w in wanted)


def safe_join(root: str, rel: str) -> str:
    """Join a normalized snapshot path under ``root`` without escaping it."""
    rel = norm_path(rel)
    dst = os.path.join(root, *rel.split("/")) if rel else root
    base = os.path.abspath(root)
    if os.path.commonpath([base, os.path.abspath(dst)]) != base:
        raise InvalidInput(f"Path escapes destination: {rel}")
    return dst
