from __future__ import annotations

import hashlib
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .cancel import check
from .chunker import ChunkerParams, iter_chunks
from .constants import DEFAULT_IO_BACKOFF, DEFAULT_IO_RETRIES, KIND_DIR, KIND_FILE, KIND_SYMLINK
from .errors import SourceIOError, StoreWriteError
from .pathutil import norm_path
from .store import ContentStore


log = logging.getLogger(__name__)


@dataclass
class Manifest:
    kind: int  # 0=file, 1=dir, 2=symlink
    path: str
    size: int = 0
    mode: Optional[int] = None
    mtime_ns: Optional[int] = None
    chunks: List[str] = field(default_factory=list)
    file_digest: Optional[str] = None
    symlink_target: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind,
            "path": self.path,
            "size": self.size,
            "mode": self.mode,
            "mtime_ns": self.mtime_ns,
            "chunks": list(self.chunks),
            "file_digest": self.file_digest,
            "symlink_target": self.symlink_target,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "Manifest":
        return cls(
            kind=d["kind"],
            path=d["path"],
            size=d.get("size", 0) or 0,
            mode=d.get("mode"),
            mtime_ns=d.get("mtime_ns"),
            chunks=list(d.get("chunks") or []),
            file_digest=d.get("file_digest"),
            symlink_target=d.get("symlink_target"),
        )

    def unchanged_since(self, st: os.stat_result) -> bool:
        """Cheap change check used by incremental runs (size and mtime only)."""
        return self.kind == KIND_FILE and self.size == st.st_size and self.mtime_ns == st.st_mtime_ns


def dir_manifest(rel_path: str, st: os.stat_result) -> Manifest:
    return Manifest(kind=KIND_DIR, path=norm_path(rel_path), mode=stat.S_IMODE(st.st_mode), mtime_ns=st.st_mtime_ns)


def symlink_manifest(rel_path: str, target: str, st: Optional[os.stat_result] = None) -> Manifest:
    return Manifest(
        kind=KIND_SYMLINK,
        path=norm_path(rel_path),
        mtime_ns=st.st_mtime_ns if st is not None else None,
        symlink_target=target,
    )


def _chunk_file_once(store: ContentStore, fs_path: str, params: ChunkerParams, cancel, taken: List[str]):
    hasher = hashlib.blake2s()
    size = 0
    with open(fs_path, "rb") as rf:
        before = os.fstat(rf.fileno())
        for data in iter_chunks(rf, params, cancel=cancel):
            hasher.update(data)
            size += len(data)
            try:
                taken.append(store.put(data))
            except OSError as exc:
                raise StoreWriteError(f"cannot store chunk of {fs_path}: {exc}") from exc
        after = os.fstat(rf.fileno())
    if (before.st_size, before.st_mtime_ns) != (after.st_size, after.st_mtime_ns) or size != after.st_size:
        raise OSError(f"file changed while being read ({size} of {after.st_size} bytes)")
    return after, hasher.hexdigest()


def build_file_manifest(
    store: ContentStore,
    fs_path: str,
    rel_path: str,
    params: ChunkerParams,
    *,
    cancel=None,
    retries: int = DEFAULT_IO_RETRIES,
    backoff: float = DEFAULT_IO_BACKOFF,
) -> Manifest:
    """Chunk one file into the store and describe it.

    Failed reads are retried up to ``retries`` more times with exponential
    backoff. A file that cannot be read completely produces no manifest and
    keeps no references: every chunk stored during a failed attempt is
    released again. Failures writing into the store are not retried.
    """
    rel_path = norm_path(rel_path)
    attempts = max(0, retries) + 1
    last_exc: Optional[OSError] = None
    for attempt in range(attempts):
        check(cancel)
        taken: List[str] = []
        try:
            st, file_digest = _chunk_file_once(store, fs_path, params, cancel, taken)
        except OSError as exc:
            _release_all(store, taken)
            last_exc = exc
            log.warning("read failed for %s (attempt %d/%d): %s", rel_path, attempt + 1, attempts, exc)
            if isinstance(exc, (FileNotFoundError, IsADirectoryError, PermissionError)):
                break
            if attempt + 1 < attempts:
                time.sleep(backoff * (2 ** attempt))
            continue
        except BaseException:
            _release_all(store, taken)
            raise
        return Manifest(
            kind=KIND_FILE,
            path=rel_path,
            size=st.st_size,
            mode=stat.S_IMODE(st.st_mode),
            mtime_ns=st.st_mtime_ns,
            chunks=taken,
            file_digest=file_digest,
        )
    raise SourceIOError(rel_path, str(last_exc))


def _release_all(store: ContentStore, digests: List[str]) -> None:
    for d in digests:
        store.release(d)
