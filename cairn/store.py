"""Content-addressed chunk store with reference counts.

Layout under the repository root::

    chunks/<hh>/<hh>/<digest-hex>   one envelope per unique chunk
    refs                            persisted reference table (TLV)

Every reference-count update and the first physical write of a digest
happen under a lock keyed by that digest, so unrelated chunks never
contend. Physical removal only happens in :meth:`ContentStore.collect_garbage`
and skips chunks that still have references or are pinned by a reader.

Several handles may share the store. Each one keeps the count changes it
made since its last flush and merges them into the table on disk, so
concurrent flushes never overwrite each other.
"""

from __future__ import annotations

import os
import re
import struct
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from . import tlv
from .cancel import check
from .codec import Codec
from .constants import CFLAG_ENCRYPTED, CHUNK_MAGIC, CHUNKS_DIR, CODEC_NONE, LOCK_NAME, REFS_LOCK_NAME, REFS_MAGIC, REFS_NAME, VERSION_MAJOR, VERSION_MINOR
from .encryption import EncryptionContext
from .errors import ChunkNotFound, CorruptChunk, CorruptRepository, InvalidInput
from .hashutil import blake2s_32, chunk_digest
from .lock import FileLock, locked


# Chunk envelope header: magic[4], codec u16, flags u16, plaintext_len u32
_ENVELOPE_STRUCT = struct.Struct("<4sHHI")
_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def _check_digest(digest: str) -> None:
    if not isinstance(digest, str) or not _DIGEST_RE.match(digest):
        raise InvalidInput(f"not a chunk digest: {digest!r}")


class KeyedLocks:
    """Locks created on demand per key and dropped once nobody holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def pin(self, digests: Iterable[str]):
        """Keep ``digests`` safe from garbage collection while the block runs.

        Pins are local to this handle; the shared repository lock held for
        the duration keeps other handles from collecting at all.
        """
        repo_lock = FileLock(self.lock_path)
        pinned: List[str] = []
        try:
            for d in set(digests):
                _check_digest(d)
                with self._locks.hold(d):
                    self._pins[d] = self._pins.get(d, 0) + 1
                pinned.append(d)
            yield
        finally:
            for d in pinned:
                with self._locks.hold(d):
                    left = self._pins.get(d, 0) - 1
                    if left > 0:
                        self._pins[d] = left
                    else:
                        self._pins.pop(d, None)
            repo_lock.release()

    def pinned(self, digest: str) -> bool:
        return self._pins.get(digest, 0) > 0

    def reconcile(self, expected: Dict[str, int]) -> int:
        """Replace reference counts with ``expected``; returns how many changed."""
        changed = 0
        for d in set(self._refs) | set(expected):
            with self._locks.hold(d):
                delta = expected.get(d, 0) - self._refs.get(d, 0)
                if delta:
                    changed += 1
                    self._bump(d, delta)
        return changed

    def collect_garbage(self, cancel=None) -> GCReport:
        """Remove chunks with no references and no pins.

        Cancellation is checked between chunks; everything removed before
        the cancel stays removed, which is safe because those chunks were
        unreferenced.
        """
        report = GCReport()
        for root, _dirnames, filenames in os.walk(self.chunks_root):
            for fn in filenames:
                check(cancel)
                full = os.path.join(root, fn)
                digest = fn.split(".", 1)[0]
                if not _DIGEST_RE.match(digest):
                    continue
                with self._locks.hold(digest):
                    if fn.endswith(".tmp"):
                        # Leftover from an interrupted write; no writer holds the lock.
                        os.unlink(full)
                        continue
                    if self._refs.get(digest, 0) > 0:
                        report.kept += 1
                        continue
                    if self._pins.get(digest, 0) > 0:
                        report.pinned += 1
                        continue
                    try:
                        size = os.path.getsize(full)
                        os.unlink(full)
                    except FileNotFoundError:
                        continue
                    report.removed.append(digest)
                    report.bytes_freed += size
        return report

    def flush(self) -> None:
        """Merge this handle's count changes into the table on disk, atomically."""
        with self._flush_lock, locked(self.refs_lock_path, exclusive=True, wait=True):
            merged = self._read_refs()
            with self._refs_lock:
                pending, self._pending = self._pending, {}
            _apply(merged, pending)
            try:
                self._write_refs(merged)
            except BaseException:
                with self._refs_lock:
                    _merge_delta(pending, self._pending)
                    self._pending = pending
                raise
            with self._refs_lock:
                refs = dict(merged)
                _apply(refs, self._pending)
                self._refs = refs

    # -------- internals --------

    def _bump(self, digest: str, n: int) -> None:
        with self._refs_lock:
            _apply(self._refs, {digest: n})
            _merge_delta(self._pending, {digest: n})

    def _write_refs(self, refs: Dict[str, int]) -> None:
        body = tlv.dumps_refs(refs, (VERSION_MAJOR, VERSION_MINOR))
        blob = REFS_MAGIC + blake2s_32(body) + body
        tmp = self.refs_path + ".tmp"
        with open(tmp, "wb") as f:
            f.write(blob)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.refs_path)

    def _read_refs(self) -> Dict[str, int]:
        if not os.path.exists(self.refs_path):
            return {}
        with open(self.refs_path, "rb") as f:
            blob = f.read()
        head = len(REFS_MAGIC) + 32
        if len(blob) < head or blob[: len(REFS_MAGIC)] != REFS_MAGIC:
            raise CorruptRepository("Bad reference table header")
        body = blob[head:]
        if blake2s_32(body) != blob[len(REFS_MAGIC) : head]:
            raise CorruptRepository("Reference table hash mismatch")
        try:
            return tlv.loads_refs(body)
        except ValueError as exc:
            raise CorruptRepository(f"Reference table unreadable: {exc}")

    def _write_envelope(self, digest: str, path: str, data: bytes) -> int:
        codec_id = self.codec_id
        payload = Codec(codec_id).compress(data)
        if len(payload) >= len(data):
            codec_id, payload = CODEC_NONE, data
        flags = CFLAG_ENCRYPTED if self.encryptor is not None else 0
        header = _ENVELOPE_STRUCT.pack(CHUNK_MAGIC, codec_id, flags, len(data))
        if self.encryptor is not None:
            payload = self.encryptor.encrypt(header + bytes.fromhex(digest), payload)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            with open(tmp, "wb") as f:
                f.write(header)
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return len(header) + len(payload)

    def _decode_envelope(self, digest: str, raw: bytes) -> bytes:
        if len(raw) < _ENVELOPE_STRUCT.size:
            raise CorruptChunk(digest, "envelope truncated")
        magic, codec_id, flags, plain_len = _ENVELOPE_STRUCT.unpack(raw[: _ENVELOPE_STRUCT.size])
        if magic != CHUNK_MAGIC:
            raise CorruptChunk(digest, "bad envelope magic")
        payload = raw[_ENVELOPE_STRUCT.size :]
        if flags & CFLAG_ENCRYPTED:
            if self.encryptor is None:
                raise CorruptChunk(digest, "encrypted chunk in an unencrypted repository")
            try:
                payload = self.encryptor.decrypt(raw[: _ENVELOPE_STRUCT.size] + bytes.fromhex(digest), payload)
            except ValueError as exc:
                raise CorruptChunk(digest, f"authentication failed: {exc}")
        elif self.encryptor is not None:
            raise CorruptChunk(digest, "unencrypted chunk in an encrypted repository")
        try:
            return Codec(codec_id).decompress(payload, plain_len)
        except (ValueError, RuntimeError) as exc:
            raise CorruptChunk(digest, str(exc))


def _apply(refs: Dict[str, int], delta: Dict[str, int]) -> None:
    for d, n in delta.items():
        c = refs.get(d, 0) + n
        if c > 0:
            refs[d] = c
        else:
            refs.pop(d, None)


def _merge_delta(pending: Dict[str, int], delta: Dict[str, int]) -> None:
    for d, n in delta.items():
        left = pending.get(d, 0) + n
        if left:
            pending[d] = left
        else:
            pending.pop(d, None)
