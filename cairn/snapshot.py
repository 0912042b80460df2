"""Snapshot index: an append-only log of sealed snapshots.

A snapshot becomes visible only when its SEAL record is fully written to
``snapshots.log``. The manifest tree is written (and fsynced) to
``trees/<id>.tree`` before that record, so a crash at any point either
leaves an orphan tree that no record points at, or a complete snapshot.
Deletion appends a DELETE record and releases the snapshot's chunk
references; physical removal is left to garbage collection.
"""

from __future__ import annotations

import enum
import logging
import os
import struct
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from . import tlv
from .codec import Codec
from .constants import CODEC_NONE, KIND_FILE, LOG_NAME, RTYPE_DELETE, RTYPE_SEAL, TREE_MAGIC, TREES_DIR, VERSION_MAJOR, VERSION_MINOR
from .encryption import EncryptionContext
from .errors import ChunkNotFound, CorruptRepository, CorruptSnapshot, InvalidInput, SnapshotNotFound, SnapshotStateError
from .hashutil import blake2s_32, merkle_root
from .lock import FileLock, locked
from .manifest import Manifest
from .records import read_records, write_record
from .store import ContentStore


log = logging.getLogger(__name__)


# Tree file header: magic[8], flags u16, codec u16, plaintext_len u32
_TREE_HDR_STRUCT = struct.Struct("<8sHHI")
_TFLAG_ENCRYPTED = 1 << 0
_TREE_CACHE_SIZE = 8


class SnapshotState(enum.Enum):
    BUILDING = "building"
    SEALED = "sealed"
    ABORTED = "aborted"


@dataclass
class SnapshotInfo:
    snapshot_id: int
    name: str
    created_ns: int
    source: str
    parent_id: Optional[int]
    tree_digest: str
    merkle_root: str
    entry_count: int = 0
    file_count: int = 0
    total_size: int = 0
    chunk_refs: int = 0
    deleted: bool = False
    deleted_ns: Optional[int] = None

    @classmethod
    def from_record(cls, rec: Dict) -> "SnapshotInfo":
        return cls(
            snapshot_id=rec["snapshot_id"],
            name=rec.get("name", ""),
            created_ns=rec.get("created_ns", 0),
            source=rec.get("source", ""),
            parent_id=rec.get("parent_id"),
            tree_digest=rec["tree_digest"],
            merkle_root=rec["merkle_root"],
            entry_count=rec.get("entry_count", 0),
            file_count=rec.get("file_count", 0),
            total_size=rec.get("total_size", 0),
            chunk_refs=rec.get("chunk_refs", 0),
        )

    def to_record(self) -> Dict:
        return {
            "snapshot_id": self.snapshot_id,
            "name": self.name,
            "created_ns": self.created_ns,
            "source": self.source,
            "parent_id": self.parent_id,
            "tree_digest": self.tree_digest,
            "merkle_root": self.merkle_root,
            "entry_count": self.entry_count,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "chunk_refs": self.chunk_refs,
        }


def tree_merkle_root(manifests: List[Manifest]) -> str:
    return merkle_root(d for m in manifests if m.kind == KIND_FILE for d in m.chunks).hex()


class SnapshotBuilder:
    """Collects manifests for one run; sealed or aborted exactly once.

    Manifests may be added from several worker threads. Every chunk
    reference carried by an added manifest belongs to the builder until it
    is sealed (handed to the snapshot) or aborted (released). The builder
    holds the repository lock shared for its whole life.
    """

    def __init__(self, index: "SnapshotIndex", name: str, source: str, parent_id: Optional[int], repo_lock: FileLock):
        self.index = index
        self.name = name
        self.source = source
        self.parent_id = parent_id
        self.state = SnapshotState.BUILDING
        self.info: Optional[SnapshotInfo] = None
        self._manifests: Dict[str, Manifest] = {}
        self._lock = threading.Lock()
        self._repo_lock = repo_lock

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.state is SnapshotState.BUILDING:
            self.abort()

    @property
    def manifests(self) -> List[Manifest]:
        with self._lock:
            return list(self._manifests.values())

    def _require_building(self) -> None:
        if self.state is not SnapshotState.BUILDING:
            raise SnapshotStateError(f"snapshot is {self.state.value}, not building")

    def add(self, manifest: Manifest) -> None:
        """Adopt a manifest whose chunk references were taken by the caller."""
        with self._lock:
            self._require_building()
            if manifest.path in self._manifests:
                raise InvalidInput(f"duplicate path in snapshot: {manifest.path}")
            self._manifests[manifest.path] = manifest

    def link(self, manifest: Manifest) -> None:
        """Reuse an existing manifest (from a parent) by retaining its chunks."""
        self._require_building()
        store = self.index.store
        retained: List[str] = []
        try:
            for d in manifest.chunks:
                store.retain(d)
                retained.append(d)
            self.add(manifest)
        except BaseException:
            for d in retained:
                store.release(d)
            raise

    def seal(self) -> SnapshotInfo:
        self._require_building()
        try:
            return self.index._commit(self)
        except BaseException:
            if self.state is SnapshotState.BUILDING:
                self.abort()
            raise

    def abort(self) -> None:
        """Release every reference held by the run; idempotent once aborted."""
        with self._lock:
            if self.state is SnapshotState.ABORTED:
                return
            if self.state is SnapshotState.SEALED:
                raise SnapshotStateError("sealed snapshots cannot be aborted")
            self.state = SnapshotState.ABORTED
            manifests = list(self._manifests.values())
            self._manifests.clear()
        store = self.index.store
        for m in manifests:
            for d in m.chunks:
                store.release(d)
        self.index._forget_builder(self)


class SnapshotIndex:
    def __init__(self, root: str, store: ContentStore, codec_id: int = CODEC_NONE, encryptor: Optional[EncryptionContext] = None):
        self.root = root
        self.store = store
        self.codec_id = codec_id
        self.encryptor = encryptor
        self.log_path = os.path.join(root, LOG_NAME)
        self.trees_root = os.path.join(root, TREES_DIR)
        self.torn_bytes = 0
        self._lock = threading.Lock()
        self._snapshots: Dict[int, SnapshotInfo] = {}
        self._last_id = 0
        self._log_end = 0
        self._builders: List[SnapshotBuilder] = []
        self._exclusive = False
        self._tree_cache: "OrderedDict[int, List[Manifest]]" = OrderedDict()
        os.makedirs(self.trees_root, exist_ok=True)
        self.refresh()

    # -------- queries --------

    def list(self, include_deleted: bool = False) -> List[SnapshotInfo]:
        with self._lock:
            infos = sorted(self._snapshots.values(), key=lambda s: s.snapshot_id)
        return [s for s in infos if include_deleted or not s.deleted]

    def get(self, snapshot_id: int, *, include_deleted: bool = False) -> SnapshotInfo:
        info = self._snapshots.get(int(snapshot_id))
        if info is None or (info.deleted and not include_deleted):
            raise SnapshotNotFound(snapshot_id)
        return info

    def latest(self, source: Optional[str] = None) -> Optional[SnapshotInfo]:
        live = [s for s in self.list() if source is None or s.source == source]
        return live[-1] if live else None

    def lineage(self, snapshot_id: int) -> List[SnapshotInfo]:
        """The snapshot followed by its ancestors, nearest first.

        Parents always carry smaller ids, so the walk terminates. A deleted
        ancestor ends the chain after being reported.
        """
        chain: List[SnapshotInfo] = []
        info: Optional[SnapshotInfo] = self.get(snapshot_id)
        while info is not None:
            chain.append(info)
            if info.deleted or info.parent_id is None or info.parent_id >= info.snapshot_id:
                break
            info = self._snapshots.get(info.parent_id)
        return chain

    def load_tree(self, snapshot_id: int) -> List[Manifest]:
        info = self.get(snapshot_id)
        with self._lock:
            cached = self._tree_cache.get(info.snapshot_id)
            if cached is not None:
                self._tree_cache.move_to_end(info.snapshot_id)
                return list(cached)
        manifests = self._read_tree(info)
        with self._lock:
            self._tree_cache[info.snapshot_id] = manifests
            while len(self._tree_cache) > _TREE_CACHE_SIZE:
                self._tree_cache.popitem(last=False)
        return list(manifests)

    def reference_counts(self) -> Dict[str, int]:
        """Chunk reference counts implied by every live snapshot."""
        counts: Dict[str, int] = {}
        for info in self.list():
            for m in self.load_tree(info.snapshot_id):
                for d in m.chunks:
                    counts[d] = counts.get(d, 0) + 1
        return counts

    @property
    def active_builders(self) -> int:
        with self._lock:
            return len(self._builders)

    # -------- mutations --------

    def begin(self, name: str, source: str = "", parent_id: Optional[int] = None) -> SnapshotBuilder:
        if parent_id is not None:
            self.get(parent_id)
        with self._lock:
            if self._exclusive:
                raise SnapshotStateError("garbage collection in progress")
            builder = SnapshotBuilder(self, name, source, parent_id, FileLock(self.store.lock_path))
            self._builders.append(builder)
        return builder

    def delete(self, snapshot_id: int) -> SnapshotInfo:
        """Mark a snapshot deleted and release its chunk references.

        Runs with the repository locked exclusively, like garbage collection.
        """
        with self.exclusive():
            self.refresh()
            info = self.get(snapshot_id)
            try:
                manifests = self.load_tree(info.snapshot_id)
            except CorruptSnapshot as exc:
                # Its references are dropped by the next gc reconcile instead.
                log.warning("deleting unreadable snapshot %d: %s", info.snapshot_id, exc)
                manifests = []
            with self._lock, self._open_log() as f:
                self._catch_up(f)
                if info.deleted:
                    raise SnapshotNotFound(snapshot_id)
                deleted_ns = time.time_ns()
                payload = tlv.dumps_delete({"snapshot_id": info.snapshot_id, "deleted_ns": deleted_ns})
                write_record(f, RTYPE_DELETE, payload, encryptor=self.encryptor)
                self._log_end = f.tell()
                info.deleted = True
                info.deleted_ns = deleted_ns
                self._tree_cache.pop(info.snapshot_id, None)
            for m in manifests:
                for d in m.chunks:
                    try:
                        self.store.release(d)
                    except (ChunkNotFound, InvalidInput) as exc:
                        log.warning("snapshot %d: %s", info.snapshot_id, exc)
            self.store.flush()
        return info

    @contextmanager
    def exclusive(self):
        """Lock the repository exclusively, holding off new snapshot runs.

        Refused while any run or reader of this or another handle is active.
        """
        with self._lock:
            if self._builders:
                raise SnapshotStateError(f"{len(self._builders)} snapshot(s) are being built")
            if self._exclusive:
                raise SnapshotStateError("garbage collection already running")
            self._exclusive = True
        try:
            repo_lock = FileLock(self.store.lock_path, exclusive=True)
        except BaseException:
            with self._lock:
                self._exclusive = False
            raise
        try:
            yield
        finally:
            repo_lock.release()
            with self._lock:
                self._exclusive = False

    def refresh(self) -> None:
        """Pick up snapshots sealed or deleted through other handles."""
        with self._lock, self._open_log() as f:
            self._catch_up(f)

    def remove_unreferenced_trees(self) -> int:
        """Delete tree files of deleted snapshots and of runs that never sealed.

        Only safe inside :meth:`exclusive`, when no run can be writing a tree.
        """
        with self._lock:
            live = {sid for sid, s in self._snapshots.items() if not s.deleted}
        removed = 0
        for fn in os.listdir(self.trees_root):
            stem = fn.split(".", 1)[0]
            if stem.isdigit() and int(stem) in live and fn == f"{stem}.tree":
                continue
            os.unlink(os.path.join(self.trees_root, fn))
            removed += 1
        return removed

    # -------- internals --------

    def _forget_builder(self, builder: SnapshotBuilder) -> None:
        with self._lock:
            if builder in self._builders:
                self._builders.remove(builder)
        builder._repo_lock.release()

    @contextmanager
    def _open_log(self):
        """The snapshot log, opened unbuffered for appends under its lock."""
        with locked(self.log_path, exclusive=True, wait=True), open(self.log_path, "a+b", buffering=0) as f:
            yield f

    def _commit(self, builder: SnapshotBuilder) -> SnapshotInfo:
        manifests = sorted(builder.manifests, key=lambda m: m.path)
        files = [m for m in manifests if m.kind == KIND_FILE]
        with self._lock, self._open_log() as f:
            builder._require_building()
            self._catch_up(f)
            sid = self._last_id + 1
            plain = tlv.dumps_tree(
                {
                    "version": {"major": VERSION_MAJOR, "minor": VERSION_MINOR},
                    "snapshot_id": sid,
                    "entries": [m.to_dict() for m in manifests],
                }
            )
            self._write_tree(sid, plain)
            info = SnapshotInfo(
                snapshot_id=sid,
                name=builder.name,
                created_ns=time.time_ns(),
                source=builder.source,
                parent_id=builder.parent_id,
                tree_digest=blake2s_32(plain).hex(),
                merkle_root=tree_merkle_root(manifests),
                entry_count=len(manifests),
                file_count=len(files),
                total_size=sum(m.size for m in files),
                chunk_refs=sum(len(m.chunks) for m in files),
            )
            write_record(f, RTYPE_SEAL, tlv.dumps_seal(info.to_record()), encryptor=self.encryptor)
            # From here on the snapshot is visible and must never be aborted.
            self._log_end = f.tell()
            self._last_id = sid
            self._snapshots[sid] = info
            builder.state = SnapshotState.SEALED
            builder.info = info
            if builder in self._builders:
                self._builders.remove(builder)
        try:
            self.store.flush()
        finally:
            builder._repo_lock.release()
        return info

    def _tree_path(self, snapshot_id: int) -> str:
        return os.path.join(self.trees_root, f"{snapshot_id}.tree")

    def _write_tree(self, snapshot_id: int, plain: bytes) -> None:
        codec_id = self.codec_id
        payload = Codec(codec_id).compress(plain)
        if len(payload) >= len(plain):
            codec_id, payload = CODEC_NONE, plain
        flags = _TFLAG_ENCRYPTED if self.encryptor is not None else 0
        header = _TREE_HDR_STRUCT.pack(TREE_MAGIC, flags, codec_id, len(plain))
        if self.encryptor is not None:
            payload = self.encryptor.encrypt(header + struct.pack("<Q", snapshot_id), payload)
        path = self._tree_path(snapshot_id)
        tmp = path + ".tmp"
        with open(tmp, "wb") as f:
            f.write(header)
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _read_tree(self, info: SnapshotInfo) -> List[Manifest]:
        sid = info.snapshot_id
        try:
            with open(self._tree_path(sid), "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            raise CorruptSnapshot(f"snapshot {sid}: tree file missing")
        if len(raw) < _TREE_HDR_STRUCT.size:
            raise CorruptSnapshot(f"snapshot {sid}: tree file truncated")
        header = raw[: _TREE_HDR_STRUCT.size]
        magic, flags, codec_id, plain_len = _TREE_HDR_STRUCT.unpack(header)
        if magic != TREE_MAGIC:
            raise CorruptSnapshot(f"snapshot {sid}: bad tree magic")
        payload = raw[_TREE_HDR_STRUCT.size :]
        try:
            if flags & _TFLAG_ENCRYPTED:
                if self.encryptor is None:
                    raise ValueError("tree is encrypted")
                payload = self.encryptor.decrypt(header + struct.pack("<Q", sid), payload)
            plain = Codec(codec_id).decompress(payload, plain_len)
        except (ValueError, RuntimeError) as exc:
            raise CorruptSnapshot(f"snapshot {sid}: tree unreadable: {exc}")
        if blake2s_32(plain).hex() != info.tree_digest:
            raise CorruptSnapshot(f"snapshot {sid}: tree digest mismatch")
        try:
            tree = tlv.loads_tree(plain)
        except ValueError as exc:
            raise CorruptSnapshot(f"snapshot {sid}: tree undecodable: {exc}")
        if tree["snapshot_id"] != sid:
            raise CorruptSnapshot(f"snapshot {sid}: tree belongs to snapshot {tree['snapshot_id']}")
        return [Manifest.from_dict(e) for e in tree["entries"]]

    def _catch_up(self, f) -> None:
        """Apply records appended since the last read; caller holds the log lock."""
        records, valid_end = read_records(f, decryptor=self.encryptor, start=self._log_end)
        size = os.fstat(f.fileno()).st_size
        if valid_end < size:
            # Torn append from an interrupted seal or delete.
            self.torn_bytes += size - valid_end
            os.ftruncate(f.fileno(), valid_end)
            os.fsync(f.fileno())
        self._apply_records(records)
        self._log_end = valid_end

    def _apply_records(self, records) -> None:
        for rec in records:
            try:
                if rec.rtype == RTYPE_SEAL:
                    info = SnapshotInfo.from_record(tlv.loads_seal(rec.payload))
                    if info.snapshot_id <= self._last_id:
                        raise CorruptRepository(f"snapshot id {info.snapshot_id} is not increasing")
                    self._snapshots[info.snapshot_id] = info
                    self._last_id = info.snapshot_id
                elif rec.rtype == RTYPE_DELETE:
                    d = tlv.loads_delete(rec.payload)
                    info = self._snapshots.get(d["snapshot_id"])
                    if info is None:
                        raise CorruptRepository(f"delete record for unknown snapshot {d['snapshot_id']}")
                    info.deleted = True
                    info.deleted_ns = d.get("deleted_ns")
                    self._tree_cache.pop(info.snapshot_id, None)
            except ValueError as exc:
                raise CorruptRepository(f"log record at offset {rec.offset} undecodable: {exc}")
