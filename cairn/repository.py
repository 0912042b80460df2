from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from .cancel import CancelToken
from .chunker import ChunkerParams
from .constants import CODEC_NAMES, DEFAULT_CODEC_ID, HEADER_NAME, LOG_NAME
from .encryption import ARGON_MEMORY_COST_KIB, ARGON_PARALLELISM, ARGON_TIME_COST, EncryptionContext
from .errors import InvalidInput, PasswordRequired, RepositoryNotFound
from .snapshot import SnapshotIndex
from .store import ContentStore, GCReport
from .superblock import RepoHeader, new_header, read_header, write_header


log = logging.getLogger(__name__)


class Repository:
    """An opened repository: header, content store and snapshot index.

    Use :meth:`init` to create one and :meth:`open` to attach to an existing
    one. Both return an object usable as a context manager; leaving the
    block persists the reference table.
    """

    def __init__(self, root: str, header: RepoHeader, encryptor: Optional[EncryptionContext] = None, *, verify_on_read: bool = False):
        self.root = root
        self.header = header
        self.encryptor = encryptor
        self.verify_on_read = verify_on_read
        self.store = ContentStore(root, codec_id=header.codec_id, encryptor=encryptor)
        self.index = SnapshotIndex(root, self.store, codec_id=header.codec_id, encryptor=encryptor)
        self._gc_lock = threading.Lock()
        if self.index.torn_bytes:
            log.warning("dropped %d byte(s) of a torn snapshot log append", self.index.torn_bytes)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @staticmethod
    def exists(root: str) -> bool:
        return os.path.isfile(os.path.join(root, HEADER_NAME))

    @classmethod
    def init(
        cls,
        root: str,
        *,
        password: Optional[str] = None,
        chunker: Optional[ChunkerParams] = None,
        codec_id: int = DEFAULT_CODEC_ID,
        time_cost: int = ARGON_TIME_COST,
        memory_cost_kib: int = ARGON_MEMORY_COST_KIB,
        parallelism: int = ARGON_PARALLELISM,
    ) -> "Repository":
        """Create a new repository at ``root``.

        A password turns on encryption for chunks, trees and log records;
        the chunker parameters and codec are fixed for the repository's life.
        """
        if cls.exists(root):
            raise InvalidInput(f"Repository already exists: {root}")
        if os.path.isdir(root) and os.listdir(root):
            raise InvalidInput(f"Refusing to initialize a non-empty directory: {root}")
        if codec_id not in CODEC_NAMES.values():
            raise InvalidInput(f"Unknown codec id: {codec_id}")
        chunker = chunker or ChunkerParams()
        encryptor = None
        if password is not None:
            encryptor = EncryptionContext.create(
                password, time_cost=time_cost, memory_cost_kib=memory_cost_kib, parallelism=parallelism
            )
        header = new_header(chunker, codec_id, encryptor.export_params() if encryptor else None)
        os.makedirs(root, exist_ok=True)
        repo = cls(root, header, encryptor)
        repo.store.flush()
        # The header goes last: a directory without it is not a repository yet.
        write_header(os.path.join(root, HEADER_NAME), header)
        log.info("initialized repository %s (encrypted=%s)", root, header.encrypted)
        return repo

    @classmethod
    def open(cls, root: str, *, password: Optional[str] = None, verify_on_read: bool = False) -> "Repository":
        path = os.path.join(root, HEADER_NAME)
        if not os.path.isfile(path):
            raise RepositoryNotFound(f"No repository at {root}")
        header = read_header(path)
        encryptor = None
        if header.encrypted:
            if not password:
                raise PasswordRequired("Password required: repository is encrypted")
            encryptor = EncryptionContext.from_params(password, header.encryption_params())
        elif password:
            log.warning("repository %s is not encrypted; ignoring password", root)
        if not os.path.exists(os.path.join(root, LOG_NAME)):
            raise RepositoryNotFound(f"Snapshot log missing in {root}")
        return cls(root, header, encryptor, verify_on_read=verify_on_read)

    def gc(self, cancel: Optional[CancelToken] = None) -> GCReport:
        """Reconcile reference counts with the live snapshots, then sweep.

        Refused while any snapshot is being built or read, through this or
        any other handle. Counts are rebuilt from the snapshot trees first,
        so references leaked by a crashed run are reclaimed too.
        """
        with self._gc_lock, self.index.exclusive():
            self.index.refresh()
            self.store.flush()
            expected = self.index.reference_counts()
            fixed = self.store.reconcile(expected)
            if fixed:
                log.warning("corrected %d reference count(s)", fixed)
            self.store.flush()
            report = self.store.collect_garbage(cancel)
            report.refs_fixed = fixed
            report.trees_removed = self.index.remove_unreferenced_trees()
        log.info("gc removed %d chunk(s), %d byte(s)", len(report.removed), report.bytes_freed)
        return report

    def close(self) -> None:
        self.store.flush()
