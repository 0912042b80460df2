from __future__ import annotations

import concurrent.futures as _fut
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .cancel import CancelToken, check
from .constants import DEFAULT_IO_BACKOFF, DEFAULT_IO_RETRIES, DEFAULT_WORKERS, KIND_FILE
from .errors import BackupFailed, ChunkNotFound, InvalidInput, SourceIOError
from .manifest import Manifest, build_file_manifest, dir_manifest, symlink_manifest
from .pathutil import norm_path
from .snapshot import SnapshotBuilder, SnapshotInfo
from .store import StoreStats

if TYPE_CHECKING:
    from .repository import Repository


log = logging.getLogger(__name__)


@dataclass
class BackupOptions:
    workers: int = DEFAULT_WORKERS
    incremental: bool = False
    parent_id: Optional[int] = None
    name: Optional[str] = None
    retries: int = DEFAULT_IO_RETRIES
    backoff: float = DEFAULT_IO_BACKOFF


@dataclass
class BackupReport:
    snapshot: Optional[SnapshotInfo] = None
    files_ok: int = 0
    dirs: int = 0
    symlinks: int = 0
    bytes_read: int = 0
    linked: List[str] = field(default_factory=list)
    rechunked: List[str] = field(default_factory=list)
    unchanged_by_digest: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    stats: StoreStats = field(default_factory=StoreStats)


def _scan(source: str) -> Tuple[List[Tuple[str, os.stat_result]], List[Tuple[str, str, os.stat_result]], List[Tuple[str, str, os.stat_result]], Dict[str, str]]:
    """Walk ``source`` without following symlinks.

    Returns (dirs, symlinks, files, skipped); paths are relative to the source.
    """
    dirs: List[Tuple[str, os.stat_result]] = []
    links: List[Tuple[str, str, os.stat_result]] = []
    files: List[Tuple[str, str, os.stat_result]] = []
    skipped: Dict[str, str] = {}

    def _onerror(exc: OSError) -> None:
        rel = norm_path(os.path.relpath(exc.filename or source, start=source))
        skipped[rel or "."] = str(exc)
        log.warning("cannot list %s: %s", rel or ".", exc)

    for root, dirnames, filenames in os.walk(source, onerror=_onerror):
        dirnames.sort()
        keep = []
        for name in dirnames + sorted(filenames):
            full = os.path.join(root, name)
            rel = norm_path(os.path.relpath(full, start=source))
            try:
                st = os.lstat(full)
            except OSError as exc:
                skipped[rel] = str(exc)
                continue
            if stat.S_ISLNK(st.st_mode):
                links.append((rel, os.readlink(full), st))
            elif stat.S_ISDIR(st.st_mode):
                dirs.append((rel, st))
                keep.append(name)
            elif stat.S_ISREG(st.st_mode):
                files.append((rel, full, st))
            else:
                skipped[rel] = "unsupported file type"
        # prune symlinked directories so the walk never follows them
        dirnames[:] = keep
    return dirs, links, files, skipped


def default_snapshot_name(source: str) -> str:
    base = os.path.basename(os.path.abspath(source)) or "root"
    return f"{base}_{time.strftime('%Y-%m-%d_%H-%M-%S')}"


def run_backup(repo: "Repository", source: str, options: Optional[BackupOptions] = None, *, cancel: Optional[CancelToken] = None) -> BackupReport:
    """Back up ``source`` into a new snapshot of ``repo``.

    Files are chunked by a bounded worker pool. A file that cannot be read
    completely is reported in ``report.failed`` and left out of the
    snapshot; the run fails only when every file failed. Cancellation (or
    any unexpected error) aborts the snapshot and releases its references.
    """
    options = options or BackupOptions()
    if options.workers < 1:
        raise InvalidInput("workers must be at least 1")
    if not os.path.isdir(source):
        raise InvalidInput(f"Backup source is not a directory: {source}")
    source_abs = os.path.abspath(source)
    index = repo.index
    store = repo.store
    params = repo.header.chunker

    parent: Optional[SnapshotInfo] = None
    if options.parent_id is not None:
        parent = index.get(options.parent_id)
    parent_files: Dict[str, Manifest] = {}
    if parent is not None:
        parent_files = {m.path: m for m in index.load_tree(parent.snapshot_id) if m.kind == KIND_FILE}

    report = BackupReport()
    stats_before = StoreStats(**vars(store.stats))
    name = options.name or default_snapshot_name(source_abs)

    builder = index.begin(name, source_abs, parent.snapshot_id if parent else None)
    try:
        dirs, links, files, skipped = _scan(source_abs)
        report.skipped.update(skipped)
        for rel, st in dirs:
            builder.add(dir_manifest(rel, st))
            report.dirs += 1
        for rel, target, st in links:
            builder.add(symlink_manifest(rel, target, st))
            report.symlinks += 1

        todo: List[Tuple[str, str]] = []
        for rel, full, st in files:
            prev = parent_files.get(rel)
            if options.incremental and prev is not None and prev.unchanged_since(st):
                try:
                    builder.link(prev)
                except ChunkNotFound as exc:
                    log.warning("cannot reuse %s from snapshot %d: %s", rel, parent.snapshot_id, exc)
                else:
                    report.linked.append(rel)
                    report.files_ok += 1
                    continue
            todo.append((rel, full))

        _chunk_files(builder, todo, options, params, parent_files, report, cancel)

        if files and report.files_ok == 0:
            raise BackupFailed(f"none of {len(files)} file(s) could be read", report)
        check(cancel)
        report.snapshot = builder.seal()
    except BaseException:
        builder.abort()
        raise
    finally:
        after = store.stats
        report.stats = StoreStats(
            chunks_written=after.chunks_written - stats_before.chunks_written,
            bytes_written=after.bytes_written - stats_before.bytes_written,
            chunks_deduplicated=after.chunks_deduplicated - stats_before.chunks_deduplicated,
        )
    log.info(
        "snapshot %d sealed: %d file(s) ok, %d linked, %d failed",
        report.snapshot.snapshot_id, report.files_ok, len(report.linked), len(report.failed),
    )
    return report


def _chunk_files(
    builder: SnapshotBuilder,
    todo: List[Tuple[str, str]],
    options: BackupOptions,
    params,
    parent_files: Dict[str, Manifest],
    report: BackupReport,
    cancel: Optional[CancelToken],
) -> None:
    store = builder.index.store
    # Workers stop on the caller's signal or on our own when the run fails.
    stop = CancelToken()

    def _runner(item: Tuple[str, str]) -> Manifest:
        rel, full = item
        check(cancel)
        return build_file_manifest(
            store, full, rel, params, cancel=_Either(cancel, stop), retries=options.retries, backoff=options.backoff
        )

    collected = set()

    def _collect(fut: _fut.Future, rel: str) -> None:
        collected.add(fut)
        try:
            m = fut.result()
        except SourceIOError as exc:
            report.failed[rel] = str(exc)
            log.warning("skipping %s: %s", rel, exc)
            return
        builder.add(m)
        report.files_ok += 1
        report.bytes_read += m.size
        report.rechunked.append(rel)
        prev = parent_files.get(rel)
        if prev is not None and prev.file_digest and prev.file_digest == m.file_digest:
            report.unchanged_by_digest.append(rel)

    with _fut.ThreadPoolExecutor(max_workers=options.workers) as ex:
        futures = {ex.submit(_runner, item): item[0] for item in todo}
        try:
            for fut in _fut.as_completed(futures):
                _collect(fut, futures[fut])
        except BaseException:
            stop.cancel("backup aborted")
            for fut in futures:
                fut.cancel()
            _fut.wait(futures)
            # Hand finished manifests to the builder so its abort releases them.
            for fut, rel in futures.items():
                if fut in collected or fut.cancelled() or fut.exception() is not None:
                    continue
                builder.add(fut.result())
            raise


class _Either:
    """Cancellation check that trips when either token is cancelled."""

    def __init__(self, first: Optional[CancelToken], second: CancelToken):
        self.first = first
        self.second = second

    def check(self) -> None:
        check(self.first)
        self.second.check()
