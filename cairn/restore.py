from __future__ import annotations

import errno
import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .cancel import check
from .constants import KIND_DIR, KIND_FILE, KIND_SYMLINK
from .errors import ChunkNotFound, CorruptChunk, InvalidInput, RestoreIncomplete
from .manifest import Manifest
from .pathutil import norm_path, path_selected, safe_join

if TYPE_CHECKING:
    from .repository import Repository


log = logging.getLogger(__name__)

EXISTS_POLICIES = ("overwrite", "skip", "rename", "fail")
_PART_SUFFIX = ".cairn-part"


@dataclass
class RestoreReport:
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    renamed: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    bytes_written: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


def _safe_chmod(path: str, mode: Optional[int]) -> None:
    """Best-effort chmod that never raises."""
    if mode is None:
        return
    try:
        os.chmod(path, mode)
    except OSError as exc:
        log.warning("failed to set mode on %s: %s", path, exc)


def _safe_utime(path: str, mtime_ns: Optional[int]) -> None:
    """Best-effort utime that never raises; atime is set to mtime."""
    if mtime_ns is None:
        return
    try:
        if os.path.islink(path):
            if os.utime not in os.supports_follow_symlinks:
                return
            os.utime(path, ns=(mtime_ns, mtime_ns), follow_symlinks=False)
        else:
            os.utime(path, ns=(mtime_ns, mtime_ns))
    except OSError as exc:
        log.warning("failed to set timestamps on %s: %s", path, exc)


def _next_nonconflicting_path(path: str) -> str:
    if not os.path.lexists(path):
        return path
    base_dir = os.path.dirname(path)
    root, ext = os.path.splitext(os.path.basename(path))
    i = 1
    while True:
        candidate = os.path.join(base_dir, f"{root} ({i}){ext}")
        if not os.path.lexists(candidate):
            return candidate
        i += 1


def _resolve_target(dst: str, rel: str, exists: str, report: RestoreReport) -> Optional[str]:
    """Apply the exists policy; None means the entry is skipped."""
    if not os.path.lexists(dst):
        return dst
    if exists == "overwrite":
        if os.path.isdir(dst) and not os.path.islink(dst):
            raise IsADirectoryError(errno.EISDIR, "cannot overwrite directory", dst)
        return dst
    if exists == "skip":
        report.skipped.append(rel)
        return None
    if exists == "rename":
        actual = _next_nonconflicting_path(dst)
        report.renamed[rel] = actual
        return actual
    raise InvalidInput(f"Destination exists: {dst}")


def _select(manifests: List[Manifest], paths: Optional[Iterable[str]]) -> List[Manifest]:
    wanted = [norm_path(p) for p in (paths or [])]
    for w in wanted:
        if not any(path_selected(m.path, [w]) for m in manifests):
            raise InvalidInput(f"Path not in snapshot: {w}")
    return [m for m in manifests if path_selected(m.path, wanted)]


def _restore_file(repo: "Repository", m: Manifest, target: str, verify_on_read: bool, cancel) -> int:
    store = repo.store
    tmp = target + _PART_SUFFIX
    hasher = hashlib.blake2s() if verify_on_read and m.file_digest else None
    written = 0
    try:
        with open(tmp, "wb") as out:
            for d in m.chunks:
                check(cancel)
                data = store.get(d)
                out.write(data)
                written += len(data)
                if hasher is not None:
                    hasher.update(data)
            out.flush()
            os.fsync(out.fileno())
        if written != m.size:
            raise CorruptChunk(m.chunks[-1] if m.chunks else "-", f"restored {written} of {m.size} bytes")
        if hasher is not None and hasher.hexdigest() != m.file_digest:
            raise CorruptChunk(m.chunks[-1] if m.chunks else "-", "whole-file digest mismatch")
        if os.path.lexists(target) and os.path.islink(target):
            os.unlink(target)
        os.replace(tmp, target)
    except BaseException:
        if os.path.lexists(tmp):
            os.unlink(tmp)
        raise
    return written


def restore(
    repo: "Repository",
    snapshot_id: int,
    dest: str,
    *,
    paths: Optional[Iterable[str]] = None,
    exists: str = "overwrite",
    verify_on_read: Optional[bool] = None,
    cancel=None,
) -> RestoreReport:
    """Restore a snapshot (or selected paths of it) under ``dest``.

    Files are written to a temporary sibling and renamed into place only
    when complete. Entries whose chunks are missing or corrupt are recorded
    in ``report.failed`` while every unaffected entry is still restored;
    :class:`RestoreIncomplete` is raised at the end if anything failed.
    """
    if exists not in EXISTS_POLICIES:
        raise InvalidInput(f"Unknown exists policy: {exists}")
    if verify_on_read is None:
        verify_on_read = repo.verify_on_read
    index = repo.index
    info = index.get(snapshot_id)
    manifests = _select(sorted(index.load_tree(info.snapshot_id), key=lambda m: m.path), paths)
    report = RestoreReport()
    os.makedirs(dest, exist_ok=True)

    dirs = [m for m in manifests if m.kind == KIND_DIR]
    for m in dirs:
        check(cancel)
        dst = safe_join(dest, m.path)
        try:
            os.makedirs(dst, exist_ok=True)
        except OSError as exc:
            report.failed[m.path] = str(exc)
            log.error("cannot create directory %s: %s", m.path, exc)

    pin_set = [d for m in manifests if m.kind == KIND_FILE for d in m.chunks]
    with repo.store.pin(pin_set):
        for m in manifests:
            if m.kind == KIND_DIR:
                continue
            check(cancel)
            dst = safe_join(dest, m.path)
            try:
                os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
                target = _resolve_target(dst, m.path, exists, report)
                if target is None:
                    continue
                if m.kind == KIND_SYMLINK:
                    if os.path.lexists(target):
                        os.unlink(target)
                    os.symlink(m.symlink_target or "", target)
                    _safe_utime(target, m.mtime_ns)
                elif m.kind == KIND_FILE:
                    report.bytes_written += _restore_file(repo, m, target, verify_on_read, cancel)
                    _safe_chmod(target, m.mode)
                    _safe_utime(target, m.mtime_ns)
                report.restored.append(m.path)
            except ChunkNotFound as exc:
                report.failed[m.path] = f"missing chunk {exc.digest}"
                log.error("cannot restore %s: %s", m.path, exc)
            except CorruptChunk as exc:
                report.failed[m.path] = str(exc)
                log.error("cannot restore %s: %s", m.path, exc)
            except OSError as exc:
                report.failed[m.path] = str(exc)
                log.error("cannot restore %s: %s", m.path, exc)

    # Directory metadata last, deepest first, so restored children do not
    # bump mtimes and read-only modes do not block writes.
    for m in reversed(dirs):
        if m.path in report.failed:
            continue
        dst = safe_join(dest, m.path)
        _safe_chmod(dst, m.mode)
        _safe_utime(dst, m.mtime_ns)
        report.restored.append(m.path)

    if report.failed:
        raise RestoreIncomplete(report)
    return report
