from __future__ import annotations

import os
import sys
import time
import getpass
import logging
import argparse

from typing import List, Optional

from cairn.backup import BackupOptions, default_snapshot_name, run_backup
from cairn.cancel import CancelToken
from cairn.chunker import ChunkerParams
from cairn.codec import codec_id_from_name, codec_name
from cairn.constants import DEFAULT_AVG_CHUNK, DEFAULT_MAX_CHUNK, DEFAULT_MIN_CHUNK, DEFAULT_WORKERS, KIND_FILE, KIND_NAMES, KIND_SYMLINK, RUN_LOG_NAME
from cairn.encryption import ARGON_MEMORY_COST_KIB, ARGON_PARALLELISM, ARGON_TIME_COST
from cairn.errors import (
    BackupFailed,
    CairnError,
    Cancelled,
    ChunkNotFound,
    Corrupt,
    InvalidInput,
    NotFound,
    PasswordRequired,
    RestoreIncomplete,
    SourceIOError,
    StoreWriteError,
)
from cairn.repository import Repository
from cairn.restore import EXISTS_POLICIES, restore
from cairn.verify import audit


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_IO = 3
EXIT_CORRUPT = 4
EXIT_CANCELLED = 130

_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_LOG_DATEFMT = "%Y-%m-%d_%H-%M-%S"


def attach_run_log(repo_root: str) -> logging.Handler:
    """Append this run's log lines to ``<repo>/backup.log``."""
    fh = logging.FileHandler(os.path.join(repo_root, RUN_LOG_NAME), encoding="utf-8", errors="backslashreplace")
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT))
    logger = logging.getLogger("cairn")
    logger.setLevel(logging.INFO)
    logger.addHandler(fh)
    return fh


def detach_run_log(handler: logging.Handler) -> None:
    logging.getLogger("cairn").removeHandler(handler)
    handler.close()


def _fmt_time(ns: Optional[int]) -> str:
    if not ns:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ns / 1_000_000_000))


def _mib(n: int) -> float:
    return n / (1024.0 * 1024.0)


def cmd_init(
    repo: str,
    *,
    password: Optional[str] = None,
    min_chunk: int = DEFAULT_MIN_CHUNK,
    avg_chunk: int = DEFAULT_AVG_CHUNK,
    max_chunk: int = DEFAULT_MAX_CHUNK,
    codec: str = "deflate",
    argon_time: int = ARGON_TIME_COST,
    argon_memory_kib: int = ARGON_MEMORY_COST_KIB,
    argon_lanes: int = ARGON_PARALLELISM,
) -> int:
    """Create an empty repository."""
    params = ChunkerParams(min_chunk, avg_chunk, max_chunk)
    with Repository.init(
        repo,
        password=password,
        chunker=params,
        codec_id=codec_id_from_name(codec),
        time_cost=argon_time,
        memory_cost_kib=argon_memory_kib,
        parallelism=argon_lanes,
    ) as r:
        print(f"Initialized repository {repo}")
        print(f"  Encrypted: {'yes' if r.header.encrypted else 'no'}")
        print(f"  Chunks: min={params.min_size} avg={params.avg_size} max={params.max_size} codec={codec}")
    return EXIT_OK


def cmd_backup(
    source: str,
    repo: str,
    *,
    password: Optional[str] = None,
    parent: Optional[int] = None,
    no_parent: bool = False,
    incremental: bool = False,
    name: Optional[str] = None,
    workers: int = DEFAULT_WORKERS,
    quiet: bool = False,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Back up ``source`` into ``repo``, creating the repository if needed.

    Without ``--parent`` the newest snapshot of the same source becomes the
    parent. Full mode still re-reads every file; ``--incremental`` reuses
    parent manifests whose size and mtime are unchanged.

    Returns:
        0 when every file was stored, 3 when some files failed.
    """
    if not os.path.isdir(source):
        raise InvalidInput(f"Backup source is not a directory: {source}")
    if not Repository.exists(repo):
        r = Repository.init(repo, password=password)
        print(f"Initialized repository {repo}")
    else:
        r = Repository.open(repo, password=password)
    handler = attach_run_log(repo)
    log = logging.getLogger("cairn.cli")
    try:
        with r:
            parent_id = parent
            if parent_id is None and not no_parent:
                latest = r.index.latest(source=os.path.abspath(source))
                parent_id = latest.snapshot_id if latest else None
            name = name or default_snapshot_name(source)
            log.info("Backing up %s to %s (parent=%s, %s)", source, name, parent_id, "incremental" if incremental else "full")
            if not quiet:
                print(f" Backing up {source} -> {name}", flush=True)
            t0 = time.time()
            opts = BackupOptions(workers=workers, incremental=incremental, parent_id=parent_id, name=name)
            try:
                report = run_backup(r, source, opts, cancel=cancel)
            except (CairnError, OSError, KeyboardInterrupt) as exc:
                log.error("Backup FAILED! %s", exc or type(exc).__name__)
                raise
            snap = report.snapshot
            dt = max(0.000001, time.time() - t0)
            for path, msg in sorted(report.failed.items()):
                print(f"Warning: could not back up {path}: {msg}", file=sys.stderr)
            for path, msg in sorted(report.skipped.items()):
                print(f"Warning: skipped {path}: {msg}", file=sys.stderr)
            mib = _mib(report.bytes_read)
            print(
                f"Done: snapshot {snap.snapshot_id} ({snap.name}); {report.files_ok} files, "
                f"{report.dirs} dirs, {report.symlinks} links; "
                f"linked={len(report.linked)} rechunked={len(report.rechunked)} "
                f"unchanged={len(report.unchanged_by_digest)} failed={len(report.failed)}; "
                f"new chunks={report.stats.chunks_written} ({_mib(report.stats.bytes_written):.2f} MiB stored), "
                f"dedup={report.stats.chunks_deduplicated}; {mib:.2f} MiB read in {dt:.1f}s"
            )
            if report.failed:
                log.warning("Backup finished with %d failed file(s)", len(report.failed))
                return EXIT_IO
            log.info("Backup successful! snapshot %d", snap.snapshot_id)
            return EXIT_OK
    finally:
        detach_run_log(handler)


def cmd_restore(
    repo: str,
    snapshot_id: int,
    dest: str,
    *,
    paths: Optional[List[str]] = None,
    password: Optional[str] = None,
    exists: str = "overwrite",
    verify_on_read: bool = False,
    quiet: bool = False,
) -> int:
    """Restore a snapshot, or some paths of it, into ``dest``."""
    with Repository.open(repo, password=password, verify_on_read=verify_on_read) as r:
        t0 = time.time()
        try:
            report = restore(r, snapshot_id, dest, paths=paths, exists=exists)
        except RestoreIncomplete as exc:
            report = exc.report
            for path, reason in sorted(report.failed.items()):
                print(f"  FAILED: {path}: {reason}", file=sys.stderr)
            raise
        dt = max(0.000001, time.time() - t0)
        if not quiet:
            for path, actual in sorted(report.renamed.items()):
                print(f"       note: {path} renamed to {actual}")
        print(
            f"Done: restored {len(report.restored)} entries ({_mib(report.bytes_written):.2f} MiB) in {dt:.1f}s; "
            f"skipped={len(report.skipped)} renamed={len(report.renamed)}"
        )
    return EXIT_OK


def cmd_verify(repo: str, snapshot_id: Optional[int] = None, *, password: Optional[str] = None) -> int:
    """Audit every chunk of one snapshot (or all live snapshots).

    Prints:
        "OK" when everything verifies, otherwise each failure and "FAIL".
    """
    with Repository.open(repo, password=password) as r:
        report = audit(r, snapshot_id)
    for sid, reason in sorted(report.bad_snapshots.items()):
        print(f"  snapshot {sid}: {reason}")
    for entry in report.bad_chunks:
        print(f"  chunk {entry.digest}: {entry.reason}")
        for p in entry.paths:
            print(f"    affects {p}")
    print(
        f"Checked {len(report.snapshots_checked)} snapshot(s), {report.chunks_checked} chunk(s), "
        f"{_mib(report.bytes_checked):.2f} MiB"
    )
    print("OK" if report.ok else "FAIL")
    return EXIT_OK if report.ok else EXIT_CORRUPT


def cmd_gc(repo: str, *, password: Optional[str] = None) -> int:
    with Repository.open(repo, password=password) as r:
        handler = attach_run_log(repo)
        try:
            report = r.gc()
        finally:
            detach_run_log(handler)
    print(
        f"Done: removed {len(report.removed)} chunk(s), freed {_mib(report.bytes_freed):.2f} MiB; "
        f"kept={report.kept} pinned={report.pinned} refs_fixed={report.refs_fixed} trees_removed={report.trees_removed}"
    )
    return EXIT_OK


def cmd_list(repo: str, *, password: Optional[str] = None, show_all: bool = False) -> int:
    with Repository.open(repo, password=password) as r:
        snaps = r.index.list(include_deleted=show_all)
    for s in snaps:
        parent = "-" if s.parent_id is None else str(s.parent_id)
        state = "deleted" if s.deleted else "sealed"
        print(f"{s.snapshot_id}\t{_fmt_time(s.created_ns)}\t{state}\tparent={parent}\tfiles={s.file_count}\t{s.total_size}\t{s.name}")
    return EXIT_OK


def cmd_ls(repo: str, snapshot_id: int, *, password: Optional[str] = None) -> int:
    """List the entries of one snapshot."""
    with Repository.open(repo, password=password) as r:
        manifests = r.index.load_tree(snapshot_id)
    for m in manifests:
        k = KIND_NAMES.get(m.kind, str(m.kind))
        if m.kind == KIND_FILE:
            print(f"{k}\t{m.size}\t{m.path}")
        elif m.kind == KIND_SYMLINK and m.symlink_target:
            print(f"{k}\t-> {m.symlink_target}\t{m.path}")
        else:
            print(f"{k}\t{m.path}")
    return EXIT_OK


def cmd_forget(repo: str, snapshot_id: int, *, password: Optional[str] = None) -> int:
    """Delete a snapshot logically; run gc to reclaim space."""
    with Repository.open(repo, password=password) as r:
        handler = attach_run_log(repo)
        try:
            info = r.index.delete(snapshot_id)
            logging.getLogger("cairn.cli").info("Forgot snapshot %d (%s)", info.snapshot_id, info.name)
        finally:
            detach_run_log(handler)
    print(f"Forgot snapshot {info.snapshot_id} ({info.name}); run 'cairn gc' to reclaim space")
    return EXIT_OK


def cmd_info(repo: str, *, password: Optional[str] = None) -> int:
    with Repository.open(repo, password=password) as r:
        h = r.header
        live = r.index.list()
        every = r.index.list(include_deleted=True)
        refs = r.store.references()
        print(f"Repository: {repo}")
        print(f"  Version: {h.version_major}.{h.version_minor}")
        print(f"  UUID: {h.uuid.hex()}")
        print(f"  Created: {_fmt_time(h.created_ns)}")
        print(f"  Encrypted: {'yes' if h.encrypted else 'no'}")
        print(f"  Chunker: min={h.chunker.min_size} avg={h.chunker.avg_size} max={h.chunker.max_size}")
        print(f"  Codec: {codec_name(h.codec_id)}")
        print(f"  Snapshots: {len(live)} live, {len(every) - len(live)} deleted")
        print(f"  Chunks referenced: {len(refs)} ({sum(refs.values())} references)")
    return EXIT_OK


def _dispatch(args) -> int:
    if args.cmd == "init":
        return cmd_init(
            args.repo,
            password=args.password,
            min_chunk=args.min_chunk,
            avg_chunk=args.avg_chunk,
            max_chunk=args.max_chunk,
            codec=args.codec,
            argon_time=args.argon_time,
            argon_memory_kib=args.argon_memory_kib,
            argon_lanes=args.argon_lanes,
        )
    if args.cmd == "backup":
        return cmd_backup(
            args.source,
            args.repo,
            password=args.password,
            parent=args.parent,
            no_parent=args.no_parent,
            incremental=args.incremental,
            name=args.name,
            workers=args.workers,
            quiet=args.quiet,
        )
    if args.cmd == "restore":
        return cmd_restore(
            args.repo,
            args.snapshot_id,
            args.dest,
            paths=args.paths,
            password=args.password,
            exists=args.exists,
            verify_on_read=args.verify_on_read,
            quiet=args.quiet,
        )
    if args.cmd == "verify":
        return cmd_verify(args.repo, args.snapshot_id, password=args.password)
    if args.cmd == "gc":
        return cmd_gc(args.repo, password=args.password)
    if args.cmd == "list":
        return cmd_list(args.repo, password=args.password, show_all=args.all)
    if args.cmd == "ls":
        return cmd_ls(args.repo, args.snapshot_id, password=args.password)
    if args.cmd == "forget":
        return cmd_forget(args.repo, args.snapshot_id, password=args.password)
    if args.cmd == "info":
        return cmd_info(args.repo, password=args.password)
    raise InvalidInput("Unknown command")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="cairn",
        description="cairn: deduplicating, content-addressed incremental backups",
        epilog="Exit codes: 0 ok, 1 failure, 2 bad arguments, 3 I/O error, 4 corruption, 130 cancelled.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_init = sub.add_parser("init", help="Create a repository")
    ap_init.add_argument("repo", help="Repository directory")
    ap_init.add_argument("--password", help="Encrypt the repository with this password")
    ap_init.add_argument("--min-chunk", type=int, default=DEFAULT_MIN_CHUNK, help="Minimum chunk size in bytes")
    ap_init.add_argument("--avg-chunk", type=int, default=DEFAULT_AVG_CHUNK, help="Average chunk size in bytes (power of two)")
    ap_init.add_argument("--max-chunk", type=int, default=DEFAULT_MAX_CHUNK, help="Maximum chunk size in bytes")
    ap_init.add_argument("--codec", choices=["none", "deflate", "zstd"], default="deflate", help="Chunk compression (default deflate)")
    ap_init.add_argument("--argon-time", type=int, default=ARGON_TIME_COST, help=argparse.SUPPRESS)
    ap_init.add_argument("--argon-memory-kib", type=int, default=ARGON_MEMORY_COST_KIB, help=argparse.SUPPRESS)
    ap_init.add_argument("--argon-lanes", type=int, default=ARGON_PARALLELISM, help=argparse.SUPPRESS)

    ap_backup = sub.add_parser("backup", help="Back up a directory into a new snapshot")
    ap_backup.add_argument("source", help="Directory to back up")
    ap_backup.add_argument("repo", help="Repository directory (created if missing)")
    ap_backup.add_argument("--password", help="Repository password")
    group = ap_backup.add_mutually_exclusive_group()
    group.add_argument("--parent", type=int, help="Parent snapshot id (default: latest snapshot of the same source)")
    group.add_argument("--no-parent", action="store_true", help="Do not use a parent snapshot")
    ap_backup.add_argument("--incremental", action="store_true", help="Reuse files whose size and mtime match the parent")
    ap_backup.add_argument("--name", help="Snapshot name (default: <source>_<timestamp>)")
    ap_backup.add_argument("--workers", type=int, default=DEFAULT_WORKERS, help=f"Parallel file workers (default {DEFAULT_WORKERS})")
    ap_backup.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_restore = sub.add_parser("restore", help="Restore a snapshot")
    ap_restore.add_argument("repo", help="Repository directory")
    ap_restore.add_argument("snapshot_id", type=int, help="Snapshot id")
    ap_restore.add_argument("dest", help="Destination directory")
    ap_restore.add_argument("paths", nargs="*", help="Specific paths to restore (files or directories)")
    ap_restore.add_argument("--password", help="Repository password")
    ap_restore.add_argument(
        "--exists",
        choices=list(EXISTS_POLICIES),
        default="overwrite",
        help=(
            "What to do if a destination file exists: overwrite (replace), skip (leave it), "
            "rename (append ' (n)' before extension), or fail (abort). Default: overwrite"
        ),
    )
    ap_restore.add_argument("--verify-on-read", action="store_true", help="Also check each restored file's whole-file digest")
    ap_restore.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_verify = sub.add_parser("verify", help="Verify every chunk of a snapshot (default: all snapshots)")
    ap_verify.add_argument("repo", help="Repository directory")
    ap_verify.add_argument("snapshot_id", type=int, nargs="?", help="Snapshot id")
    ap_verify.add_argument("--password", help="Repository password")

    ap_gc = sub.add_parser("gc", help="Remove chunks no snapshot references")
    ap_gc.add_argument("repo", help="Repository directory")
    ap_gc.add_argument("--password", help="Repository password")

    ap_list = sub.add_parser("list", help="List snapshots")
    ap_list.add_argument("repo", help="Repository directory")
    ap_list.add_argument("--all", action="store_true", help="Include deleted snapshots")
    ap_list.add_argument("--password", help="Repository password")

    ap_ls = sub.add_parser("ls", help="List the entries of a snapshot")
    ap_ls.add_argument("repo", help="Repository directory")
    ap_ls.add_argument("snapshot_id", type=int, help="Snapshot id")
    ap_ls.add_argument("--password", help="Repository password")

    ap_forget = sub.add_parser("forget", help="Delete a snapshot (space is reclaimed by gc)")
    ap_forget.add_argument("repo", help="Repository directory")
    ap_forget.add_argument("snapshot_id", type=int, help="Snapshot id")
    ap_forget.add_argument("--password", help="Repository password")

    ap_info = sub.add_parser("info", help="Show repository information")
    ap_info.add_argument("repo", help="Repository directory")
    ap_info.add_argument("--password", help="Repository password")

    args = ap.parse_args(argv)
    try:
        try:
            code = _dispatch(args)
        except PasswordRequired:
            # Prompt once lazily, only when nothing was given and a terminal is attached
            if args.cmd == "init" or args.password is not None or not sys.stdin.isatty():
                raise
            args.password = getpass.getpass("Repository password: ")
            code = _dispatch(args)
    except (Cancelled, KeyboardInterrupt):
        print("Cancelled; the snapshot in progress was aborted.", file=sys.stderr)
        sys.exit(EXIT_CANCELLED)
    except PasswordRequired as e:
        print(f"Error: {e}. Provide --password or run from a terminal to be prompted.", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    except RestoreIncomplete as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CORRUPT)
    except (Corrupt, ChunkNotFound) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CORRUPT)
    except (InvalidInput, NotFound) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    except (BackupFailed, SourceIOError, StoreWriteError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_IO)
    except CairnError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    sys.exit(code)


if __name__ == "__main__":
    main()
