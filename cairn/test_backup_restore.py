from __future__ import annotations

import os
import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from cairn import manifest as manifest_mod
from cairn.backup import BackupOptions, run_backup
from cairn.cancel import CancelToken
from cairn.chunker import ChunkerParams
from cairn.errors import BackupFailed, Cancelled, InvalidInput, RestoreIncomplete, SourceIOError, StoreWriteError
from cairn.repository import Repository
from cairn.restore import restore
from cairn.store import ContentStore
from cairn.verify import audit


SMALL = ChunkerParams(min_size=64, avg_size=256, max_size=1024)
FAST_KDF = {"time_cost": 1, "memory_cost_kib": 1024, "parallelism": 1}


def _random_bytes(size: int, seed: int) -> bytes:
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def _create_source(base: Path) -> Path:
    src = base / "src"
    (src / "docs").mkdir(parents=True)
    (src / "docs" / "a.txt").write_bytes(_random_bytes(6000, 1))
    (src / "docs" / "b.txt").write_bytes(_random_bytes(5000, 2))
    (src / "c.bin").write_bytes(_random_bytes(7000, 3))
    os.chmod(src / "c.bin", 0o600)
    return src


def _tree(repo: Repository, snapshot_id: int):
    return {m.path: m for m in repo.index.load_tree(snapshot_id)}


def _assert_same_file(test: unittest.TestCase, a: Path, b: Path):
    test.assertEqual(a.read_bytes(), b.read_bytes(), f"content differs: {b}")


class BackupRestoreTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def new_repo(self, tmp_path: Path, **kwargs) -> Repository:
        return Repository.init(str(tmp_path / "repo"), chunker=SMALL, **kwargs)

    def test_incremental_reuses_unchanged_files(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            first = run_backup(repo, str(src), BackupOptions(workers=2))
            s1 = first.snapshot
            self.assertEqual(first.files_ok, 3)
            self.assertEqual(first.failed, {})

            b = src / "docs" / "b.txt"
            old_mtime = b.stat().st_mtime_ns
            b.write_bytes(_random_bytes(5000, 99))
            os.utime(b, ns=(old_mtime + 5 * 10**9, old_mtime + 5 * 10**9))

            second = run_backup(repo, str(src), BackupOptions(incremental=True, parent_id=s1.snapshot_id))
            s2 = second.snapshot
            self.assertEqual(s2.parent_id, s1.snapshot_id)
            self.assertEqual(sorted(second.linked), ["c.bin", "docs/a.txt"])
            self.assertEqual(second.rechunked, ["docs/b.txt"])

            t1, t2 = _tree(repo, s1.snapshot_id), _tree(repo, s2.snapshot_id)
            self.assertEqual(t1["docs/a.txt"].chunks, t2["docs/a.txt"].chunks)
            self.assertEqual(t1["c.bin"].chunks, t2["c.bin"].chunks)
            self.assertNotEqual(t1["docs/b.txt"].chunks, t2["docs/b.txt"].chunks)
            # Only the modified file produced new chunks.
            self.assertLessEqual(second.stats.chunks_written, len(t2["docs/b.txt"].chunks))
            for d in t2["docs/a.txt"].chunks:
                self.assertEqual(repo.store.refcount(d), 2)

            out = tmp_path / "out"
            restore(repo, s2.snapshot_id, str(out))
            for rel in ("docs/a.txt", "docs/b.txt", "c.bin"):
                _assert_same_file(self, src / rel, out / rel)
            self.assertEqual(os.stat(out / "c.bin").st_mode & 0o777, 0o600)
            self.assertEqual(os.stat(out / "c.bin").st_mtime_ns, os.stat(src / "c.bin").st_mtime_ns)

        self.run_with_tmpdir(scenario)

    def test_full_mode_reports_unchanged_by_digest(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            s1 = run_backup(repo, str(src)).snapshot
            (src / "c.bin").write_bytes(b"changed")
            report = run_backup(repo, str(src), BackupOptions(parent_id=s1.snapshot_id))
            self.assertEqual(report.linked, [])
            self.assertEqual(sorted(report.rechunked), ["c.bin", "docs/a.txt", "docs/b.txt"])
            self.assertEqual(sorted(report.unchanged_by_digest), ["docs/a.txt", "docs/b.txt"])
            self.assertGreater(report.stats.chunks_deduplicated, 0)

        self.run_with_tmpdir(scenario)

    def test_corrupted_chunk_gives_partial_restore(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            snap = run_backup(repo, str(src)).snapshot
            victim = _tree(repo, snap.snapshot_id)["docs/b.txt"].chunks[1]
            with open(repo.store.chunk_path(victim), "rb+") as fh:
                fh.seek(-1, os.SEEK_END)
                last = fh.read(1)
                fh.seek(-1, os.SEEK_END)
                fh.write(bytes([last[0] ^ 0xFF]))

            out = tmp_path / "out"
            with self.assertRaises(RestoreIncomplete) as ctx:
                restore(repo, snap.snapshot_id, str(out))
            report = ctx.exception.report
            self.assertEqual(sorted(report.failed), ["docs/b.txt"])
            self.assertIn(victim, report.failed["docs/b.txt"])
            _assert_same_file(self, src / "docs" / "a.txt", out / "docs" / "a.txt")
            _assert_same_file(self, src / "c.bin", out / "c.bin")
            self.assertFalse((out / "docs" / "b.txt").exists())
            self.assertEqual([p.name for p in out.rglob("*.cairn-part")], [])

            audited = audit(repo)
            self.assertFalse(audited.ok)
            self.assertEqual([e.digest for e in audited.bad_chunks], [victim])
            self.assertEqual(audited.affected_paths, [f"{snap.snapshot_id}:docs/b.txt"])
            self.assertEqual(audit(repo, snap.snapshot_id).affected_paths, ["docs/b.txt"])

        self.run_with_tmpdir(scenario)

    def test_missing_chunk_gives_partial_restore(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            snap = run_backup(repo, str(src)).snapshot
            victim = _tree(repo, snap.snapshot_id)["c.bin"].chunks[0]
            os.unlink(repo.store.chunk_path(victim))
            with self.assertRaises(RestoreIncomplete) as ctx:
                restore(repo, snap.snapshot_id, str(tmp_path / "out"))
            self.assertEqual(list(ctx.exception.report.failed), ["c.bin"])
            self.assertEqual(audit(repo).bad_chunks[0].reason, "missing")

        self.run_with_tmpdir(scenario)

    def test_restore_selected_paths(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            snap = run_backup(repo, str(src)).snapshot
            out = tmp_path / "out"
            report = restore(repo, snap.snapshot_id, str(out), paths=["docs"])
            self.assertIn("docs/a.txt", report.restored)
            self.assertTrue((out / "docs" / "b.txt").exists())
            self.assertFalse((out / "c.bin").exists())
            with self.assertRaises(InvalidInput):
                restore(repo, snap.snapshot_id, str(out), paths=["nope"])

        self.run_with_tmpdir(scenario)

    def test_exists_policies(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            sid = run_backup(repo, str(src)).snapshot.snapshot_id

            out = tmp_path / "out"
            (out).mkdir()
            (out / "c.bin").write_bytes(b"mine")
            report = restore(repo, sid, str(out), paths=["c.bin"], exists="skip")
            self.assertEqual(report.skipped, ["c.bin"])
            self.assertEqual((out / "c.bin").read_bytes(), b"mine")

            report = restore(repo, sid, str(out), paths=["c.bin"], exists="rename")
            self.assertEqual((out / "c.bin").read_bytes(), b"mine")
            _assert_same_file(self, src / "c.bin", Path(report.renamed["c.bin"]))

            with self.assertRaises(InvalidInput):
                restore(repo, sid, str(out), paths=["c.bin"], exists="fail")

            restore(repo, sid, str(out), paths=["c.bin"])
            _assert_same_file(self, src / "c.bin", out / "c.bin")

        self.run_with_tmpdir(scenario)

    def test_symlinks_and_empty_files(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            (src / "empty").write_bytes(b"")
            (src / "nested" / "deeper").mkdir(parents=True)
            symlinks = hasattr(os, "symlink")
            if symlinks:
                try:
                    os.symlink("docs", src / "ln_docs")
                except OSError:
                    symlinks = False
            repo = self.new_repo(tmp_path)
            report = run_backup(repo, str(src))
            tree = _tree(repo, report.snapshot.snapshot_id)
            self.assertEqual(tree["empty"].chunks, [])
            self.assertIn("nested/deeper", tree)
            out = tmp_path / "out"
            restore(repo, report.snapshot.snapshot_id, str(out))
            self.assertEqual((out / "empty").read_bytes(), b"")
            self.assertTrue((out / "nested" / "deeper").is_dir())
            if symlinks:
                self.assertEqual(report.symlinks, 1)
                self.assertTrue(os.path.islink(out / "ln_docs"))
                self.assertEqual(os.readlink(out / "ln_docs"), "docs")

        self.run_with_tmpdir(scenario)

    def test_unreadable_file_is_reported_not_fatal(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            real = manifest_mod._chunk_file_once

            def flaky(store, fs_path, params, cancel, taken):
                if fs_path.endswith("b.txt"):
                    # Take a reference first so the release path is exercised.
                    taken.append(store.put(b"half-read"))
                    raise OSError(5, "Input/output error")
                return real(store, fs_path, params, cancel, taken)

            with mock.patch.object(manifest_mod, "_chunk_file_once", side_effect=flaky):
                report = run_backup(repo, str(src), BackupOptions(retries=2, backoff=0))
            self.assertEqual(list(report.failed), ["docs/b.txt"])
            self.assertEqual(report.files_ok, 2)
            self.assertNotIn("docs/b.txt", _tree(repo, report.snapshot.snapshot_id))
            half = repo.store.digest_of(b"half-read")
            self.assertEqual(repo.store.refcount(half), 0)

        self.run_with_tmpdir(scenario)

    def test_transient_read_error_is_retried(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            real = manifest_mod._chunk_file_once
            failed_once = []

            def flaky(store, fs_path, params, cancel, taken):
                if fs_path.endswith("b.txt") and not failed_once:
                    failed_once.append(fs_path)
                    taken.append(store.put(b"first attempt"))
                    raise OSError(5, "Input/output error")
                return real(store, fs_path, params, cancel, taken)

            with mock.patch.object(manifest_mod, "_chunk_file_once", side_effect=flaky):
                report = run_backup(repo, str(src), BackupOptions(retries=1, backoff=0))
            self.assertEqual(report.failed, {})
            self.assertEqual(report.files_ok, 3)
            tree = _tree(repo, report.snapshot.snapshot_id)
            self.assertEqual(tree["docs/b.txt"].size, 5000)
            self.assertEqual(repo.store.refcount(repo.store.digest_of(b"first attempt")), 0)

        self.run_with_tmpdir(scenario)

    def test_retries_count_after_the_first_attempt(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            with mock.patch.object(manifest_mod, "_chunk_file_once", side_effect=OSError(5, "boom")) as fake:
                with self.assertRaises(SourceIOError):
                    manifest_mod.build_file_manifest(
                        repo.store, str(src / "c.bin"), "c.bin", SMALL, retries=2, backoff=0
                    )
            self.assertEqual(fake.call_count, 3)

        self.run_with_tmpdir(scenario)

    def test_store_write_failure_aborts_run(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            with mock.patch.object(ContentStore, "_write_envelope", side_effect=OSError(28, "No space left on device")) as fake:
                with self.assertRaises(StoreWriteError):
                    run_backup(repo, str(src), BackupOptions(retries=3, backoff=0))
            # Not retried as if the source were unreadable.
            self.assertLessEqual(fake.call_count, 3)
            self.assertEqual(repo.index.list(), [])
            self.assertEqual(repo.index.active_builders, 0)
            self.assertEqual(repo.store.references(), {})

        self.run_with_tmpdir(scenario)

    def test_pre_epoch_mtime_roundtrips(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            old = src / "old.txt"
            old.write_bytes(b"written long ago")
            try:
                os.utime(old, ns=(-10**18, -10**18))
            except (OSError, OverflowError):
                self.skipTest("filesystem cannot store pre-1970 timestamps")
            repo = self.new_repo(tmp_path)
            report = run_backup(repo, str(src))
            self.assertEqual(report.failed, {})
            repo.close()

            repo = Repository.open(str(tmp_path / "repo"))
            self.assertEqual(_tree(repo, 1)["old.txt"].mtime_ns, -10**18)
            again = run_backup(repo, str(src), BackupOptions(incremental=True, parent_id=1))
            self.assertIn("old.txt", again.linked)
            out = tmp_path / "out"
            restore(repo, 1, str(out))
            self.assertEqual((out / "old.txt").read_bytes(), b"written long ago")
            self.assertEqual(os.stat(out / "old.txt").st_mtime_ns, -10**18)

        self.run_with_tmpdir(scenario)

    def test_undecodable_file_name_roundtrips(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            raw_name = b"bad\xff.txt"
            try:
                with open(os.path.join(os.fsencode(str(src)), raw_name), "wb") as fh:
                    fh.write(b"bytes behind an odd name")
            except (OSError, UnicodeError):
                self.skipTest("filesystem rejects non-UTF-8 names")
            repo = self.new_repo(tmp_path)
            report = run_backup(repo, str(src))
            self.assertEqual(report.files_ok, 4)
            repo.close()

            repo = Repository.open(str(tmp_path / "repo"))
            name = os.fsdecode(raw_name)
            self.assertIn(name, _tree(repo, 1))
            out = tmp_path / "out"
            restore(repo, 1, str(out))
            with open(os.path.join(os.fsencode(str(out)), raw_name), "rb") as fh:
                self.assertEqual(fh.read(), b"bytes behind an odd name")

        self.run_with_tmpdir(scenario)

    @unittest.skipIf(os.sep == "\\", "backslash separates paths here")
    def test_backslash_is_part_of_the_name(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            (src / "x").mkdir(parents=True)
            (src / "x" / "y").write_bytes(b"nested")
            (src / "x\\y").write_bytes(b"flat")
            repo = self.new_repo(tmp_path)
            report = run_backup(repo, str(src))
            self.assertEqual(report.files_ok, 2)
            tree = _tree(repo, report.snapshot.snapshot_id)
            self.assertIn("x/y", tree)
            self.assertIn("x\\y", tree)
            out = tmp_path / "out"
            restore(repo, report.snapshot.snapshot_id, str(out))
            self.assertEqual((out / "x" / "y").read_bytes(), b"nested")
            self.assertEqual((out / "x\\y").read_bytes(), b"flat")

        self.run_with_tmpdir(scenario)

    def test_all_files_failing_aborts(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            with mock.patch.object(manifest_mod, "_chunk_file_once", side_effect=OSError(5, "boom")):
                with self.assertRaises(BackupFailed) as ctx:
                    run_backup(repo, str(src), BackupOptions(retries=1))
            self.assertEqual(len(ctx.exception.report.failed), 3)
            self.assertEqual(repo.index.list(), [])
            self.assertEqual(repo.index.active_builders, 0)

        self.run_with_tmpdir(scenario)

    def test_cancelled_backup_leaves_nothing(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            token = CancelToken()
            token.cancel("user interrupt")
            with self.assertRaises(Cancelled):
                run_backup(repo, str(src), cancel=token)
            self.assertEqual(repo.index.list(), [])
            self.assertEqual(repo.store.references(), {})
            self.assertEqual(repo.index.active_builders, 0)
            report = repo.gc()
            self.assertEqual(report.kept, 0)

        self.run_with_tmpdir(scenario)

    def test_encrypted_repository_roundtrip(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path, password="secret", **FAST_KDF)
            sid = run_backup(repo, str(src)).snapshot.snapshot_id
            repo.close()

            reopened = Repository.open(str(tmp_path / "repo"), password="secret", verify_on_read=True)
            self.assertTrue(reopened.header.encrypted)
            self.assertTrue(audit(reopened).ok)
            out = tmp_path / "out"
            restore(reopened, sid, str(out))
            _assert_same_file(self, src / "docs" / "a.txt", out / "docs" / "a.txt")
            log_bytes = (tmp_path / "repo" / "snapshots.log").read_bytes()
            self.assertNotIn(str(src).encode(), log_bytes)

        self.run_with_tmpdir(scenario)

    def test_verify_on_read_checks_whole_file(self):
        def scenario(tmp_path: Path):
            src = _create_source(tmp_path)
            repo = self.new_repo(tmp_path)
            sid = run_backup(repo, str(src)).snapshot.snapshot_id
            tree = _tree(repo, sid)
            tree["c.bin"].file_digest = "00" * 32
            out = tmp_path / "out"
            with mock.patch.object(repo.index, "load_tree", return_value=list(tree.values())):
                restore(repo, sid, str(out / "plain"))
                with self.assertRaises(RestoreIncomplete) as ctx:
                    restore(repo, sid, str(out / "checked"), verify_on_read=True)
            self.assertEqual(list(ctx.exception.report.failed), ["c.bin"])

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
