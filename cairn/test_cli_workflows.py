from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict

from cairn.repository import Repository


def _build_fixture_tree(root: Path) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    (root / "docs" / "notes").mkdir(parents=True)
    files["docs/readme.txt"] = b"hello world\n" * 20
    files["docs/notes/binary.bin"] = os.urandom(2048)
    files["docs/notes/empty.txt"] = b""
    files["top.txt"] = b"top level\n"
    for rel, data in files.items():
        (root / rel).write_bytes(data)
    os.chmod(root / "docs" / "notes" / "binary.bin", 0o600)
    return files


def _compare(test: unittest.TestCase, files: Dict[str, bytes], dst: Path):
    for rel, data in files.items():
        test.assertEqual((dst / rel).read_bytes(), data, f"content differs: {rel}")


class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, cwd: Path | None = None):
        cmd = [sys.executable, "-m", "cairn.cli"] + list(args)
        env = os.environ.copy()
        repo_root = Path(__file__).resolve().parents[1]
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
            )
        return proc

    def make_workspace(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        root = Path(tmp.name)
        src = root / "src"
        src.mkdir()
        return root, src, _build_fixture_tree(src)

    def test_backup_restore_roundtrip(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        proc = self.run_cli(["backup", str(src), str(repo), "--name", "first"])
        self.assertIn("Initialized repository", proc.stdout)
        self.assertIn("Done: snapshot 1 (first)", proc.stdout)
        self.assertIn("Backup successful!", (repo / "backup.log").read_text(encoding="utf-8"))

        listing = self.run_cli(["list", str(repo)])
        self.assertIn("first", listing.stdout)

        ls_proc = self.run_cli(["ls", str(repo), "1"])
        self.assertIn("docs/notes/binary.bin", ls_proc.stdout)

        verify_proc = self.run_cli(["verify", str(repo)])
        self.assertIn("OK", verify_proc.stdout)

        out = root / "out"
        self.run_cli(["restore", str(repo), "1", str(out)])
        _compare(self, files, out)
        self.assertEqual(os.stat(out / "docs" / "notes" / "binary.bin").st_mode & 0o777, 0o600)

        partial = root / "partial"
        self.run_cli(["restore", str(repo), "1", str(partial), "top.txt"])
        self.assertTrue((partial / "top.txt").exists())
        self.assertFalse((partial / "docs").exists())

        info = self.run_cli(["info", str(repo)])
        self.assertIn("Snapshots: 1 live", info.stdout)

    def test_incremental_backup_links_parent(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        self.run_cli(["init", str(repo), "--min-chunk", "64", "--avg-chunk", "256", "--max-chunk", "1024"])
        self.run_cli(["backup", str(src), str(repo)])
        (src / "top.txt").write_bytes(b"top level, edited\n")
        proc = self.run_cli(["backup", str(src), str(repo), "--incremental"])
        self.assertIn("linked=3", proc.stdout)
        self.assertIn("rechunked=1", proc.stdout)
        listing = self.run_cli(["list", str(repo)])
        self.assertIn("parent=1", listing.stdout)

        no_parent = self.run_cli(["backup", str(src), str(repo), "--no-parent", "--incremental"])
        self.assertIn("linked=0", no_parent.stdout)

    def test_corruption_exit_codes(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        self.run_cli(["backup", str(src), str(repo)])
        with Repository.open(str(repo)) as r:
            tree = {m.path: m for m in r.index.load_tree(1)}
            victim = r.store.chunk_path(tree["docs/notes/binary.bin"].chunks[0])
        with open(victim, "rb+") as fh:
            fh.seek(-1, os.SEEK_END)
            last = fh.read(1)
            fh.seek(-1, os.SEEK_END)
            fh.write(bytes([last[0] ^ 0xFF]))

        verify_proc = self.run_cli(["verify", str(repo), "1"], expect=4)
        self.assertIn("FAIL", verify_proc.stdout)
        self.assertIn("affects docs/notes/binary.bin", verify_proc.stdout)

        out = root / "out"
        restore_proc = self.run_cli(["restore", str(repo), "1", str(out)], expect=4)
        self.assertIn("docs/notes/binary.bin", restore_proc.stderr)
        self.assertEqual((out / "top.txt").read_bytes(), files["top.txt"])
        self.assertEqual((out / "docs" / "readme.txt").read_bytes(), files["docs/readme.txt"])

    def test_forget_and_gc(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        self.run_cli(["backup", str(src), str(repo), "--name", "one"])
        (src / "only-in-two.txt").write_bytes(b"unique bytes for the second snapshot")
        self.run_cli(["backup", str(src), str(repo), "--name", "two"])

        self.run_cli(["forget", str(repo), "2"])
        listing = self.run_cli(["list", str(repo)])
        self.assertNotIn("two", listing.stdout)
        self.assertIn("deleted", self.run_cli(["list", str(repo), "--all"]).stdout)
        gc_proc = self.run_cli(["gc", str(repo)])
        self.assertIn("removed 1 chunk(s)", gc_proc.stdout)
        self.run_cli(["verify", str(repo)])
        self.run_cli(["forget", str(repo), "2"], expect=2)

    def test_argument_errors(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        self.run_cli(["list", str(repo)], expect=2)
        self.run_cli(["backup", str(src / "top.txt"), str(repo)], expect=2)
        self.run_cli(["backup", str(src), str(repo)])
        self.run_cli(["restore", str(repo), "99", str(root / "out")], expect=2)
        self.run_cli(["restore", str(repo), "1", str(root / "out"), "missing/path"], expect=2)
        self.run_cli(["restore", str(repo), "not-a-number", str(root / "out")], expect=2)
        self.run_cli(["init", str(repo)], expect=2)
        self.run_cli(["init", str(root / "bad"), "--avg-chunk", "1000"], expect=2)

    def test_encrypted_repository(self):
        root, src, files = self.make_workspace()
        repo = root / "repo"
        kdf = ["--argon-time", "1", "--argon-memory-kib", "1024", "--argon-lanes", "1"]
        proc = self.run_cli(["init", str(repo), "--password", "secret"] + kdf)
        self.assertIn("Encrypted: yes", proc.stdout)
        self.run_cli(["backup", str(src), str(repo), "--password", "secret"])
        denied = self.run_cli(["list", str(repo)], expect=2)
        self.assertIn("--password", denied.stderr)
        self.run_cli(["list", str(repo), "--password", "wrong"], expect=2)
        out = root / "out"
        self.run_cli(["restore", str(repo), "1", str(out), "--password", "secret", "--verify-on-read"])
        _compare(self, files, out)


if __name__ == "__main__":
    unittest.main()
