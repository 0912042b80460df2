"""
cairn: deduplicating, content-addressed incremental backups.

Features:

- Content-defined chunking (gear rolling hash with normalized masks) so an
  edit only changes the chunks around it.
- Content store addressed by BLAKE2s digests, with per-digest locks and
  reference counts; chunks are verified on every read.
- Immutable snapshots sealed by a single framed record in an append-only log,
  with incremental lineage through parent snapshots.
- Optional repository encryption via XChaCha20-Poly1305 with Argon2id key
  derivation; digests become keyed so they do not reveal content.
- Audit, partial-failure restore and explicit garbage collection.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "repository",
    "backup",
    "restore",
    "verify",
    "store",
    "snapshot",
]

# The programmatic API lives in cairn.repository (Repository.init/open),
# cairn.backup.run_backup, cairn.restore.restore and cairn.verify.audit.
