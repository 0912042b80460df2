"""Advisory repository locks shared between processes.

Every handle that builds a snapshot or reads chunks holds the repository
lock shared; garbage collection and snapshot deletion hold it exclusively.
Short critical sections (appending to the snapshot log, merging the
reference table) use blocking exclusive locks on their own files.

Locks are ``fcntl.flock`` locks on separately opened descriptors, so two
handles inside one process exclude each other just like two processes.
"""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager

from .errors import RepositoryBusy


log = logging.getLogger(__name__)


class FileLock:
    """One held ``flock``; release it exactly once."""

    def __init__(self, path: str, *, exclusive: bool = False, wait: bool = False):
        self.path = path
        self.exclusive = exclusive
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        flags = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        if not wait:
            flags |= fcntl.LOCK_NB
        try:
            fcntl.flock(fd, flags)
        except BlockingIOError:
            os.close(fd)
            mode = "exclusive" if exclusive else "shared"
            raise RepositoryBusy(f"cannot take {mode} lock on {path}: repository is in use")
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


@contextmanager
def locked(path: str, *, exclusive: bool = False, wait: bool = False):
    lock = FileLock(path, exclusive=exclusive, wait=wait)
    log.debug("locked %s (%s)", path, "exclusive" if exclusive else "shared")
    try:
        yield lock
    finally:
        lock.release()
