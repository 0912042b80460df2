class CairnError(Exception):
    """Base class for cairn-specific errors."""


class InvalidInput(CairnError, ValueError):
    """Bad paths or arguments; reported immediately."""


class SourceIOError(CairnError):
    """A source entry could not be read completely (after retries)."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class Cancelled(CairnError):
    pass


# Integrity
class Corrupt(CairnError):
    pass


class CorruptChunk(Corrupt):
    def __init__(self, digest: str, message: str = "stored bytes do not match digest"):
        super().__init__(f"chunk {digest}: {message}")
        self.digest = digest


class CorruptSnapshot(Corrupt):
    pass


class CorruptRepository(Corrupt):
    pass


# Missing references
class NotFound(CairnError):
    pass


class ChunkNotFound(NotFound):
    def __init__(self, digest: str):
        super().__init__(f"chunk {digest} not found")
        self.digest = digest


class SnapshotNotFound(NotFound):
    def __init__(self, snapshot_id):
        super().__init__(f"snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class RepositoryNotFound(NotFound):
    pass


class RepositoryBusy(CairnError):
    """Another handle holds a conflicting lock on the repository."""


class StoreWriteError(CairnError):
    """Writing into the repository failed; the run cannot continue."""


# Lifecycle
class SnapshotStateError(CairnError):
    pass


class BackupFailed(CairnError):
    """No file of the run could be stored; the snapshot was aborted."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class RestoreIncomplete(CairnError):
    """Some paths could not be restored; ``report.failed`` lists them."""

    def __init__(self, report):
        failed = sorted(report.failed)
        super().__init__(f"{len(failed)} path(s) could not be restored: {', '.join(failed)}")
        self.report = report


class PasswordRequired(CairnError, ValueError):
    pass
