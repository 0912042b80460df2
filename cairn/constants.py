import uuid


# Magic and version
REPO_MAGIC = b"CAIRNRP\x00"      # 8 bytes: "CAIRNRP\0"
REFS_MAGIC = b"CAIRNRF\x00"      # 8 bytes: "CAIRNRF\0"
TREE_MAGIC = b"CAIRNTR\x00"      # 8 bytes: "CAIRNTR\0"
CHUNK_MAGIC = b"CRNK"

VERSION_MAJOR = 1
VERSION_MINOR = 0

# Repository header flags
FLAG_ENCRYPTED = 1 << 0

# Chunk envelope flags
CFLAG_ENCRYPTED = 1 << 0


# Snapshot log record constants
REC_SYNC = bytes([0xC4, 0x52, 0x4E, 0x4C])  # 0xC4 'R' 'N' 'L'

RTYPE_SEAL = 1
RTYPE_DELETE = 2


# Entry kinds
KIND_FILE = 0
KIND_DIR = 1
KIND_SYMLINK = 2

KIND_NAMES = {KIND_FILE: "file", KIND_DIR: "dir", KIND_SYMLINK: "symlink"}


# Codec IDs (0=none, 1=deflate/zlib, 2=zstd)
CODEC_NONE = 0
CODEC_DEFLATE = 1
CODEC_ZSTD = 2

CODEC_NAMES = {"none": CODEC_NONE, "deflate": CODEC_DEFLATE, "zstd": CODEC_ZSTD}


# Content-defined chunking defaults
DEFAULT_MIN_CHUNK = 256 * 1024       # 256 KiB
DEFAULT_AVG_CHUNK = 1_048_576        # 1 MiB
DEFAULT_MAX_CHUNK = 4 * 1_048_576    # 4 MiB
DEFAULT_CODEC_ID = CODEC_DEFLATE

DEFAULT_WORKERS = 4
DEFAULT_IO_RETRIES = 3
DEFAULT_IO_BACKOFF = 0.05  # seconds, doubled per attempt

DIGEST_SIZE = 32

# Repository layout
HEADER_NAME = "CAIRN"
CHUNKS_DIR = "chunks"
TREES_DIR = "trees"
REFS_NAME = "refs"
LOG_NAME = "snapshots.log"
LOCK_NAME = "lock"
REFS_LOCK_NAME = "refs.lock"
RUN_LOG_NAME = "backup.log"


def new_uuid_bytes() -> bytes:
    return uuid.uuid4().bytes
