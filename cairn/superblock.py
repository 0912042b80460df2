from __future__ import annotations

import os
import struct
import time
from dataclasses import dataclass
from typing import Optional

from .chunker import ChunkerParams
from .constants import FLAG_ENCRYPTED, REPO_MAGIC, VERSION_MAJOR, VERSION_MINOR, new_uuid_bytes
from .encryption import EncryptionParams
from .errors import CorruptRepository
from .records import crc32c


# Fields (little endian):
# magic[8], ver_major u16, ver_minor u16, flags u32,
# uuid[16], created_ns u64,
# chunk_min u32, chunk_avg u32, chunk_max u32, codec u16,
# kdf_id u16, kdf_salt[16], argon_mem u32, argon_time u32, argon_lanes u32,
# key_check[16], header_crc32c u32
_HEADER_STRUCT = struct.Struct("<8sHHI16sQIIIHH16sIII16sI")


@dataclass
class RepoHeader:
    version_major: int
    version_minor: int
    flags: int
    uuid: bytes
    created_ns: int
    chunker: ChunkerParams
    codec_id: int
    kdf_id: int = 0
    kdf_salt: bytes = b"\x00" * 16
    argon_memory_cost: int = 0
    argon_time_cost: int = 0
    argon_parallelism: int = 0
    key_check: bytes = b"\x00" * 16

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    def encryption_params(self) -> EncryptionParams:
        return EncryptionParams(
            salt=self.kdf_salt,
            time_cost=self.argon_time_cost,
            memory_cost_kib=self.argon_memory_cost,
            parallelism=self.argon_parallelism,
            key_check=self.key_check,
        )


def new_header(chunker: ChunkerParams, codec_id: int, enc_params: Optional[EncryptionParams]) -> RepoHeader:
    hdr = RepoHeader(
        version_major=VERSION_MAJOR,
        version_minor=VERSION_MINOR,
        flags=0,
        uuid=new_uuid_bytes(),
        created_ns=time.time_ns(),
        chunker=chunker,
        codec_id=codec_id,
    )
    if enc_params is not None:
        hdr.flags |= FLAG_ENCRYPTED
        hdr.kdf_id = 1  # Argon2id
        hdr.kdf_salt = enc_params.salt
        hdr.argon_memory_cost = enc_params.memory_cost_kib
        hdr.argon_time_cost = enc_params.time_cost
        hdr.argon_parallelism = enc_params.parallelism
        hdr.key_check = enc_params.key_check
    return hdr


def pack_header(hdr: RepoHeader) -> bytes:
    pre = _HEADER_STRUCT.pack(
        REPO_MAGIC,
        hdr.version_major,
        hdr.version_minor,
        hdr.flags,
        hdr.uuid,
        hdr.created_ns,
        hdr.chunker.min_size,
        hdr.chunker.avg_size,
        hdr.chunker.max_size,
        hdr.codec_id,
        hdr.kdf_id,
        hdr.kdf_salt,
        hdr.argon_memory_cost,
        hdr.argon_time_cost,
        hdr.argon_parallelism,
        hdr.key_check,
        0,  # crc placeholder
    )
    return pre[:-4] + struct.pack("<I", crc32c(pre[:-4]))


def unpack_header(raw: bytes) -> RepoHeader:
    if len(raw) != _HEADER_STRUCT.size:
        raise CorruptRepository("Repository header has the wrong size")
    (magic, vmaj, vmin, flags, uuid, created_ns, cmin, cavg, cmax, codec_id, kdf_id, salt, amem, atime, alanes, key_check, crc) = _HEADER_STRUCT.unpack(raw)
    if magic != REPO_MAGIC:
        raise CorruptRepository("Bad repository header magic")
    if crc32c(raw[:-4]) != crc:
        raise CorruptRepository("Repository header CRC mismatch")
    if vmaj != VERSION_MAJOR:
        raise CorruptRepository(f"Unsupported repository version {vmaj}.{vmin}")
    return RepoHeader(
        version_major=vmaj,
        version_minor=vmin,
        flags=flags,
        uuid=uuid,
        created_ns=created_ns,
        chunker=ChunkerParams(cmin, cavg, cmax),
        codec_id=codec_id,
        kdf_id=kdf_id,
        kdf_salt=salt,
        argon_memory_cost=amem,
        argon_time_cost=atime,
        argon_parallelism=alanes,
        key_check=key_check,
    )


def read_header(path: str) -> RepoHeader:
    with open(path, "rb") as f:
        return unpack_header(f.read(_HEADER_STRUCT.size + 1))


def write_header(path: str, hdr: RepoHeader) -> None:
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(pack_header(hdr))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
