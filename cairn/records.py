from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Tuple

from .constants import REC_SYNC
from .encryption import EncryptionContext
from .errors import CorruptRepository


_CRC_POLY = 0x82F63B78  # CRC32C (Castagnoli), reflected


def _make_crc_table():
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ _CRC_POLY if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    c = crc ^ 0xFFFFFFFF
    table = _CRC_TABLE
    for b in data:
        c = table[(c ^ b) & 0xFF] ^ (c >> 8)
    return c ^ 0xFFFFFFFF


# Log record header (fixed 20 bytes)
# struct: <4s B B H Q I
#  - sync[4]
#  - rtype u8
#  - rflags u8
#  - reserved u16
#  - payload_len u64
#  - crc32c u32 (over the header before this field, plus the stored payload)
_REC_HDR_STRUCT = struct.Struct("<4sBBHQI")

RFLAG_ENCRYPTED = 1 << 0


@dataclass
class LogRecord:
    offset: int
    rtype: int
    payload: bytes


def _aad(rtype: int, rflags: int) -> bytes:
    return REC_SYNC + bytes([rtype, rflags])


def _write_all(f: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        n = f.write(view)
        view = view[n:]


def write_record(
    f: BinaryIO,
    rtype: int,
    payload: bytes,
    encryptor: Optional[EncryptionContext] = None,
    *,
    sync: bool = True,
) -> int:
    """Append one framed record and return its offset.

    The record only becomes readable once every byte, including the CRC,
    is on disk. If the append fails part way the file is cut back to where
    the record started, so later appends never land behind a torn record.
    ``f`` should be unbuffered for that rollback to be exact.
    """
    rflags = RFLAG_ENCRYPTED if encryptor is not None else 0
    stored = payload if encryptor is None else encryptor.encrypt(_aad(rtype, rflags), payload)
    pre = _REC_HDR_STRUCT.pack(REC_SYNC, rtype, rflags, 0, len(stored), 0)[:-4]
    crc = crc32c(pre + stored)
    f.seek(0, os.SEEK_END)
    off = f.tell()
    try:
        _write_all(f, pre + struct.pack("<I", crc) + stored)
        if sync:
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        os.ftruncate(f.fileno(), off)
        os.fsync(f.fileno())
        raise
    return off


def read_records(f: BinaryIO, decryptor: Optional[EncryptionContext] = None, start: int = 0) -> Tuple[List[LogRecord], int]:
    """Read every complete record from offset ``start`` on.

    Returns the records and the offset where the valid log ends. An
    incomplete or CRC-failing final record is treated as a torn append and
    excluded; damage followed by further data raises ``CorruptRepository``.
    """
    f.seek(0, os.SEEK_END)
    size = f.tell()
    f.seek(start)
    records: List[LogRecord] = []
    pos = start
    while pos < size:
        fixed = f.read(_REC_HDR_STRUCT.size)
        if len(fixed) != _REC_HDR_STRUCT.size:
            break
        sync, rtype, rflags, _reserved, payload_len, crc = _REC_HDR_STRUCT.unpack(fixed)
        end = pos + _REC_HDR_STRUCT.size + payload_len
        if sync != REC_SYNC:
            raise CorruptRepository(f"Bad record sync at offset {pos}")
        if end > size:
            break
        stored = f.read(payload_len)
        if crc32c(fixed[:-4] + stored) != crc:
            if end == size:
                break
            raise CorruptRepository(f"Record CRC32C mismatch at offset {pos}")
        if rflags & RFLAG_ENCRYPTED:
            if decryptor is None:
                raise CorruptRepository("Encrypted log record but repository opened without a key")
            try:
                payload = decryptor.decrypt(_aad(rtype, rflags), stored)
            except ValueError as exc:
                raise CorruptRepository(f"Record at offset {pos} failed authentication: {exc}")
        else:
            payload = stored
        records.append(LogRecord(offset=pos, rtype=rtype, payload=payload))
        pos = end
    return records, pos
