"""Content-defined chunking with a gear rolling hash.

Each step computes ``h = (h << 1) + G[byte]`` truncated to 64 bits, so only
the last 64 bytes influence the high bits of ``h``. A boundary is declared
when the masked high bits are all zero. Normalized chunking uses a stricter
mask before the average size and a looser one after it, which keeps chunk
sizes close to the average. No cut is made before ``min_size`` and a cut is
forced at ``max_size``.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional

from .cancel import check
from .constants import DEFAULT_AVG_CHUNK, DEFAULT_MAX_CHUNK, DEFAULT_MIN_CHUNK
from .errors import InvalidInput
from .prng import gear_table


_MASK64 = 0xFFFFFFFFFFFFFFFF
_GEAR = gear_table(b"cairn-gear-v1")
_READ_SIZE = 1_048_576


def _high_mask(bits: int) -> int:
    return ((1 << bits) - 1) << (64 - bits)


@dataclass(frozen=True)
class ChunkerParams:
    min_size: int = DEFAULT_MIN_CHUNK
    avg_size: int = DEFAULT_AVG_CHUNK
    max_size: int = DEFAULT_MAX_CHUNK

    def __post_init__(self):
        if self.min_size <= 0:
            raise InvalidInput("min chunk size must be positive")
        if not (self.min_size <= self.avg_size <= self.max_size):
            raise InvalidInput("chunk sizes must satisfy min <= avg <= max")
        if self.avg_size < 16 or self.avg_size & (self.avg_size - 1):
            raise InvalidInput("average chunk size must be a power of two >= 16")

    @property
    def mask_small(self) -> int:
        return _high_mask(self.avg_size.bit_length() + 1)

    @property
    def mask_large(self) -> int:
        return _high_mask(max(1, self.avg_size.bit_length() - 3))


def _cut_point(data, n: int, params: ChunkerParams) -> int:
    """Length of the chunk that starts at ``data[0]``, looking at ``n`` bytes."""
    if n <= params.min_size:
        return n
    limit = min(n, params.max_size)
    normal = min(limit, params.avg_size)
    gear = _GEAR
    mask = params.mask_small
    h = 0
    i = params.min_size
    while i < normal:
        h = ((h << 1) + gear[data[i]]) & _MASK64
        if not h & mask:
            return i + 1
        i += 1
    mask = params.mask_large
    while i < limit:
        h = ((h << 1) + gear[data[i]]) & _MASK64
        if not h & mask:
            return i + 1
        i += 1
    return limit


def iter_chunks(stream: BinaryIO, params: Optional[ChunkerParams] = None, *, cancel=None) -> Iterator[bytes]:
    """Lazily split ``stream`` into content-defined chunks.

    Boundaries only depend on the bytes themselves, never on how the
    stream delivers them. The cancellation token is checked between chunks.
    """
    params = params or ChunkerParams()
    buf = bytearray()
    eof = False
    read_size = max(_READ_SIZE, params.max_size)
    while True:
        while not eof and len(buf) < params.max_size:
            block = stream.read(read_size)
            if not block:
                eof = True
                break
            buf += block
        if not buf:
            return
        check(cancel)
        cut = _cut_point(buf, len(buf), params)
        yield bytes(buf[:cut])
        del buf[:cut]


def chunk_boundaries(data: bytes, params: Optional[ChunkerParams] = None) -> List[int]:
    """End offsets of every chunk of ``data`` (the last one equals ``len(data)``)."""
    params = params or ChunkerParams()
    ends: List[int] = []
    view = memoryview(data)
    pos = 0
    total = len(data)
    while pos < total:
        cut = _cut_point(view[pos:], total - pos, params)
        pos += cut
        ends.append(pos)
    return ends


def split_bytes(data: bytes, params: Optional[ChunkerParams] = None) -> List[bytes]:
    return list(iter_chunks(io.BytesIO(data), params))
