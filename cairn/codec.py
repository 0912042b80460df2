from __future__ import annotations

from typing import Optional

import zlib

from .constants import CODEC_DEFLATE, CODEC_NAMES, CODEC_NONE, CODEC_ZSTD
from .errors import InvalidInput

_HAS_ZSTD = False
_zstd_mod = None
_ZstdError = RuntimeError
try:  # zstd is an optional extra; the codec refuses to run without it
    import zstandard as _zstd_mod  # type: ignore
    from zstandard import ZstdError as _ZstdError  # type: ignore
    _HAS_ZSTD = True
except ImportError:
    _zstd_mod = None
    _HAS_ZSTD = False


def codec_id_from_name(name: str) -> int:
    try:
        codec_id = CODEC_NAMES[name.lower()]
    except KeyError:
        raise InvalidInput(f"unknown codec: {name} (choose from {', '.join(sorted(CODEC_NAMES))})")
    if codec_id == CODEC_ZSTD and not _HAS_ZSTD:
        raise InvalidInput("zstd codec selected but the zstandard module is not installed")
    return codec_id


def codec_name(codec_id: int) -> str:
    for name, cid in CODEC_NAMES.items():
        if cid == codec_id:
            return name
    return str(codec_id)


class Codec:
    def __init__(self, codec_id: int, level: Optional[int] = None):
        self.codec_id = codec_id
        self.level = level

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_DEFLATE:
            return zlib.compress(data, self.level if self.level is not None else 6)
        if self.codec_id == CODEC_ZSTD:
            if not (_HAS_ZSTD and _zstd_mod is not None):
                raise RuntimeError("zstd codec selected but zstd module is not available")
            try:
                c = _zstd_mod.ZstdCompressor(level=self.level if self.level is not None else 3)
                return c.compress(data)
            except _ZstdError as e:
                raise RuntimeError(f"zstd compression failed: {e}")
        raise RuntimeError(f"unsupported codec id: {self.codec_id}")

    def decompress(self, data: bytes, expected_len: Optional[int] = None) -> bytes:
        """Inverse of :meth:`compress`; raises ``ValueError`` on damaged input."""
        if self.codec_id == CODEC_NONE:
            out = data
        elif self.codec_id == CODEC_DEFLATE:
            try:
                d = zlib.decompressobj()
                out = d.decompress(data, expected_len + 1) if expected_len else d.decompress(data)
                if not d.eof:
                    raise ValueError("deflate stream does not end where expected")
            except zlib.error as e:
                raise ValueError(f"deflate decompression failed: {e}")
        elif self.codec_id == CODEC_ZSTD:
            if not (_HAS_ZSTD and _zstd_mod is not None):
                raise RuntimeError("zstd codec not available to decompress")
            try:
                d = _zstd_mod.ZstdDecompressor()
                out = d.decompress(data, max_output_size=expected_len or 0)
            except _ZstdError as e:
                raise ValueError(f"zstd decompression failed: {e}")
        else:
            raise ValueError(f"unsupported codec id: {self.codec_id}")
        if expected_len is not None and len(out) != expected_len:
            raise ValueError("length mismatch after decompress")
        return out
