from __future__ import annotations

import hashlib
from typing import Iterable, List, Optional


def blake2s_32(data: bytes, key: Optional[bytes] = None) -> bytes:
    if key:
        return hashlib.blake2s(data, digest_size=32, key=key).digest()
    return hashlib.blake2s(data, digest_size=32).digest()


def chunk_digest(data: bytes, key: Optional[bytes] = None) -> str:
    """Content address of a chunk as lowercase hex.

    Encrypted repositories pass their id key so digests do not reveal
    plaintext equality to anyone without the password.
    """
    return blake2s_32(data, key).hex()


def merkle_leaf(digest_hex: str) -> bytes:
    # Domain-separated from raw chunk hashes.
    return blake2s_32(b"CR_LEAF\x00" + bytes.fromhex(digest_hex))


def merkle_parent(left32: bytes, right32: bytes) -> bytes:
    return blake2s_32(b"CR_NODE\x00" + left32 + right32)


def merkle_root(digests: Iterable[str]) -> bytes:
    """Binary Merkle root over chunk digests in order; odd nodes are promoted."""
    level: List[bytes] = [merkle_leaf(d) for d in digests]
    if not level:
        return b"\x00" * 32
    while len(level) > 1:
        nxt: List[bytes] = []
        it = iter(level)
        for left in it:
            try:
                right = next(it)
            except StopIteration:
                nxt.append(left)
                break
            nxt.append(merkle_parent(left, right))
        level = nxt
    return level[0]
