from __future__ import annotations

import hashlib


class DeterministicPRNG:
    """Deterministic pseudo-random word generator based on BLAKE2b."""

    def __init__(self, seed_base: bytes, seed_id: int = 0):
        self.seed_base = seed_base
        self.seed_id = seed_id
        self.counter = 0
        self.buffer = b""
        self.pos = 0

    def _refill(self):
        material = self.seed_base + self.seed_id.to_bytes(8, "little") + self.counter.to_bytes(4, "little")
        self.buffer = hashlib.blake2b(material, digest_size=64).digest()
        self.counter += 1
        self.pos = 0

    def next_bytes(self, n: int) -> bytes:
        out = bytearray()
        while len(out) < n:
            if self.pos >= len(self.buffer):
                self._refill()
            take = min(n - len(out), len(self.buffer) - self.pos)
            out += self.buffer[self.pos : self.pos + take]
            self.pos += take
        return bytes(out)

    def next_u64(self) -> int:
        return int.from_bytes(self.next_bytes(8), "little")


def gear_table(seed: bytes) -> tuple:
    """256 pseudo-random 64-bit words, stable for a given seed."""
    rng = DeterministicPRNG(seed)
    return tuple(rng.next_u64() for _ in range(256))
