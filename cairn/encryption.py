from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash
from Cryptodome.Cipher import ChaCha20_Poly1305

from .errors import PasswordRequired


NONCE_SIZE = 24  # 24-byte nonces select XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16
CHECK_SIZE = 16

# Argon2id defaults for new repositories
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4


@dataclass
class EncryptionParams:
    salt: bytes
    time_cost: int
    memory_cost_kib: int
    parallelism: int
    key_check: bytes = b""


def _derive(password: str, params: EncryptionParams) -> bytes:
    return _argon_hash(
        password.encode("utf-8"),
        params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE * 2,
        type=_ArgonType.ID,
    )


class EncryptionContext:
    """Repository keys: one for the AEAD, one for keyed chunk digests."""

    def __init__(self, master: bytes, params: EncryptionParams):
        self.key = master[:KEY_SIZE]
        self.id_key = master[KEY_SIZE:]
        self.params = params

    @classmethod
    def create(
        cls,
        password: str,
        *,
        time_cost: int = ARGON_TIME_COST,
        memory_cost_kib: int = ARGON_MEMORY_COST_KIB,
        parallelism: int = ARGON_PARALLELISM,
    ) -> "EncryptionContext":
        if not password:
            raise PasswordRequired("an empty password cannot protect a repository")
        params = EncryptionParams(
            salt=os.urandom(SALT_SIZE),
            time_cost=time_cost,
            memory_cost_kib=memory_cost_kib,
            parallelism=parallelism,
        )
        ctx = cls(_derive(password, params), params)
        params.key_check = ctx._key_check()
        return ctx

    @classmethod
    def from_params(cls, password: str, params: EncryptionParams) -> "EncryptionContext":
        if not password:
            raise PasswordRequired("Repository is encrypted; password required")
        ctx = cls(_derive(password, params), params)
        if params.key_check and not hmac.compare_digest(ctx._key_check(), params.key_check):
            raise PasswordRequired("wrong password for this repository")
        return ctx

    def _key_check(self) -> bytes:
        return hmac.new(self.key, b"CAIRN_KEY_CHECK", "sha256").digest()[:CHECK_SIZE]

    def encrypt(self, aad: bytes, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, aad: bytes, payload: bytes) -> bytes:
        """Authenticate and decrypt; raises ``ValueError`` when tampered."""
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        return cipher.decrypt_and_verify(ciphertext, tag)

    def export_params(self) -> EncryptionParams:
        return self.params
