from argon2.low_level import hash_secret_raw, Type
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_encrypt,
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_ABYTES,
    crypto_aead_xchacha20poly1305_ietf_KEYBYTES,
    crypto_aead_xchacha20poly1305_ietf_NPUBBYTES,
)
from nacl.exceptions import CryptoError
from contextlib import contextmanager
from typing import Iterator, Union
import os

NONCE_SIZE = crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
KEY_SIZE = crypto_aead_xchacha20poly1305_ietf_KEYBYTES
TAG_SIZE = crypto_aead_xchacha20poly1305_ietf_ABYTES
SALT_SIZE = 16

Passphrase = Union[str, bytes, bytearray]


def kdf_argon2id(password_bytes: bytearray, salt: bytes, time_cost: int, memory_cost: int, parallelism: int) -> bytearray:
    """Derive a 32-byte key from the user-supplied passphrase using Argon2id."""
    try:
        return bytearray(
            hash_secret_raw(
                bytes(password_bytes),
                salt,
                time_cost=time_cost,
                memory_cost=memory_cost,
                parallelism=parallelism,
                hash_len=KEY_SIZE,
                type=Type.ID,
            )
        )
    finally:
        zero_bytes(password_bytes)


def secret_buffer(value: Passphrase) -> bytearray:
    """Copy a passphrase into a mutable buffer that can be wiped later."""
    if isinstance(value, str):
        return bytearray(value.encode("utf-8"))
    return bytearray(value)


@contextmanager
def derived_key(passphrase: Passphrase, salt: bytes, time_cost: int, memory_cost: int, parallelism: int) -> Iterator[bytearray]:
    """
    Yield the Argon2id key for `passphrase` and `salt`.

    The passphrase copy and the key are zeroed when the block exits, whether
    it returns normally or raises.
    """
    password = secret_buffer(passphrase)
    key = bytearray()
    try:
        key = kdf_argon2id(password, salt, time_cost, memory_cost, parallelism)
        yield key
    finally:
        zero_bytes(password)
        zero_bytes(key)


def gen_nonce() -> bytes:
    """Return a cryptographically-random 24-byte nonce for XChaCha20-Poly1305."""
    return os.urandom(NONCE_SIZE)


def gen_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def aead_encrypt(key: bytearray, nonce: bytes, plaintext: bytes, ad: bytes) -> bytes:
    """Encrypt `plaintext` with XChaCha20-Poly1305 using the supplied nonce and AD."""
    return crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, ad, nonce, bytes(key))


def aead_decrypt(key: bytearray, nonce: bytes, ciphertext: bytes, ad: bytes) -> bytes:
    """Decrypt a ciphertext produced by `aead_encrypt`, raising ValueError on failure."""
    try:
        return crypto_aead_xchacha20poly1305_ietf_decrypt(ciphertext, ad, nonce, bytes(key))
    except CryptoError as exc:
        raise ValueError("decryption failed") from exc


def zero_bytes(b):
    """Best-effort zeroization for mutable buffers that held sensitive information."""
    if isinstance(b, bytearray):
        for i in range(len(b)):
            b[i] = 0
    elif isinstance(b, memoryview) and not b.readonly:
        b[:] = b"\x00" * len(b)
