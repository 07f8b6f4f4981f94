"""At-rest encryption for scraper credentials and session cookies.

AES-256-CBC with PKCS7 padding and a fresh random IV per call. Stored form is
``<iv hex>:<ciphertext hex>``. There is no MAC: a flipped bit in the
ciphertext decrypts to garbage instead of failing.
"""

from __future__ import annotations

import binascii
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from vinhistory.errors import DecryptionFailure, MalformedCiphertext

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
SEPARATOR = ":"


def derive_key(key_material: str) -> bytes:
    """Pad with ``"0"`` / truncate the configured key to 32 bytes."""
    raw = key_material.encode("utf-8")
    return raw.ljust(KEY_LENGTH, b"0")[:KEY_LENGTH]


class CredentialVault:
    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material must not be empty")
        self._key = derive_key(key_material)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        if not isinstance(blob, str) or SEPARATOR not in blob:
            raise MalformedCiphertext("ciphertext blob is missing the iv separator")
        iv_hex, data_hex = blob.split(SEPARATOR, 1)
        try:
            iv = bytes.fromhex(iv_hex)
        except ValueError as exc:
            raise MalformedCiphertext("iv is not valid hex") from exc
        if len(iv) != IV_LENGTH:
            raise MalformedCiphertext(f"iv must be {IV_LENGTH} bytes, got {len(iv)}")
        try:
            ciphertext = binascii.unhexlify(data_hex)
        except (binascii.Error, ValueError) as exc:
            raise MalformedCiphertext("ciphertext is not valid hex") from exc
        if not ciphertext or len(ciphertext) % IV_LENGTH:
            raise DecryptionFailure("ciphertext length is not a whole number of blocks")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except ValueError as exc:
            logger.warning("Credential decryption failed (wrong key or corrupted data)")
            raise DecryptionFailure("failed to decrypt: invalid key or corrupted data") from exc
