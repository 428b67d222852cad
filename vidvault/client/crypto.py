"""Payload encryption for uploaded video.

Current format (AES-256-GCM)::

    IV (12 bytes) || ciphertext (len == plaintext) || tag (16 bytes)

Legacy format (AES-256-CBC, read-only compatibility)::

    IV (16 bytes) || PKCS7-padded ciphertext

The two IV lengths are never interchangeable. ``decrypt`` resolves the mode by
authentication: GCM is tried with the 12-byte IV, and only when the tag does
not authenticate is the blob read as legacy CBC with the 16-byte IV.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from vidvault.errors import InvalidArgument, UndecryptableContent

KEY_LENGTH = 32
GCM_IV_LENGTH = 12
GCM_TAG_LENGTH = 16
CBC_IV_LENGTH = 16
BLOCK_BITS = 128
STREAM_BLOCK_BYTES = 1024 * 1024


class CipherMode(str, Enum):
    AES_256_GCM = "aes-256-gcm"
    AES_256_CBC = "aes-256-cbc"


IV_LENGTHS = {CipherMode.AES_256_GCM: GCM_IV_LENGTH, CipherMode.AES_256_CBC: CBC_IV_LENGTH}


@dataclass(frozen=True)
class EncryptedPayload:
    iv: bytes | None
    ciphertext: bytes
    auth_tag: bytes | None
    mode: CipherMode = CipherMode.AES_256_GCM

    def require_iv(self) -> bytes:
        if not self.iv or len(self.iv) != IV_LENGTHS[self.mode]:
            raise ValueError(f"{self.mode.value} payload has no {IV_LENGTHS[self.mode]}-byte iv")
        return self.iv

    def to_bytes(self) -> bytes:
        iv = self.require_iv()
        if self.mode == CipherMode.AES_256_GCM:
            if not self.auth_tag or len(self.auth_tag) != GCM_TAG_LENGTH:
                raise ValueError("aes-256-gcm payload has no 16-byte authentication tag")
            return iv + self.ciphertext + self.auth_tag
        return iv + self.ciphertext


@dataclass(frozen=True)
class Decrypted:
    plaintext: bytes
    mode: CipherMode


def generate_key() -> bytes:
    return os.urandom(KEY_LENGTH)


def parse_key(key: str | bytes) -> bytes:
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError as exc:
            raise InvalidArgument("encryption key is not valid hex") from exc
    if len(key) != KEY_LENGTH:
        raise InvalidArgument(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def encrypt(plaintext: bytes, key: bytes) -> EncryptedPayload:
    iv = os.urandom(GCM_IV_LENGTH)
    sealed = AESGCM(parse_key(key)).encrypt(iv, plaintext, None)
    return EncryptedPayload(
        iv=iv,
        ciphertext=sealed[:-GCM_TAG_LENGTH],
        auth_tag=sealed[-GCM_TAG_LENGTH:],
        mode=CipherMode.AES_256_GCM,
    )


def encrypt_legacy(plaintext: bytes, key: bytes) -> EncryptedPayload:
    iv = os.urandom(CBC_IV_LENGTH)
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(parse_key(key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return EncryptedPayload(iv=iv, ciphertext=ciphertext, auth_tag=None, mode=CipherMode.AES_256_CBC)


def _open_gcm(data: bytes, key: bytes) -> bytes | None:
    if len(data) < GCM_IV_LENGTH + GCM_TAG_LENGTH:
        return None
    try:
        return AESGCM(key).decrypt(data[:GCM_IV_LENGTH], data[GCM_IV_LENGTH:], None)
    except InvalidTag:
        return None


def _open_cbc(data: bytes, key: bytes) -> bytes | None:
    body = data[CBC_IV_LENGTH:]
    if not body or len(body) % (BLOCK_BITS // 8):
        return None
    decryptor = Cipher(algorithms.AES(key), modes.CBC(data[:CBC_IV_LENGTH])).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        return None


# tried in order; the first mode that authenticates wins
_OPENERS = (
    (CipherMode.AES_256_GCM, _open_gcm),
    (CipherMode.AES_256_CBC, _open_cbc),
)


def decrypt(data: bytes, key: bytes) -> Decrypted:
    """Open ``data`` as GCM, falling back to legacy CBC.

    Only the GCM path is authenticated. A damaged blob whose length is a whole
    number of CBC blocks can still pass PKCS7 unpadding (roughly one in 256)
    and comes back as unrelated bytes tagged ``AES_256_CBC``, never as GCM.
    """
    key = parse_key(key)
    for mode, opener in _OPENERS:
        plaintext = opener(data, key)
        if plaintext is not None:
            return Decrypted(plaintext=plaintext, mode=mode)
    raise UndecryptableContent("payload did not authenticate as aes-256-gcm or aes-256-cbc")


def resolve_mode(data: bytes, key: bytes) -> CipherMode:
    return decrypt(data, key).mode


def _read_blocks(handle, remaining: int):
    while remaining > 0:
        block = handle.read(min(STREAM_BLOCK_BYTES, remaining))
        if not block:
            break
        remaining -= len(block)
        yield block


def encrypt_file(src: str | Path, dst: str | Path, key: bytes) -> int:
    """Stream-encrypt ``src`` into ``dst`` in the GCM wire format; returns bytes written."""
    iv = os.urandom(GCM_IV_LENGTH)
    encryptor = Cipher(algorithms.AES(parse_key(key)), modes.GCM(iv)).encryptor()
    written = 0
    with open(src, "rb") as source, open(dst, "wb") as target:
        target.write(iv)
        written += len(iv)
        for block in iter(lambda: source.read(STREAM_BLOCK_BYTES), b""):
            out = encryptor.update(block)
            target.write(out)
            written += len(out)
        tail = encryptor.finalize()
        target.write(tail + encryptor.tag)
        written += len(tail) + GCM_TAG_LENGTH
    return written


def _decrypt_file_gcm(source, target, size: int, key: bytes) -> bool:
    if size < GCM_IV_LENGTH + GCM_TAG_LENGTH:
        return False
    source.seek(size - GCM_TAG_LENGTH)
    tag = source.read(GCM_TAG_LENGTH)
    source.seek(0)
    iv = source.read(GCM_IV_LENGTH)
    decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
    for block in _read_blocks(source, size - GCM_IV_LENGTH - GCM_TAG_LENGTH):
        target.write(decryptor.update(block))
    try:
        target.write(decryptor.finalize())
    except InvalidTag:
        return False
    return True


def _decrypt_file_cbc(source, target, size: int, key: bytes) -> bool:
    body_size = size - CBC_IV_LENGTH
    if body_size <= 0 or body_size % (BLOCK_BITS // 8):
        return False
    source.seek(0)
    iv = source.read(CBC_IV_LENGTH)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    for block in _read_blocks(source, body_size):
        target.write(unpadder.update(decryptor.update(block)))
    try:
        target.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
    except ValueError:
        return False
    return True


def decrypt_file(src: str | Path, dst: str | Path, key: bytes) -> CipherMode:
    """Stream-decrypt ``src`` into ``dst``.

    Output goes to a ``.part`` sibling that only replaces ``dst`` once a mode
    authenticates, so a failed decrypt never leaves plaintext behind.
    """
    key = parse_key(key)
    src, dst = Path(src), Path(dst)
    partial = dst.with_name(dst.name + ".part")
    size = src.stat().st_size
    try:
        with open(src, "rb") as source:
            for mode, opener in ((CipherMode.AES_256_GCM, _decrypt_file_gcm), (CipherMode.AES_256_CBC, _decrypt_file_cbc)):
                with open(partial, "wb") as target:
                    ok = opener(source, target, size, key)
                if ok:
                    partial.replace(dst)
                    return mode
    finally:
        partial.unlink(missing_ok=True)
    raise UndecryptableContent(f"{src.name} did not authenticate as aes-256-gcm or aes-256-cbc")
