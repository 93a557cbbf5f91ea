import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing import Tuple, Type

from opaquedrive.utils.dataModels import AEAD_NONCE_SIZE, AES_KEY_SIZE
from opaquedrive.utils.errors import AuthenticationFailure, ValidationError


def check_key(key: bytes) -> None:
    if len(key) != AES_KEY_SIZE:
        raise ValidationError(f"AES-256 key must be {AES_KEY_SIZE} bytes, got {len(key)}")


def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(AEAD_NONCE_SIZE)
    return nonce, aead_encrypt_with_nonce(key, nonce, plaintext, aad)


def aead_encrypt_with_nonce(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    check_key(key)
    if len(nonce) != AEAD_NONCE_SIZE:
        raise ValidationError(f"AES-GCM nonce must be {AEAD_NONCE_SIZE} bytes, got {len(nonce)}")
    return AESGCM(key).encrypt(nonce, plaintext, aad)


def aead_decrypt(
    key: bytes,
    nonce: bytes,
    ct: bytes,
    aad: bytes | None = None,
    failure: Type[AuthenticationFailure] = AuthenticationFailure,
) -> bytes:
    """Open `ct`; any tag mismatch is raised as `failure`, never as partial plaintext."""
    check_key(key)
    if len(nonce) != AEAD_NONCE_SIZE:
        raise ValidationError(f"AES-GCM nonce must be {AEAD_NONCE_SIZE} bytes, got {len(nonce)}")
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ct, aad)
    except InvalidTag:
        raise failure() from None


def seal(key: bytes, plaintext: bytes) -> bytes:
    """nonce || ciphertext || tag"""
    nonce, ct = aead_encrypt(key, plaintext)
    return nonce + ct


def open_sealed(key: bytes, blob: bytes, failure: Type[AuthenticationFailure] = AuthenticationFailure) -> bytes:
    # 16 bytes is the GCM tag
    if len(blob) < AEAD_NONCE_SIZE + 16:
        raise failure()
    return aead_decrypt(key, blob[:AEAD_NONCE_SIZE], blob[AEAD_NONCE_SIZE:], failure=failure)
