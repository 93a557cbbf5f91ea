from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from opaquedrive.utils.dataModels import (
    AES_KEY_SIZE,
    ED25519_KEY_SIZE,
    MASTER_KEY_INFO,
    MASTER_KEY_SALT,
    PBKDF2_ITERATIONS,
)
from opaquedrive.utils.errors import ValidationError


def derive_master_key(private_key: bytes) -> bytes:
    """Kmaster = HKDF-SHA256(private_key, salt=0^16, info="manifest-encryption") -> 32 bytes

    Deterministic: the same private key always yields the same manifest key,
    so a session can be unlocked from the private key alone.
    """
    if len(private_key) != ED25519_KEY_SIZE:
        raise ValidationError(f"Private key must be {ED25519_KEY_SIZE} bytes, got {len(private_key)}")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=MASTER_KEY_SALT,
        info=MASTER_KEY_INFO,
    )
    return hkdf.derive(private_key)


def derive_password_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256(password, salt) -> 32 bytes. Shared by key backups and share links."""
    if not password:
        raise ValidationError("Password must not be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))
