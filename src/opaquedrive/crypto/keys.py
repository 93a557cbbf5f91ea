"""Ed25519 key pairs and their backup files.

A backup is a small JSON document, either plaintext

    {"encrypted": false, "privateKey": "<hex>", "publicKey": "<hex>"}

or wrapped under a password

    {"encrypted": true, "salt": "<hex>", "nonce": "<hex>", "ciphertext": "<hex>"}

where ciphertext is AES-256-GCM over the plaintext form, keyed by
PBKDF2-HMAC-SHA256(password, salt, 100000). Files written by older clients
use "iv"/"data" instead of "nonce"/"ciphertext"; both are read.
"""
import json
import logging
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from dataclasses import dataclass
from typing import Any, Dict, Optional

from opaquedrive.crypto.aead import aead_decrypt, aead_encrypt
from opaquedrive.crypto.hash import derive_password_key
from opaquedrive.utils.dataModels import ED25519_KEY_SIZE, PASSWORD_SALT_SIZE
from opaquedrive.utils.errors import MalformedBackup, ValidationError, WrongPassword

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPair:
    private_key: bytes
    public_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()})"

    def to_hex(self) -> Dict[str, str]:
        return {"privateKey": self.private_key.hex(), "publicKey": self.public_key.hex()}


def public_key_from_private(private_key: bytes) -> bytes:
    if len(private_key) != ED25519_KEY_SIZE:
        raise ValidationError(f"Private key must be {ED25519_KEY_SIZE} bytes, got {len(private_key)}")
    pub = Ed25519PrivateKey.from_private_bytes(private_key).public_key()
    return pub.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


def generate_keypair() -> KeyPair:
    private_key = os.urandom(ED25519_KEY_SIZE)
    return KeyPair(private_key=private_key, public_key=public_key_from_private(private_key))


def sign(private_key: bytes, message: bytes | str) -> bytes:
    """Deterministic Ed25519 signature over `message` (str is UTF-8 encoded)."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    if len(private_key) != ED25519_KEY_SIZE:
        raise ValidationError(f"Private key must be {ED25519_KEY_SIZE} bytes, got {len(private_key)}")
    return Ed25519PrivateKey.from_private_bytes(private_key).sign(message)


def verify(public_key: bytes, message: bytes | str, signature: bytes) -> bool:
    if isinstance(message, str):
        message = message.encode("utf-8")
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


def export_backup(pair: KeyPair, password: Optional[str] = None) -> str:
    key_data: Dict[str, Any] = pair.to_hex()
    if not password:
        return json.dumps({"encrypted": False, **key_data}, indent=2)

    salt = os.urandom(PASSWORD_SALT_SIZE)
    wrap_key = derive_password_key(password, salt)
    nonce, ct = aead_encrypt(wrap_key, json.dumps(key_data).encode("utf-8"))
    return json.dumps({
        "encrypted": True,
        "salt": salt.hex(),
        "nonce": nonce.hex(),
        "ciphertext": ct.hex(),
    }, indent=2)


def _unhex(doc: Dict[str, Any], *names: str) -> bytes:
    for name in names:
        value = doc.get(name)
        if value is not None:
            try:
                return bytes.fromhex(value)
            except (TypeError, ValueError) as e:
                raise MalformedBackup(f"Field '{name}' is not hex") from e
    raise MalformedBackup(f"Backup is missing field '{names[0]}'")


def _pair_from(doc: Dict[str, Any]) -> KeyPair:
    private_key = _unhex(doc, "privateKey")
    public_key = _unhex(doc, "publicKey")
    if len(private_key) != ED25519_KEY_SIZE or len(public_key) != ED25519_KEY_SIZE:
        raise MalformedBackup("Backup keys must be 32 bytes each")
    if public_key_from_private(private_key) != public_key:
        raise MalformedBackup("Public key does not match private key")
    return KeyPair(private_key=private_key, public_key=public_key)


def import_backup(blob: str | bytes, password: Optional[str] = None) -> KeyPair:
    try:
        doc = json.loads(blob)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedBackup("Backup is not valid JSON") from e
    if not isinstance(doc, dict):
        raise MalformedBackup("Backup must be a JSON object")

    if not doc.get("encrypted"):
        return _pair_from(doc)

    salt = _unhex(doc, "salt")
    nonce = _unhex(doc, "nonce", "iv")
    ct = _unhex(doc, "ciphertext", "data")
    if not password:
        raise WrongPassword("Backup is password protected")

    wrap_key = derive_password_key(password, salt)
    plaintext = aead_decrypt(wrap_key, nonce, ct, failure=WrongPassword)
    try:
        inner = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedBackup("Decrypted backup is not valid JSON") from e
    if not isinstance(inner, dict):
        raise MalformedBackup("Decrypted backup must be a JSON object")
    logger.debug("Imported password-protected key backup")
    return _pair_from(inner)
