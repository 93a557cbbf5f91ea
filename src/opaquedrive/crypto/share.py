"""Password-wrapped file keys for out-of-band sharing.

Bundle (base64url, no padding) over the binary layout (big-endian):
    magic     : 4 bytes   -> b"ODS1"
    version   : 1 byte    -> 0x01
    salt      : 16 bytes  (PBKDF2 salt)
    nonce     : 12 bytes  (AES-GCM nonce)
    ciphertext: remaining bytes, AES-256-GCM over file_key(32) || file_nonce(12)

The header is bound to the ciphertext as associated data. The bundle only
ever travels in a URL fragment, which browsers do not send to servers.
"""
import base64
import binascii
import os
import struct

from typing import Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from opaquedrive.crypto import filecipher
from opaquedrive.crypto.aead import aead_decrypt, aead_encrypt_with_nonce
from opaquedrive.crypto.hash import derive_password_key
from opaquedrive.utils.dataModels import (
    AEAD_NONCE_SIZE,
    AES_KEY_SIZE,
    PASSWORD_SALT_SIZE,
    SHARE_HDR_FMT,
    SHARE_HDR_SIZE,
    SHARE_MAGIC,
    SHARE_VERSION,
)
from opaquedrive.utils.errors import ValidationError, WrongPassword

FRAGMENT_PARAM = "key"


def derive_share_key(password: str, salt: bytes) -> bytes:
    """Same PBKDF2 parameters as key backups."""
    return derive_password_key(password, salt)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64url(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValidationError("Share bundle is not valid base64url") from e


def encrypt_share_payload(file_key: bytes, file_nonce: bytes, share_password: str) -> str:
    if len(file_key) != AES_KEY_SIZE or len(file_nonce) != AEAD_NONCE_SIZE:
        raise ValidationError("File key must be 32 bytes and nonce 12 bytes")
    salt = os.urandom(PASSWORD_SALT_SIZE)
    share_key = derive_share_key(share_password, salt)
    nonce = os.urandom(AEAD_NONCE_SIZE)
    header = struct.pack(SHARE_HDR_FMT, SHARE_MAGIC, SHARE_VERSION, salt, nonce)
    ct = aead_encrypt_with_nonce(share_key, nonce, file_key + file_nonce, header)
    return _b64url(header + ct)


def decrypt_share_payload(bundle: str, password: str) -> Tuple[bytes, bytes]:
    """Return (file_key, file_nonce); WrongPassword on tag mismatch."""
    raw = _unb64url(bundle.strip())
    if len(raw) < SHARE_HDR_SIZE:
        raise ValidationError("Share bundle is too small or corrupt")
    magic, ver, salt, nonce = struct.unpack(SHARE_HDR_FMT, raw[:SHARE_HDR_SIZE])
    if magic != SHARE_MAGIC:
        raise ValidationError("Invalid share bundle magic")
    if ver != SHARE_VERSION:
        raise ValidationError("Unsupported share bundle version")
    share_key = derive_share_key(password, salt)
    payload = aead_decrypt(share_key, nonce, raw[SHARE_HDR_SIZE:], aad=raw[:SHARE_HDR_SIZE], failure=WrongPassword)
    if len(payload) != AES_KEY_SIZE + AEAD_NONCE_SIZE:
        raise ValidationError("Share payload has unexpected length")
    return payload[:AES_KEY_SIZE], payload[AES_KEY_SIZE:]


def decrypt_shared_file(ciphertext: bytes, bundle: str, password: str) -> bytes:
    file_key, file_nonce = decrypt_share_payload(bundle, password)
    return filecipher.decrypt(ciphertext, file_key, file_nonce)


def build_share_link(page_url: str, bundle: str) -> str:
    """Append the bundle as a fragment parameter; any existing fragment is replaced."""
    base = page_url.split("#", 1)[0]
    return f"{base}#{urlencode({FRAGMENT_PARAM: bundle})}"


def parse_share_link(link: str) -> str:
    fragment = urlsplit(link).fragment
    values = parse_qs(fragment).get(FRAGMENT_PARAM)
    if not values:
        raise ValidationError("Share link has no key in its fragment")
    return values[0]
