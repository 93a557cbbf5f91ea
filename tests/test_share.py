"""Tests for password-wrapped share bundles and share links."""

import base64

import pytest

from opaquedrive.crypto import filecipher
from opaquedrive.crypto.share import (
    build_share_link,
    decrypt_share_payload,
    decrypt_shared_file,
    derive_share_key,
    encrypt_share_payload,
    parse_share_link,
)
from opaquedrive.crypto.hash import derive_password_key
from opaquedrive.utils.errors import AuthenticationFailure, ValidationError, WrongPassword


@pytest.fixture
def file_key():
    return filecipher.generate_file_key()


def test_share_key_matches_backup_kdf():
    salt = b"\x07" * 16
    assert derive_share_key("secret", salt) == derive_password_key("secret", salt)


def test_bundle_round_trip(file_key):
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")

    assert decrypt_share_payload(bundle, "s3cret") == (file_key.key, file_key.nonce)


def test_bundle_is_url_safe_and_hides_key(file_key):
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")

    assert all(c.isalnum() or c in "-_" for c in bundle)
    assert base64.urlsafe_b64encode(file_key.key).decode().rstrip("=") not in bundle


def test_bundles_embed_fresh_salt_and_nonce(file_key):
    a = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")
    b = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")

    assert a != b


def test_wrong_password_fails(file_key):
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")

    with pytest.raises(WrongPassword):
        decrypt_share_payload(bundle, "guess")


def test_tampered_header_fails(file_key):
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")
    raw = bytearray(base64.urlsafe_b64decode(bundle + "=" * (-len(bundle) % 4)))
    raw[10] ^= 0x01  # inside the salt
    tampered = base64.urlsafe_b64encode(bytes(raw)).decode().rstrip("=")

    with pytest.raises(AuthenticationFailure):
        decrypt_share_payload(tampered, "s3cret")


def test_garbage_bundle_is_validation_error():
    with pytest.raises(ValidationError):
        decrypt_share_payload("AAAA", "pw")
    with pytest.raises(ValidationError):
        decrypt_share_payload(base64.urlsafe_b64encode(b"XXXX" + b"\x01" + b"\x00" * 60).decode(), "pw")


def test_decrypt_shared_file(file_key):
    ciphertext = filecipher.encrypt(b"shared content", file_key.key, file_key.nonce)
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")

    assert decrypt_shared_file(ciphertext, bundle, "s3cret") == b"shared content"


def test_share_link_keeps_bundle_in_fragment(file_key):
    bundle = encrypt_share_payload(file_key.key, file_key.nonce, "s3cret")
    link = build_share_link("https://example.com/s?file=abc#old", bundle)

    base, fragment = link.split("#", 1)
    assert base == "https://example.com/s?file=abc"
    assert bundle not in base
    assert parse_share_link(link) == bundle


def test_share_link_without_key_is_rejected():
    with pytest.raises(ValidationError):
        parse_share_link("https://example.com/s#other=1")
