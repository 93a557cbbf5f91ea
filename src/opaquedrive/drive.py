#!/usr/bin/env python3
"""
OpaqueDrive - end-to-end encrypted files on storage you do not trust.

The storage operator sees only opaque blobs: no plaintext, no file names, no
folder structure. Everything is derived from one Ed25519 key pair that stays
on the user's device.

Key hierarchy:
    private key (32 bytes, Ed25519 seed)
      -> HKDF-SHA256(salt=0^16, info="manifest-encryption") -> Kmaster
           seals the manifest: every file entry, folder and per-file key
      per file: random AES-256 key + 96-bit nonce, kept inside the manifest
           seals that file's content blob

Storage layout (any BlobStore; LocalBlobStore shown):
  repo/
    .manifest.enc        # nonce(12) || AES-256-GCM(manifest JSON) || tag
    files/
      <uuid>             # AES-256-GCM(file content) || tag

Commands:
  keygen <out>           Generate a key pair and write its (optionally password-protected) backup
  pubkey                 Print the public key of a backup
  init                   Create an empty manifest (refuses to overwrite without --force)
  ls / add / extract     List, encrypt-and-add, decrypt-by-id
  rm / rename / fav      Remove, rename, toggle favorite
  mkdir / rmdir          Create or delete folders
  mv / cp                Move or copy files between folders (copy never decrypts)
  share / open-share     Password-wrap a file key for a share link, and open one

Security choices:
  - AEAD: AES-256-GCM via cryptography.hazmat
  - Password wrapping (backups, share links): PBKDF2-HMAC-SHA256, 100k iterations
  - Concurrent writers: last-write-wins on the whole manifest
"""
from __future__ import annotations

import sys

from opaquedrive.ui.cli import build_parser
from opaquedrive.utils.errors import OpaqueDriveError
from opaquedrive.utils.logging_config import setup_logging


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging("opaquedrive", args.log_level)
    try:
        args.func(args)
    except OpaqueDriveError as e:
        print(f"[!] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
