import argparse
import mimetypes
import os
import sys

from pathlib import Path

from opaquedrive.crypto.hash import derive_master_key
from opaquedrive.crypto.keys import KeyPair, export_backup, generate_keypair, import_backup
from opaquedrive.storage.blobstore import LocalBlobStore
from opaquedrive.storage.manifest import ManifestStore
from opaquedrive.utils.errors import GENERIC_AUTH_MESSAGE, AuthenticationFailure, WrongPassword

UNLOCK_FAILED = f"{GENERIC_AUTH_MESSAGE}. You may have configured a different storage."


def _require(value, what: str, env: str) -> str:
    if not value:
        print(f"[!] No {what} given. Pass --{what} or set {env}.")
        sys.exit(1)
    return value


def load_keypair(args: argparse.Namespace) -> KeyPair:
    keyfile = Path(_require(args.keyfile, "keyfile", "OPAQUEDRIVE_KEYFILE"))
    if not keyfile.is_file():
        print(f"[!] Key file not found: {keyfile}")
        sys.exit(1)
    try:
        return import_backup(keyfile.read_text(encoding="utf-8"), args.key_password)
    except WrongPassword:
        print("[!] Failed to decrypt keys. Wrong password?")
        sys.exit(1)


def open_store(args: argparse.Namespace) -> ManifestStore:
    repo = Path(_require(args.repo, "repo", "OPAQUEDRIVE_REPO"))
    return ManifestStore(LocalBlobStore(repo))


def unlock(args: argparse.Namespace) -> ManifestStore:
    """Unlock the repo's manifest with the key pair from --keyfile."""
    pair = load_keypair(args)
    store = open_store(args)
    try:
        store.unlock(derive_master_key(pair.private_key))
    except AuthenticationFailure:
        print(f"[!] {UNLOCK_FAILED}")
        sys.exit(1)
    return store


def cmd_keygen(args: argparse.Namespace) -> None:
    out = Path(args.out)
    if out.exists() and not args.force:
        print(f"[!] {out} exists. Use --force to overwrite.")
        sys.exit(1)
    pair = generate_keypair()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(export_backup(pair, args.key_password), encoding="utf-8")
    try:
        os.chmod(out, 0o600)
    except OSError:
        pass
    kind = "password-protected" if args.key_password else "plaintext"
    print(f"[+] Wrote {kind} key backup to {out}")
    print(f"    public key: {pair.public_key.hex()}")


def cmd_pubkey(args: argparse.Namespace) -> None:
    print(load_keypair(args).public_key.hex())


def cmd_init(args: argparse.Namespace) -> None:
    pair = load_keypair(args)
    store = open_store(args)
    if store.exists() and not args.force:
        print(f"[!] {args.repo} already holds a manifest. Use --force to overwrite.")
        sys.exit(1)
    store.initialize(derive_master_key(pair.private_key))
    store.lock()
    print(f"[+] Initialized encrypted storage at {args.repo}")


def cmd_add(args: argparse.Namespace) -> None:
    src = Path(args.path)
    if not src.is_file():
        print(f"[!] Not a file: {src}")
        sys.exit(1)

    with unlock(args) as store:
        mime_type = mimetypes.guess_type(src.name)[0]
        entry = store.upload_file(src.read_bytes(), src.name, mime_type=mime_type, folder_id=args.folder)
    print(f"[+] Encrypted and added {src.name} as id={entry.file_id}")


def cmd_ls(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        folders = store.list_folders(args.folder)
        files = store.list_files() if args.all else store.list_files_in_folder(args.folder)
        if not folders and not files:
            print("(empty)")
            return
        for folder in folders:
            print(f"{folder.id}\t{folder.name}/")
        for f in files:
            star = "*" if f.is_favorite else " "
            print(f"{f.file_id}\t{star} {f.file_name}\t{f.size} bytes\t{f.mime_type or ''}")


def cmd_extract(args: argparse.Namespace) -> None:
    out = Path(args.out)
    with unlock(args) as store:
        entry = store.get_file(args.id)
        plaintext = store.download_file(args.id)
    out.write_bytes(plaintext)
    print(f"[+] Extracted {entry.file_name} -> {out}")
