import argparse
import os

from opaquedrive.utils.core import cmd_add, cmd_extract, cmd_init, cmd_keygen, cmd_ls, cmd_pubkey
from opaquedrive.utils.maintain import (
    cmd_cp,
    cmd_fav,
    cmd_mkdir,
    cmd_mv,
    cmd_open_share,
    cmd_rename,
    cmd_rm,
    cmd_rmdir,
    cmd_share,
)
from opaquedrive.utils.logging_config import DEFAULT_LOG_LEVEL, LOG_LEVEL_ENV


def _keys_parent() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument("--keyfile", default=os.environ.get("OPAQUEDRIVE_KEYFILE"),
                   help="Key backup file (default: $OPAQUEDRIVE_KEYFILE)")
    p.add_argument("--key-password", help="Password protecting the key backup")
    return p


def _repo_parent() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False, parents=[_keys_parent()])
    p.add_argument("--repo", default=os.environ.get("OPAQUEDRIVE_REPO"),
                   help="Storage directory (default: $OPAQUEDRIVE_REPO)")
    return p


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="End-to-end encrypted file storage on untrusted blob storage")
    p.add_argument("--log-level", default=None, help=f"DEBUG, INFO, WARNING or ERROR (default: ${LOG_LEVEL_ENV} or {DEFAULT_LOG_LEVEL})")
    sub = p.add_subparsers(dest="cmd", required=True)
    keys = _keys_parent()
    repo = _repo_parent()

    p_keygen = sub.add_parser("keygen", help="Generate a key pair and write its backup file")
    p_keygen.add_argument("out", help="Backup file to write")
    p_keygen.add_argument("--key-password", help="Protect the backup with a password")
    p_keygen.add_argument("--force", action="store_true", help="Overwrite an existing backup file")
    p_keygen.set_defaults(func=cmd_keygen)

    p_pub = sub.add_parser("pubkey", help="Print the public key of a key backup", parents=[keys])
    p_pub.set_defaults(func=cmd_pubkey)

    p_init = sub.add_parser("init", help="Initialize encrypted storage", parents=[repo])
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing manifest")
    p_init.set_defaults(func=cmd_init)

    p_ls = sub.add_parser("ls", help="List a folder (root by default)", parents=[repo])
    p_ls.add_argument("--folder", help="Folder id")
    p_ls.add_argument("--all", action="store_true", help="List every file regardless of folder")
    p_ls.set_defaults(func=cmd_ls)

    p_add = sub.add_parser("add", help="Encrypt and add a file", parents=[repo])
    p_add.add_argument("path", help="Plaintext file to add")
    p_add.add_argument("--folder", help="Destination folder id")
    p_add.set_defaults(func=cmd_add)

    p_ext = sub.add_parser("extract", help="Decrypt a file by id", parents=[repo])
    p_ext.add_argument("id", help="File id (UUID)")
    p_ext.add_argument("out", help="Output plaintext path")
    p_ext.set_defaults(func=cmd_extract)

    p_rm = sub.add_parser("rm", help="Remove a file by id", parents=[repo])
    p_rm.add_argument("id", help="File id (UUID)")
    p_rm.set_defaults(func=cmd_rm)

    p_ren = sub.add_parser("rename", help="Rename a file entry", parents=[repo])
    p_ren.add_argument("id", help="File id (UUID)")
    p_ren.add_argument("name", help="New name")
    p_ren.set_defaults(func=cmd_rename)

    p_fav = sub.add_parser("fav", help="Toggle a file's favorite flag", parents=[repo])
    p_fav.add_argument("id", help="File id (UUID)")
    p_fav.set_defaults(func=cmd_fav)

    p_mkdir = sub.add_parser("mkdir", help="Create a folder", parents=[repo])
    p_mkdir.add_argument("name", help="Folder name")
    p_mkdir.add_argument("--parent", help="Parent folder id")
    p_mkdir.add_argument("--color", help="Folder color")
    p_mkdir.set_defaults(func=cmd_mkdir)

    p_rmdir = sub.add_parser("rmdir", help="Delete a folder", parents=[repo])
    p_rmdir.add_argument("id", help="Folder id (UUID)")
    p_rmdir.add_argument("--contents", action="store_true", help="Delete the folder's files instead of moving them to root")
    p_rmdir.set_defaults(func=cmd_rmdir)

    p_mv = sub.add_parser("mv", help="Move files to a folder", parents=[repo])
    p_mv.add_argument("ids", nargs="+", help="File ids")
    p_mv.add_argument("--folder", help="Destination folder id (root if omitted)")
    p_mv.set_defaults(func=cmd_mv)

    p_cp = sub.add_parser("cp", help="Copy files to a folder", parents=[repo])
    p_cp.add_argument("ids", nargs="+", help="File ids")
    p_cp.add_argument("--folder", help="Destination folder id (root if omitted)")
    p_cp.set_defaults(func=cmd_cp)

    p_share = sub.add_parser("share", help="Wrap a file's key under a share password", parents=[repo])
    p_share.add_argument("id", help="File id (UUID)")
    p_share.add_argument("--share-password", required=True)
    p_share.add_argument("--page-url", help="Download page URL; the bundle is appended as its fragment")
    p_share.set_defaults(func=cmd_share)

    p_open = sub.add_parser("open-share", help="Decrypt a shared file blob")
    p_open.add_argument("bundle", help="Share bundle or share link")
    p_open.add_argument("blob", help="Downloaded ciphertext blob")
    p_open.add_argument("out", help="Output plaintext path")
    p_open.add_argument("--share-password", required=True)
    p_open.set_defaults(func=cmd_open_share)

    return p
