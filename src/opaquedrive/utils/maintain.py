import argparse

from pathlib import Path

from opaquedrive.crypto.share import build_share_link, decrypt_shared_file, parse_share_link
from opaquedrive.utils.core import unlock
from opaquedrive.utils.helper import content_key


def cmd_rm(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        store.remove_file(args.id)
        # purge only once the manifest no longer references the blob
        store.blob_store.delete(content_key(args.id))
    print(f"[+] Removed id={args.id}")


def cmd_rename(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        store.rename_file(args.id, args.name)
    print(f"[+] Renamed id={args.id} -> {args.name}")


def cmd_fav(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        state = store.toggle_favorite(args.id)
    print(f"[+] {'Starred' if state else 'Unstarred'} id={args.id}")


def cmd_mkdir(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        folder = store.create_folder(args.name, parent_id=args.parent, color=args.color)
    print(f"[+] Created folder {folder.name} as id={folder.id}")


def cmd_rmdir(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        deleted = store.delete_folder(args.id, delete_contents=args.contents)
        for file_id in deleted:
            store.blob_store.delete(content_key(file_id))
    if args.contents:
        print(f"[+] Deleted folder id={args.id} and {len(deleted)} files")
    else:
        print(f"[+] Deleted folder id={args.id}; its files moved to root")


def cmd_mv(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        moved = store.move_files(args.ids, args.folder)
    print(f"[+] Moved {moved} files to {args.folder or 'root'}")


def cmd_cp(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        job = store.copy_files_to_folder(args.ids, args.folder)
        for progress in job:
            if progress.new_file_id:
                print(f"    [{progress.completed}/{progress.total}] {progress.source_id} -> {progress.new_file_id}")
            else:
                print(f"    [{progress.completed}/{progress.total}] {progress.source_id} skipped (no such id)")
    print(f"[+] Copied {len(job.new_file_ids)} files to {args.folder or 'root'}")


def cmd_share(args: argparse.Namespace) -> None:
    with unlock(args) as store:
        entry = store.get_file(args.id)
        bundle = store.share_file(args.id, args.share_password)
    print(f"[+] Share bundle for {entry.file_name} (blob {content_key(entry.file_id)}):")
    if args.page_url:
        print(build_share_link(args.page_url, bundle))
    else:
        print(bundle)


def cmd_open_share(args: argparse.Namespace) -> None:
    bundle = parse_share_link(args.bundle) if "#" in args.bundle else args.bundle
    ciphertext = Path(args.blob).read_bytes()
    plaintext = decrypt_shared_file(ciphertext, bundle, args.share_password)
    Path(args.out).write_bytes(plaintext)
    print(f"[+] Decrypted shared file -> {args.out}")
