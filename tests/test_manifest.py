"""Tests for the manifest session: lifecycle, mutations and copy jobs."""

import json

import pytest

from opaquedrive.crypto import filecipher
from opaquedrive.crypto.aead import open_sealed
from opaquedrive.crypto.hash import derive_master_key
from opaquedrive.crypto.keys import generate_keypair
from opaquedrive.crypto.share import decrypt_shared_file
from opaquedrive.storage.blobstore import LocalBlobStore
from opaquedrive.storage.manifest import CopyProgress, ManifestStore, SessionState
from opaquedrive.utils.dataModels import MANIFEST_KEY, FileEntry
from opaquedrive.utils.errors import (
    AuthenticationFailure,
    NotFoundError,
    StateError,
    TransportError,
    ValidationError,
    VersionConflict,
)
from opaquedrive.utils.helper import content_key, now_iso, parse_iso


def _entry(file_id, name, folder_id=None):
    fk = filecipher.generate_file_key()
    return FileEntry(
        file_id=file_id,
        file_name=name,
        size=0,
        mime_type="text/plain",
        uploaded_at=now_iso(),
        file_key=fk.key,
        nonce=fk.nonce,
        folder_id=folder_id,
    )


class FlakyStore(LocalBlobStore):
    """LocalBlobStore whose writes or reads can be made to fail."""

    fail_puts = False
    fail_gets = False
    fail_put_after = None

    def put(self, key, data, if_match=None):
        if self.fail_puts:
            raise TransportError("upload failed")
        if self.fail_put_after is not None:
            if self.fail_put_after == 0:
                raise TransportError("upload failed")
            self.fail_put_after -= 1
        return super().put(key, data, if_match=if_match)

    def get(self, key):
        if self.fail_gets:
            raise TransportError("download failed")
        return super().get(key)


class TestLifecycle:
    def test_new_store_is_locked(self, blob_store):
        store = ManifestStore(blob_store)

        assert store.state is SessionState.LOCKED
        assert not store.exists()
        with pytest.raises(StateError):
            store.list_files()
        with pytest.raises(StateError):
            store.create_folder("Docs")

    def test_initialize_writes_sealed_empty_manifest(self, blob_store, master_key):
        store = ManifestStore(blob_store)
        manifest = store.initialize(master_key)

        assert store.is_unlocked
        assert store.exists()
        assert manifest.files == [] and manifest.folders == []
        doc = json.loads(open_sealed(master_key, blob_store.get(MANIFEST_KEY)))
        assert doc["files"] == [] and doc["folders"] == []

    def test_stored_manifest_reveals_no_names(self, session, blob_store):
        session.create_folder("TaxReturns2024")
        session.add_file(_entry("f1", "passport-scan.pdf"))

        raw = blob_store.get(MANIFEST_KEY)
        assert b"TaxReturns2024" not in raw
        assert b"passport-scan" not in raw

    def test_unlock_round_trip(self, session, blob_store, master_key):
        folder = session.create_folder("Docs")
        session.add_file(_entry("f1", "a.txt", folder.id))
        expected = session.manifest.snapshot()

        other = ManifestStore(blob_store)
        assert other.unlock(master_key) == expected

    def test_unlock_with_private_key_alone(self, session, blob_store, keypair):
        session.add_file(_entry("f1", "a.txt"))

        fresh = ManifestStore(blob_store)
        fresh.unlock(derive_master_key(keypair.private_key))
        assert [f.file_id for f in fresh.list_files()] == ["f1"]

    def test_unlock_with_other_private_key_fails(self, session, blob_store):
        stranger = derive_master_key(generate_keypair().private_key)
        store = ManifestStore(blob_store)

        with pytest.raises(AuthenticationFailure) as excinfo:
            store.unlock(stranger)
        assert "match" in str(excinfo.value)
        assert store.state is SessionState.LOCKED

    def test_unlock_tampered_manifest_fails(self, session, blob_store, master_key):
        raw = bytearray(blob_store.get(MANIFEST_KEY))
        raw[len(raw) // 2] ^= 0x01
        blob_store.put(MANIFEST_KEY, bytes(raw))

        with pytest.raises(AuthenticationFailure):
            ManifestStore(blob_store).unlock(master_key)

    def test_unlock_missing_manifest_is_not_found(self, blob_store, master_key):
        with pytest.raises(NotFoundError):
            ManifestStore(blob_store).unlock(master_key)

    def test_lock_purges_state(self, session):
        session.lock()

        assert session.state is SessionState.LOCKED
        with pytest.raises(StateError):
            session.master_key
        with pytest.raises(StateError):
            session.add_file(_entry("f1", "a.txt"))

    def test_context_manager_locks_on_exit(self, blob_store, master_key):
        with ManifestStore(blob_store) as store:
            store.initialize(master_key)
            assert store.is_unlocked
        assert not store.is_unlocked

    def test_initialize_overwrites_existing_manifest(self, session, blob_store, master_key):
        session.add_file(_entry("f1", "a.txt"))

        ManifestStore(blob_store).initialize(master_key)
        assert ManifestStore(blob_store).unlock(master_key).files == []

    def test_repr_has_no_key_material(self, session, master_key):
        assert master_key.hex() not in repr(session)


class TestSync:
    def test_sync_picks_up_other_session_changes(self, session, blob_store, master_key):
        other = ManifestStore(blob_store)
        other.unlock(master_key)
        other.add_file(_entry("f1", "a.txt"))

        synced = session.sync()
        assert [f.file_id for f in synced.files] == ["f1"]
        assert [f.file_id for f in session.list_files()] == ["f1"]

    def test_sync_soft_fails_with_previous_state(self, tmp_path, master_key):
        store = FlakyStore(tmp_path / "repo")
        session = ManifestStore(store)
        session.initialize(master_key)
        session.add_file(_entry("f1", "a.txt"))
        before = session.manifest

        store.fail_gets = True
        assert session.sync() is before
        assert session.is_unlocked

    def test_sync_when_locked_returns_none(self, blob_store):
        assert ManifestStore(blob_store).sync() is None


class TestFiles:
    def test_add_then_remove_advances_updated_at(self, session):
        created = session.manifest.updated_at
        session.add_file(_entry("f1", "a.txt"))
        after_add = session.manifest.updated_at
        session.remove_file("f1")

        assert session.list_files() == []
        assert parse_iso(after_add) > parse_iso(created)
        assert parse_iso(session.manifest.updated_at) > parse_iso(after_add)

    def test_duplicate_file_id_rejected(self, session):
        session.add_file(_entry("f1", "a.txt"))
        with pytest.raises(ValidationError):
            session.add_file(_entry("f1", "b.txt"))

    def test_add_into_unknown_folder_rejected(self, session):
        with pytest.raises(NotFoundError):
            session.add_file(_entry("f1", "a.txt", folder_id="nope"))
        assert session.list_files() == []

    def test_missing_ids_raise_not_found(self, session):
        with pytest.raises(NotFoundError):
            session.remove_file("nope")
        with pytest.raises(NotFoundError):
            session.rename_file("nope", "x")
        with pytest.raises(NotFoundError):
            session.toggle_favorite("nope")
        with pytest.raises(NotFoundError):
            session.get_file("nope")

    def test_remove_files_batch_ignores_unknown(self, session):
        for i in range(3):
            session.add_file(_entry(f"f{i}", f"{i}.txt"))

        removed = session.remove_files(["f0", "f2", "ghost"])
        assert sorted(removed) == ["f0", "f2"]
        assert [f.file_id for f in session.list_files()] == ["f1"]

    def test_rename_file_persists(self, session, blob_store, master_key):
        session.add_file(_entry("f1", "a.txt"))
        session.rename_file("f1", "b.txt")

        assert ManifestStore(blob_store).unlock(master_key).files[0].file_name == "b.txt"

    def test_toggle_favorite_is_an_involution(self, session):
        session.add_file(_entry("f1", "a.txt"))

        assert session.toggle_favorite("f1") is True
        assert session.favorite_files()[0].file_id == "f1"
        assert session.toggle_favorite("f1") is False
        assert session.get_file("f1").is_favorite is False
        assert session.favorite_files() == []

    def test_list_files_newest_first(self, session):
        old = _entry("old", "old.txt")
        old.uploaded_at = "2020-01-01T00:00:00.000000Z"
        session.add_file(old)
        session.add_file(_entry("new", "new.txt"))

        assert [f.file_id for f in session.list_files()] == ["new", "old"]

    def test_move_files(self, session):
        docs = session.create_folder("Docs")
        session.add_file(_entry("f1", "a.txt"))
        session.add_file(_entry("f2", "b.txt"))

        assert session.move_files(["f1", "f2", "ghost"], docs.id) == 2
        assert {f.file_id for f in session.list_files_in_folder(docs.id)} == {"f1", "f2"}
        session.move_file("f1", None)
        assert [f.file_id for f in session.list_files_in_folder(None)] == ["f1"]

    def test_move_to_unknown_folder_rejected(self, session):
        session.add_file(_entry("f1", "a.txt"))
        with pytest.raises(NotFoundError):
            session.move_file("f1", "nope")

    def test_failed_upload_rolls_back_memory(self, tmp_path, master_key):
        store = FlakyStore(tmp_path / "repo")
        session = ManifestStore(store)
        session.initialize(master_key)
        session.add_file(_entry("f1", "a.txt"))
        updated = session.manifest.updated_at

        store.fail_puts = True
        with pytest.raises(TransportError):
            session.rename_file("f1", "b.txt")

        assert session.get_file("f1").file_name == "a.txt"
        assert session.manifest.updated_at == updated


class TestFolders:
    def test_nested_folders(self, session):
        docs = session.create_folder("Docs")
        sub = session.create_folder("Sub", parent_id=docs.id)

        assert session.list_folders(parent_id=docs.id) == [sub]
        assert session.list_folders() == [docs]

    def test_create_folder_with_color(self, session):
        folder = session.create_folder("Pics", color="#00ff00")
        assert session.get_folder(folder.id).color == "#00ff00"

    def test_create_folder_under_unknown_parent_rejected(self, session):
        with pytest.raises(NotFoundError):
            session.create_folder("Sub", parent_id="nope")

    def test_empty_names_rejected(self, session):
        with pytest.raises(ValidationError):
            session.create_folder("")

    def test_rename_folder(self, session):
        docs = session.create_folder("Docs")
        session.rename_folder(docs.id, "Papers")

        assert session.get_folder(docs.id).name == "Papers"
        with pytest.raises(NotFoundError):
            session.rename_folder("nope", "x")

    def test_delete_folder_moves_files_to_root(self, session):
        docs = session.create_folder("Docs")
        session.add_file(_entry("f1", "a.txt", docs.id))
        session.add_file(_entry("f2", "b.txt", docs.id))

        assert session.delete_folder(docs.id) == []
        assert session.list_folders() == []
        assert {f.file_id for f in session.list_files_in_folder(None)} == {"f1", "f2"}
        assert session.get_file("f1").folder_id is None

    def test_delete_folder_with_contents(self, session):
        docs = session.create_folder("Docs")
        session.add_file(_entry("f1", "a.txt", docs.id))
        session.add_file(_entry("f2", "b.txt"))

        assert session.delete_folder(docs.id, delete_contents=True) == ["f1"]
        assert [f.file_id for f in session.list_files()] == ["f2"]

    def test_delete_folder_reparents_children(self, session):
        docs = session.create_folder("Docs")
        sub = session.create_folder("Sub", parent_id=docs.id)
        leaf = session.create_folder("Leaf", parent_id=sub.id)

        session.delete_folder(sub.id)
        assert session.get_folder(leaf.id).parent_id == docs.id

    def test_delete_unknown_folder(self, session):
        with pytest.raises(NotFoundError):
            session.delete_folder("nope")

    def test_move_folder(self, session):
        a = session.create_folder("A")
        b = session.create_folder("B")
        session.move_folder(b.id, a.id)

        assert session.list_folders(a.id) == [session.get_folder(b.id)]

    def test_move_folder_into_descendant_rejected(self, session):
        a = session.create_folder("A")
        b = session.create_folder("B", parent_id=a.id)

        with pytest.raises(ValidationError):
            session.move_folder(a.id, b.id)
        with pytest.raises(ValidationError):
            session.move_folder(a.id, a.id)
        assert session.get_folder(a.id).parent_id is None

    def test_move_folder_under_existing_cycle_rejected(self, session):
        x = session.create_folder("X")
        y = session.create_folder("Y", parent_id=x.id)
        c = session.create_folder("C")
        # a hierarchy loop written by some other client
        session.get_folder(x.id).parent_id = y.id

        with pytest.raises(ValidationError):
            session.move_folder(c.id, x.id)
        assert session.get_folder(c.id).parent_id is None


class TestContent:
    def test_upload_and_download(self, session, blob_store):
        entry = session.upload_file(b"hello world", "hello.txt")

        assert entry.mime_type == "text/plain"
        assert entry.size == 11
        assert b"hello world" not in blob_store.get(content_key(entry.file_id))
        assert session.download_file(entry.file_id) == b"hello world"

    def test_tampered_content_is_detected(self, session, blob_store):
        entry = session.upload_file(b"hello world", "hello.txt")
        raw = bytearray(blob_store.get(content_key(entry.file_id)))
        raw[0] ^= 0x01
        blob_store.put(content_key(entry.file_id), bytes(raw))

        with pytest.raises(AuthenticationFailure):
            session.download_file(entry.file_id)

    def test_share_file_opens_with_password(self, session, blob_store):
        entry = session.upload_file(b"for a friend", "note.txt")
        bundle = session.share_file(entry.file_id, "friend-pw")

        ciphertext = blob_store.get(content_key(entry.file_id))
        assert decrypt_shared_file(ciphertext, bundle, "friend-pw") == b"for a friend"


class TestCopy:
    def test_copy_into_same_folder_adds_suffix(self, session, blob_store):
        entry = session.upload_file(b"abc", "a.txt")

        job = session.copy_files_to_folder([entry.file_id], None)
        events = list(job)

        assert events == [CopyProgress(1, 1, entry.file_id, job.new_file_ids[0])]
        copy = session.get_file(job.new_file_ids[0])
        assert copy.file_name == "a (copy).txt"
        assert copy.file_id != entry.file_id
        assert copy.file_key == entry.file_key and copy.nonce == entry.nonce
        assert blob_store.get(content_key(copy.file_id)) == blob_store.get(content_key(entry.file_id))
        assert session.download_file(copy.file_id) == b"abc"

    def test_copy_into_other_folder_keeps_name(self, session):
        docs = session.create_folder("Docs")
        entry = session.upload_file(b"abc", "a.txt")

        new_ids = session.copy_files_to_folder([entry.file_id], docs.id).run()

        assert session.get_file(new_ids[0]).file_name == "a.txt"
        assert session.get_file(new_ids[0]).folder_id == docs.id

    def test_progress_is_incremental_and_skips_unknown(self, session):
        a = session.upload_file(b"1", "1.txt")
        b = session.upload_file(b"2", "2.txt")

        events = list(session.copy_files_to_folder([a.file_id, "ghost", b.file_id]))

        assert [(e.completed, e.total) for e in events] == [(1, 3), (2, 3), (3, 3)]
        assert events[1].new_file_id is None
        assert len(session.list_files()) == 4

    def test_each_copy_is_durable(self, session, blob_store, master_key):
        a = session.upload_file(b"1", "1.txt")
        b = session.upload_file(b"2", "2.txt")

        job = session.copy_files_to_folder([a.file_id, b.file_id])
        next(iter(job))

        assert len(ManifestStore(blob_store).unlock(master_key).files) == 3
        assert job.completed == 1 and not job.done

    def test_cancelled_job_resumes(self, session):
        ids = [session.upload_file(bytes([i]), f"{i}.txt").file_id for i in range(3)]

        job = session.copy_files_to_folder(ids)
        for progress in job:
            if progress.completed == 1:
                break
        assert len(job.new_file_ids) == 1

        rest = list(job)
        assert [p.completed for p in rest] == [2, 3]
        assert job.done
        assert len(session.list_files()) == 6

    def test_mid_batch_failure_keeps_committed_copies(self, tmp_path, master_key):
        store = FlakyStore(tmp_path / "repo")
        session = ManifestStore(store)
        session.initialize(master_key)
        a = session.upload_file(b"1", "1.txt")
        b = session.upload_file(b"2", "2.txt")

        # first item: blob + manifest; second item fails on its blob write
        store.fail_put_after = 2
        job = session.copy_files_to_folder([a.file_id, b.file_id])
        with pytest.raises(TransportError):
            list(job)

        assert job.completed == 1
        assert len(ManifestStore(store).unlock(master_key).files) == 3

    def test_copy_to_unknown_folder_rejected(self, session):
        with pytest.raises(NotFoundError):
            session.copy_files_to_folder([], "nope")


class TestVersionCheck:
    def test_default_is_last_write_wins(self, session, blob_store, master_key):
        other = ManifestStore(blob_store)
        other.unlock(master_key)
        other.add_file(_entry("theirs", "theirs.txt"))

        session.add_file(_entry("mine", "mine.txt"))

        files = ManifestStore(blob_store).unlock(master_key).files
        assert [f.file_id for f in files] == ["mine"]

    def test_conditional_write_detects_concurrent_change(self, blob_store, master_key):
        first = ManifestStore(blob_store, check_version=True)
        first.initialize(master_key)
        second = ManifestStore(blob_store, check_version=True)
        second.unlock(master_key)

        second.add_file(_entry("theirs", "theirs.txt"))
        with pytest.raises(VersionConflict):
            first.add_file(_entry("mine", "mine.txt"))
        assert first.list_files() == []

        first.sync()
        first.add_file(_entry("mine", "mine.txt"))
        assert {f.file_id for f in ManifestStore(blob_store).unlock(master_key).files} == {"theirs", "mine"}
