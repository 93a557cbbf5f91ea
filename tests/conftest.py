"""Shared pytest fixtures for all tests."""

import pytest

from opaquedrive.crypto.hash import derive_master_key
from opaquedrive.crypto.keys import generate_keypair
from opaquedrive.storage.blobstore import LocalBlobStore
from opaquedrive.storage.manifest import ManifestStore


@pytest.fixture
def keypair():
    return generate_keypair()


@pytest.fixture
def master_key(keypair):
    return derive_master_key(keypair.private_key)


@pytest.fixture
def blob_store(tmp_path):
    """
    Directory-backed blob store rooted in a temporary repo.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        LocalBlobStore instance
    """
    return LocalBlobStore(tmp_path / "repo")


@pytest.fixture
def session(blob_store, master_key):
    """
    Unlocked session over a freshly initialized, empty manifest.
    """
    store = ManifestStore(blob_store)
    store.initialize(master_key)
    yield store
    store.lock()
