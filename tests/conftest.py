"""
Pytest fixtures and test configuration for loreweaver tests.
"""

from typing import Any, Dict, Optional

import pytest

from loreweaver.storage.backends import MemoryBackend
from loreweaver.storage.ciphers import ObfuscatingCipher
from loreweaver.storage.connectivity import StaticConnectivity
from loreweaver.storage.local import LocalStore
from loreweaver.storage.remote import RemoteStore
from loreweaver.sync.manager import SyncManager
from loreweaver.sync.resolver import ConflictResolver

USER_ID = "user-1"


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def local_store(temp_db):
    """Create a LocalStore instance for testing."""
    store = LocalStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def connectivity():
    return StaticConnectivity(online=True)


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def remote(backend, connectivity, sleeps):
    return RemoteStore(
        backend,
        connectivity,
        device_id="device-a",
        user_id=USER_ID,
        cipher=ObfuscatingCipher("test-secret"),
        sleep=sleeps.append,
    )


@pytest.fixture
def resolver():
    return ConflictResolver()


@pytest.fixture
def manager(local_store, remote):
    """SyncManager with sync disabled (the default)."""
    mgr = SyncManager(local_store, remote)
    yield mgr
    mgr.close()


@pytest.fixture
def enabled_manager(manager):
    """SyncManager with sync enabled and an empty first pass behind it."""
    manager.update_settings(enabled=True)
    return manager


@pytest.fixture
def make_doc():
    """Factory for sync-wrapped documents."""

    def _make(
        doc_id: str,
        version: int = 1,
        vector: Optional[str] = None,
        device: str = "device-x",
        **fields: Any,
    ) -> Dict[str, Any]:
        return {
            "id": doc_id,
            **fields,
            "_sync": {
                "last_modified": "2024-01-01T00:00:00+00:00",
                "modified_by": USER_ID,
                "version": version,
                "device_id": device,
                "change_vector": vector or f"{device}_{doc_id}_{version}",
            },
        }

    return _make
