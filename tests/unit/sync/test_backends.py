"""Tests for the storage backends."""

import pytest

from omnicare_sync.sync.backends import (
    CONFLICTS,
    RECORDS,
    InMemoryStorageBackend,
    SQLiteStorageBackend,
    StorageError,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_backend(request):
    if request.param == "memory":
        backend = InMemoryStorageBackend()
    else:
        backend = SQLiteStorageBackend(database=":memory:")
    yield backend
    backend.close()


class TestBackendContract:
    """Behavior shared by every backend."""

    def test_put_get_delete(self, any_backend):
        any_backend.put(RECORDS, "Patient/p1", {"ciphertext": "abc"})

        assert any_backend.get(RECORDS, "Patient/p1") == {"ciphertext": "abc"}
        assert any_backend.delete(RECORDS, "Patient/p1") is True
        assert any_backend.delete(RECORDS, "Patient/p1") is False
        assert any_backend.get(RECORDS, "Patient/p1") is None

    def test_namespaces_are_isolated(self, any_backend):
        any_backend.put(RECORDS, "x", {"v": 1})
        any_backend.put(CONFLICTS, "x", {"v": 2})

        assert any_backend.get(RECORDS, "x") == {"v": 1}
        assert [key for key, _ in any_backend.items(CONFLICTS)] == ["x"]

    def test_snapshot_and_restore_replace_everything(self, any_backend):
        any_backend.put(RECORDS, "a", {"v": 1})
        snapshot = any_backend.snapshot()
        any_backend.put(RECORDS, "b", {"v": 2})

        any_backend.restore(snapshot)

        assert [key for key, _ in any_backend.items(RECORDS)] == ["a"]

    def test_clear(self, any_backend):
        any_backend.put(RECORDS, "a", {"v": 1})

        any_backend.clear()

        assert any_backend.items(RECORDS) == []


class TestInMemoryBackend:
    """Copy semantics."""

    def test_returned_rows_are_copies(self):
        backend = InMemoryStorageBackend()
        backend.put(RECORDS, "a", {"v": [1]})

        backend.get(RECORDS, "a")["v"].append(2)

        assert backend.get(RECORDS, "a") == {"v": [1]}


class TestSQLiteBackend:
    """File-backed storage."""

    def test_rows_survive_reopen(self, tmp_path):
        backend = SQLiteStorageBackend(storage_path=str(tmp_path))
        backend.put(RECORDS, "Patient/p1", {"ciphertext": "abc"})
        backend.close()

        reopened = SQLiteStorageBackend(storage_path=str(tmp_path))

        assert reopened.get(RECORDS, "Patient/p1") == {"ciphertext": "abc"}
        reopened.close()

    def test_closed_backend_raises(self):
        backend = SQLiteStorageBackend(database=":memory:")
        backend.close()

        with pytest.raises(StorageError):
            backend.get(RECORDS, "a")
