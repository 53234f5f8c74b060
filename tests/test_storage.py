"""
Tests for storage backends and transaction support
"""

import pytest
import threading
from datetime import datetime, timezone

from fintech_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageConflictError, create_storage
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "version": 0,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class StorageContract:
    """Behaviour shared by every backend"""

    def make_storage(self, tmp_path):
        raise NotImplementedError

    @pytest.fixture
    def storage(self, tmp_path):
        storage = self.make_storage(tmp_path)
        yield storage
        storage.close()

    def test_basic_operations(self, storage):
        """Test save, load, exists, load_all, find and count"""
        storage.save("test_table", "test_001", test_data)
        assert storage.load("test_table", "test_001") == test_data

        assert storage.exists("test_table", "test_001")
        assert not storage.exists("test_table", "non_existent")
        assert storage.load("test_table", "non_existent") is None

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"name": "Test Record"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2

    def test_save_overwrites(self, storage):
        storage.save("test_table", "test_001", test_data)
        storage.save("test_table", "test_001", {**test_data, "name": "Renamed"})
        assert storage.load("test_table", "test_001")["name"] == "Renamed"
        assert storage.count("test_table") == 1

    def test_loaded_records_are_copies(self, storage):
        storage.save("test_table", "test_001", test_data)
        loaded = storage.load("test_table", "test_001")
        loaded["name"] = "Mutated"
        assert storage.load("test_table", "test_001")["name"] == "Test Record"

    def test_compare_and_swap(self, storage):
        """Conditional write succeeds only when the guard matches"""
        storage.save("test_table", "test_001", test_data)

        updated = {**test_data, "amount": "50.50", "version": 1}
        assert storage.compare_and_swap("test_table", "test_001", {"version": 0}, updated)
        assert storage.load("test_table", "test_001")["amount"] == "50.50"

        stale = {**test_data, "amount": "0.00", "version": 1}
        assert not storage.compare_and_swap("test_table", "test_001", {"version": 0}, stale)
        assert storage.load("test_table", "test_001")["amount"] == "50.50"

    def test_compare_and_swap_missing_record(self, storage):
        assert not storage.compare_and_swap("test_table", "missing", {"version": 0}, test_data)

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("test_table", "a", {"id": "a"})
            storage.save("test_table", "b", {"id": "b"})
        assert storage.count("test_table") == 2

    def test_atomic_rollback(self, storage):
        """An exception inside atomic() discards every write"""
        storage.save("test_table", "test_001", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a"})
                storage.compare_and_swap(
                    "test_table", "test_001", {"version": 0}, {**test_data, "version": 1}
                )
                raise RuntimeError("boom")

        assert not storage.exists("test_table", "a")
        assert storage.load("test_table", "test_001")["version"] == 0

    def test_reads_see_own_writes_inside_transaction(self, storage):
        with storage.atomic():
            storage.save("test_table", "a", {"id": "a", "kind": "x"})
            assert storage.load("test_table", "a") == {"id": "a", "kind": "x"}
            assert storage.exists("test_table", "a")
            assert len(storage.find("test_table", {"kind": "x"})) == 1

    def test_nested_atomic(self, storage):
        with storage.atomic():
            storage.save("test_table", "a", {"id": "a"})
            with storage.atomic():
                storage.save("test_table", "b", {"id": "b"})
        assert storage.count("test_table") == 2


class TestInMemoryStorage(StorageContract):
    """Test in-memory backend"""

    def make_storage(self, tmp_path):
        return InMemoryStorage()

    def test_uncommitted_writes_invisible_to_other_threads(self):
        storage = InMemoryStorage()
        seen = []
        staged = threading.Event()
        checked = threading.Event()

        def writer():
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a"})
                staged.set()
                checked.wait(timeout=5)

        thread = threading.Thread(target=writer)
        thread.start()
        staged.wait(timeout=5)
        seen.append(storage.exists("test_table", "a"))
        checked.set()
        thread.join(timeout=5)

        assert seen == [False]
        assert storage.exists("test_table", "a")

    def test_commit_detects_concurrent_modification(self):
        """A compare-and-swap staged in a transaction is re-checked at commit"""
        storage = InMemoryStorage()
        storage.save("test_table", "test_001", test_data)
        staged = threading.Event()
        proceed = threading.Event()
        errors = []

        def writer():
            try:
                with storage.atomic():
                    assert storage.compare_and_swap(
                        "test_table", "test_001", {"version": 0}, {**test_data, "version": 1, "amount": "1"}
                    )
                    staged.set()
                    proceed.wait(timeout=5)
            except StorageConflictError as e:
                errors.append(e)

        thread = threading.Thread(target=writer)
        thread.start()
        staged.wait(timeout=5)
        # Concurrent committed write to the same record
        assert storage.compare_and_swap(
            "test_table", "test_001", {"version": 0}, {**test_data, "version": 1, "amount": "2"}
        )
        proceed.set()
        thread.join(timeout=5)

        assert len(errors) == 1
        assert storage.load("test_table", "test_001")["amount"] == "2"


class TestSQLiteStorage(StorageContract):
    """Test SQLite backend"""

    def make_storage(self, tmp_path):
        return SQLiteStorage(tmp_path / "ledger.db")

    def test_persistence_across_connections(self, tmp_path):
        """Committed data survives reopening the database"""
        path = tmp_path / "persist.db"
        storage = SQLiteStorage(path)
        storage.save("test_table", "test_001", test_data)
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("test_table", "test_001") == test_data
        reopened.close()

    def test_rollback_survives_reopen(self, tmp_path):
        path = tmp_path / "rollback.db"
        storage = SQLiteStorage(path)
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a"})
                raise RuntimeError("boom")
        storage.close()

        reopened = SQLiteStorage(path)
        assert not reopened.exists("test_table", "a")
        reopened.close()


class TestCreateStorage:
    """Test backend selection from URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_file_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'ledger.db'}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/ledger")
