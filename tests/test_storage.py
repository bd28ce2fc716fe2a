"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from ledger_core.storage import InMemoryStorage, SQLiteStorage, create_storage


def record(record_id, **fields):
    now = datetime.now(timezone.utc).isoformat()
    data = {"id": record_id, "created_at": now, "updated_at": now}
    data.update(fields)
    return data


class StorageContract:
    """Behavior every backend must share"""

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        self.storage.save("items", "a", record("a", name="first"))
        assert self.storage.load("items", "a")["name"] == "first"
        assert self.storage.exists("items", "a")
        assert not self.storage.exists("items", "missing")
        assert self.storage.load("items", "missing") is None

        self.storage.save("items", "b", record("b", name="second"))
        assert self.storage.count("items") == 2
        assert [r["id"] for r in self.storage.find("items", {"name": "second"})] == ["b"]

        assert self.storage.delete("items", "a")
        assert not self.storage.delete("items", "a")
        assert self.storage.count("items") == 1

        self.storage.clear_table("items")
        assert self.storage.count("items") == 0

    def test_rollback_restores_every_touched_row(self):
        self.storage.save("items", "a", record("a", value=1))
        self.storage.save("items", "c", record("c", value=3))

        self.storage.begin_transaction()
        assert self.storage.in_transaction
        self.storage.save("items", "a", record("a", value=100))
        self.storage.save("items", "b", record("b", value=2))
        self.storage.delete("items", "c")
        self.storage.rollback()

        assert not self.storage.in_transaction
        assert self.storage.load("items", "a")["value"] == 1
        assert self.storage.load("items", "b") is None
        assert self.storage.load("items", "c")["value"] == 3

    def test_commit_keeps_writes(self):
        self.storage.begin_transaction()
        self.storage.save("items", "a", record("a", value=1))
        self.storage.commit()
        assert self.storage.load("items", "a")["value"] == 1

    def test_nested_sections_act_as_savepoints(self):
        self.storage.begin_transaction()
        self.storage.save("items", "x", record("x", value=1))

        self.storage.begin_transaction()
        self.storage.save("items", "x", record("x", value=2))
        self.storage.save("items", "y", record("y", value=2))
        self.storage.rollback()

        assert self.storage.load("items", "x")["value"] == 1
        assert self.storage.load("items", "y") is None
        self.storage.commit()

        assert self.storage.load("items", "x")["value"] == 1

    def test_outer_rollback_discards_committed_inner_section(self):
        self.storage.begin_transaction()
        self.storage.begin_transaction()
        self.storage.save("items", "x", record("x", value=1))
        self.storage.commit()
        self.storage.rollback()
        assert self.storage.load("items", "x") is None

    def test_atomic_context_manager(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("items", "a", record("a"))
                raise RuntimeError("boom")
        assert self.storage.load("items", "a") is None

        with self.storage.atomic():
            self.storage.save("items", "a", record("a"))
        assert self.storage.exists("items", "a")

    def test_loaded_records_are_copies(self):
        self.storage.save("items", "a", record("a", tags=["x"]))
        loaded = self.storage.load("items", "a")
        loaded["tags"].append("y")
        assert self.storage.load("items", "a")["tags"] == ["x"]


class TestInMemoryStorage(StorageContract):

    def make_storage(self):
        return InMemoryStorage()

    def test_rollback_does_not_touch_other_threads_writes(self):
        self.storage.begin_transaction()
        self.storage.save("items", "mine", record("mine"))

        worker = threading.Thread(target=lambda: self.storage.save("items", "theirs", record("theirs")))
        worker.start()
        worker.join()

        self.storage.rollback()
        assert self.storage.load("items", "mine") is None
        assert self.storage.exists("items", "theirs")


class TestSQLiteStorage(StorageContract):

    def make_storage(self):
        return SQLiteStorage(":memory:")

    def test_file_backed_persistence(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "ledger.db"
            storage = SQLiteStorage(db_path)
            storage.save("items", "a", record("a", value=1))
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("items", "a")["value"] == 1
            reopened.close()

    def test_table_created_inside_rolled_back_transaction(self):
        self.storage.begin_transaction()
        self.storage.save("fresh", "a", record("a"))
        self.storage.rollback()

        assert self.storage.load("fresh", "a") is None
        self.storage.save("fresh", "b", record("b"))
        assert self.storage.exists("fresh", "b")


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        storage = create_storage("sqlite:///:memory:")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/ledger")
