"""
Tests for storage backends: CRUD, filters, conditional writes and transactions
"""

from datetime import date

import pytest

from microloans.errors import DatabaseError
from microloans.storage import InMemoryStorage, SQLiteStorage, create_storage, matches_filters


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "test.db")
    yield store
    store.close()


class TestBasicOperations:
    """Test save, load, delete and find on both backends"""

    def test_save_and_load(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "pending"})
        assert backend.load("loans", "l1") == {"id": "l1", "status": "pending"}
        assert backend.exists("loans", "l1")
        assert backend.count("loans") == 1

    def test_load_missing(self, backend):
        assert backend.load("loans", "missing") is None

    def test_delete(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        assert backend.delete("loans", "l1")
        assert not backend.delete("loans", "l1")

    def test_loaded_copy_is_detached(self, backend):
        backend.save("loans", "l1", {"id": "l1", "notes": []})
        loaded = backend.load("loans", "l1")
        loaded["notes"].append("changed")
        assert backend.load("loans", "l1")["notes"] == []

    def test_find_with_operators(self, backend):
        backend.save("loans", "a", {"id": "a", "status": "disbursed", "due_date": "2024-01-10"})
        backend.save("loans", "b", {"id": "b", "status": "overdue", "due_date": "2024-01-20"})
        backend.save("loans", "c", {"id": "c", "status": "repaid", "due_date": "2024-01-05"})

        found = backend.find("loans", {"status__in": ["disbursed", "overdue"],
                                       "due_date__lte": date(2024, 1, 15)})
        assert [r["id"] for r in found] == ["a"]
        assert len(backend.find("loans", {"status__ne": "repaid"})) == 2


class TestConditionalWrites:
    """Test version-checked writes"""

    def test_insert_only(self, backend):
        assert backend.save_if_version("slots", "s1", {"id": "s1"}, None)
        assert not backend.save_if_version("slots", "s1", {"id": "s1"}, None)

    def test_version_match(self, backend):
        backend.save("loans", "l1", {"id": "l1", "version": 0})
        assert backend.save_if_version("loans", "l1", {"id": "l1", "version": 1}, 0)
        assert backend.load("loans", "l1")["version"] == 1

    def test_stale_version_rejected(self, backend):
        backend.save("loans", "l1", {"id": "l1", "version": 3, "balance": "100.00"})
        assert not backend.save_if_version("loans", "l1", {"id": "l1", "version": 3, "balance": "0.00"}, 2)
        assert backend.load("loans", "l1")["balance"] == "100.00"

    def test_missing_record_rejected(self, backend):
        assert not backend.save_if_version("loans", "nope", {"id": "nope", "version": 1}, 0)


class TestTransactions:
    def test_rollback_on_error(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "pending"})
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loans", "l1", {"id": "l1", "status": "approved"})
                backend.save("payments", "p1", {"id": "p1"})
                raise RuntimeError("boom")

        assert backend.load("loans", "l1")["status"] == "pending"
        assert backend.load("payments", "p1") is None

    def test_rollback_restores_deleted_and_cleared_records(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        backend.save("links", "k1", {"id": "k1"})
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.delete("loans", "l1")
                backend.clear_table("links")
                backend.save("loans", "l2", {"id": "l2"})
                raise RuntimeError("boom")

        assert backend.exists("loans", "l1")
        assert not backend.exists("loans", "l2")
        assert backend.load("links", "k1") == {"id": "k1"}

    def test_commit(self, backend):
        with backend.atomic():
            backend.save("loans", "l1", {"id": "l1"})
        assert backend.exists("loans", "l1")

    def test_nested_rollback_keeps_outer_writes(self, backend):
        with backend.atomic():
            backend.save("loans", "l1", {"id": "l1"})
            with pytest.raises(RuntimeError):
                with backend.atomic():
                    backend.save("payments", "p1", {"id": "p1"})
                    raise RuntimeError("inner")
            backend.save("loans", "l2", {"id": "l2"})

        assert backend.exists("loans", "l1")
        assert backend.exists("loans", "l2")
        assert not backend.exists("payments", "p1")


def test_closed_sqlite_raises_database_error(tmp_path):
    store = SQLiteStorage(tmp_path / "closed.db")
    store.close()
    with pytest.raises(DatabaseError, match="closed"):
        store.load("loans", "l1")


class TestFilters:
    def test_isnull(self):
        assert matches_filters({"loan_id": None}, {"loan_id__isnull": True})
        assert not matches_filters({"loan_id": "x"}, {"loan_id__isnull": True})

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            matches_filters({"a": 1}, {"a__like": 1})


def test_create_storage_from_url(tmp_path):
    assert isinstance(create_storage("memory://"), InMemoryStorage)
    store = create_storage(f"sqlite:///{tmp_path / 'x.db'}")
    assert isinstance(store, SQLiteStorage)
    store.close()
    with pytest.raises(ValueError):
        create_storage("postgresql://localhost/loans")
