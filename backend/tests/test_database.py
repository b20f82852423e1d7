"""
Tests for database.py - the store contract shared by the memory, JSON file
and SQLite backends.
"""
import pytest
import sys
import os
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
import database
from database import JsonFileStore, MemoryStore, SQLiteStore, create_store, now_iso
from errors import ConflictError, ServerError


def _user(store, email="alice@example.com"):
    return store.create_user(email, "hash")


class TestUsers:
    """Tests for user records."""

    def test_create_user(self, store):
        """Users get an id and a creation timestamp."""
        user = store.create_user("alice@example.com", "hash")

        assert user.id == 1
        assert user.email == "alice@example.com"
        assert user.password_hash == "hash"
        assert user.created_at

    def test_duplicate_email_conflicts(self, store):
        """A second account with the same email is rejected."""
        store.create_user("alice@example.com", "hash")
        with pytest.raises(ConflictError):
            store.create_user("alice@example.com", "other")

    def test_email_lookup_is_case_sensitive(self, store):
        """Emails match exactly as stored."""
        store.create_user("alice@example.com", "hash")

        assert store.get_user_by_email("alice@example.com") is not None
        assert store.get_user_by_email("Alice@example.com") is None

    def test_get_user_by_id(self, store):
        user = _user(store)
        assert store.get_user_by_id(user.id).email == "alice@example.com"
        assert store.get_user_by_id(999) is None

    def test_update_password(self, store):
        """Password hash changes only for an existing email."""
        _user(store)

        assert store.update_password("alice@example.com", "new-hash") is True
        assert store.get_user_by_email("alice@example.com").password_hash == "new-hash"
        assert store.update_password("nobody@example.com", "x") is False


class TestTaskCRUD:
    """Tests for basic task create/read/update/delete operations."""

    def test_insert_task_defaults(self, store):
        """A task with only a title gets the documented defaults."""
        user = _user(store)
        task = store.insert_task(user.id, {"title": "Buy milk"})

        assert task.title == "Buy milk"
        assert task.description == ""
        assert task.completed is False
        assert task.due_date == ""
        assert task.list_name == "Personal"
        assert task.tags == []
        assert task.subtasks == []
        assert task.priority == "medium"
        assert task.created_at
        assert task.updated_at is None

    def test_insert_task_all_fields(self, store):
        user = _user(store)
        task = store.insert_task(user.id, {
            "title": "Report",
            "description": "Quarterly numbers",
            "due_date": "2025-03-01",
            "list_name": "Work",
            "tags": ["finance", "q1"],
            "subtasks": ["collect", "write"],
            "priority": "high",
        })

        assert task.list_name == "Work"
        assert task.tags == ["finance", "q1"]
        assert task.subtasks == ["collect", "write"]
        assert task.priority == "high"

    def test_list_tasks_newest_first(self, store):
        user = _user(store)
        for title in ("one", "two", "three"):
            store.insert_task(user.id, {"title": title})

        assert [t.title for t in store.list_tasks(user.id)] == ["three", "two", "one"]

    def test_list_tasks_scoped_to_owner(self, store):
        alice = _user(store)
        bob = _user(store, "bob@example.com")
        store.insert_task(alice.id, {"title": "Alice's"})
        store.insert_task(bob.id, {"title": "Bob's"})

        assert [t.title for t in store.list_tasks(alice.id)] == ["Alice's"]
        assert [t.title for t in store.list_tasks(bob.id)] == ["Bob's"]

    def test_update_task_merges(self, store):
        """Only the given fields change; updated_at gets set."""
        user = _user(store)
        task = store.insert_task(user.id, {"title": "Report", "description": "Draft", "list_name": "Work"})

        updated = store.update_task(task.id, user.id, {"completed": True})

        assert updated.completed is True
        assert updated.title == "Report"
        assert updated.description == "Draft"
        assert updated.list_name == "Work"
        assert updated.updated_at is not None

    def test_update_task_lists(self, store):
        user = _user(store)
        task = store.insert_task(user.id, {"title": "Trip", "tags": ["a"]})

        updated = store.update_task(task.id, user.id, {"tags": ["b", "c"], "subtasks": ["pack"]})

        assert updated.tags == ["b", "c"]
        assert updated.subtasks == ["pack"]

    def test_update_task_not_found(self, store):
        """Update of a missing task returns None."""
        user = _user(store)
        assert store.update_task(42, user.id, {"title": "x"}) is None

    def test_toggle_task_twice(self, store):
        user = _user(store)
        task = store.insert_task(user.id, {"title": "Flip"})

        first = store.toggle_task(task.id, user.id)
        second = store.toggle_task(task.id, user.id)

        assert first.completed is True
        assert second.completed is False
        assert second.updated_at is not None

    def test_delete_task(self, store):
        user = _user(store)
        task = store.insert_task(user.id, {"title": "Delete me"})

        assert store.delete_task(task.id, user.id) is True
        assert store.list_tasks(user.id) == []
        assert store.delete_task(task.id, user.id) is False

    def test_other_users_task_is_invisible(self, store):
        """Every task operation treats someone else's task as missing."""
        alice = _user(store)
        bob = _user(store, "bob@example.com")
        task = store.insert_task(alice.id, {"title": "Private"})

        assert store.get_task(task.id, bob.id) is None
        assert store.update_task(task.id, bob.id, {"title": "Hacked"}) is None
        assert store.toggle_task(task.id, bob.id) is None
        assert store.delete_task(task.id, bob.id) is False
        assert store.get_task(task.id, alice.id).title == "Private"


class TestPasswordResets:
    """Tests for one-time password records."""

    def test_consume_once(self, store):
        now = datetime.now(timezone.utc)
        store.insert_reset("alice@example.com", "123456", now + timedelta(minutes=10))

        record = store.consume_reset("alice@example.com", "123456", now)
        assert record is not None
        assert record.used is True
        assert store.consume_reset("alice@example.com", "123456", now) is None

    def test_consume_wrong_code(self, store):
        now = datetime.now(timezone.utc)
        store.insert_reset("alice@example.com", "123456", now + timedelta(minutes=10))

        assert store.consume_reset("alice@example.com", "654321", now) is None
        assert store.consume_reset("bob@example.com", "123456", now) is None

    def test_consume_after_expiry(self, store):
        """Expiry is checked when the code is used."""
        now = datetime.now(timezone.utc)
        store.insert_reset("alice@example.com", "123456", now + timedelta(minutes=10))

        assert store.consume_reset("alice@example.com", "123456", now + timedelta(minutes=11)) is None

    def test_invalidate_resets(self, store):
        now = datetime.now(timezone.utc)
        store.insert_reset("alice@example.com", "111111", now + timedelta(minutes=10))
        store.insert_reset("alice@example.com", "222222", now + timedelta(minutes=10))

        assert store.invalidate_resets("alice@example.com") == 2
        assert store.consume_reset("alice@example.com", "222222", now) is None


class TestSQLiteStorage:
    """Storage encoding and schema of the SQLite backend."""

    def test_lists_and_booleans_encoded(self, sqlite_store):
        """tags/subtasks are JSON text and completed is 0/1 in the table."""
        user = _user(sqlite_store)
        task = sqlite_store.insert_task(user.id, {"title": "Encode", "tags": ["x", "y"]})
        sqlite_store.toggle_task(task.id, user.id)

        with sqlite_store.get_db() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task.id,)).fetchone()

        assert json.loads(row["tags"]) == ["x", "y"]
        assert row["subtasks"] == "[]"
        assert row["completed"] == 1

    def test_migrations_create_schema(self, sqlite_store):
        with sqlite_store.get_db() as conn:
            tables = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            columns = {r[1] for r in conn.execute("PRAGMA table_info(tasks)")}

        assert {"users", "tasks", "password_resets"} <= tables
        assert "priority" in columns

    def test_migrate_is_idempotent(self, sqlite_store):
        user = _user(sqlite_store)
        sqlite_store.migrate()
        assert sqlite_store.get_user_by_id(user.id) is not None

    def test_migrate_without_ini_file(self, tmp_path, monkeypatch):
        """Migrations are found next to the module, whatever the working directory."""
        monkeypatch.chdir(tmp_path)
        store = SQLiteStore("fresh.db")
        store.migrate()

        assert os.path.exists(os.path.join(database.MIGRATIONS_DIR, "env.py"))
        assert _user(store).id == 1
        assert (tmp_path / "fresh.db").exists()


class TestConcurrency:
    """Writers on separate threads must not interleave inside a store."""

    def test_parallel_inserts_and_toggles(self, store):
        user = _user(store)

        def work(worker):
            created = []
            for i in range(25):
                task = store.insert_task(user.id, {"title": f"w{worker}-{i}"})
                toggles = i % 3
                for _ in range(toggles):
                    store.toggle_task(task.id, user.id)
                created.append((task.id, toggles))
            return created

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = [item for batch in pool.map(work, range(8)) for item in batch]

        ids = [task_id for task_id, _ in results]
        assert len(set(ids)) == 200
        tasks = {t.id: t for t in store.list_tasks(user.id)}
        assert len(tasks) == 200
        for task_id, toggles in results:
            assert tasks[task_id].completed is (toggles % 2 == 1)


class TestJsonFileStore:
    def test_survives_reload(self, tmp_path):
        """Data written by one instance is read back by the next."""
        path = str(tmp_path / "store.json")
        first = JsonFileStore(path)
        user = first.create_user("alice@example.com", "hash")
        first.insert_task(user.id, {"title": "Persist me", "tags": ["a"]})

        second = JsonFileStore(path)
        tasks = second.list_tasks(user.id)

        assert [t.title for t in tasks] == ["Persist me"]
        assert tasks[0].tags == ["a"]
        # ids keep counting after a reload
        assert second.insert_task(user.id, {"title": "Next"}).id == 2

    def test_failed_write_is_rolled_back(self, tmp_path, monkeypatch):
        """A write that cannot reach the disk leaves no trace in memory or on disk."""
        path = tmp_path / "store.json"
        store = JsonFileStore(str(path))
        alice = store.create_user("alice@example.com", "hash")

        def disk_full(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(database.os, "replace", disk_full)
        with pytest.raises(ServerError):
            store.create_user("bob@example.com", "hash")
        with pytest.raises(ServerError):
            store.insert_task(alice.id, {"title": "Lost"})

        assert store.get_user_by_email("bob@example.com") is None
        assert store.list_tasks(alice.id) == []
        assert os.listdir(tmp_path) == ["store.json"]

        monkeypatch.undo()
        # retrying is not a conflict and reuses the id
        bob = store.create_user("bob@example.com", "hash")
        assert bob.id == 2
        assert JsonFileStore(str(path)).get_user_by_email("bob@example.com") is not None


class TestCreateStore:
    def test_selects_backend(self, tmp_path):
        assert isinstance(create_store(Settings(store_backend="memory")), MemoryStore)
        assert isinstance(
            create_store(Settings(store_backend="json", json_store_path=str(tmp_path / "s.json"))),
            JsonFileStore,
        )
        assert isinstance(
            create_store(Settings(store_backend="sqlite", database_path=str(tmp_path / "s.db"))),
            SQLiteStore,
        )

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(Settings(store_backend="mongo"))


def test_now_iso_is_utc_and_sortable():
    earlier = now_iso(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))
    shifted = now_iso(datetime(2025, 1, 1, 13, 0, tzinfo=timezone(timedelta(hours=2))))
    assert earlier == "2025-01-01T12:00:00+00:00"
    assert shifted == "2025-01-01T11:00:00+00:00"
    assert shifted < earlier
