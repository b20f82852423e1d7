import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Protocol

from errors import ConflictError, ServerError
from models import Task, User, PasswordReset, DEFAULT_LIST, DEFAULT_PRIORITY

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "migrations")

# Task model field -> tasks table column
TASK_COLUMNS = {
    "title": "title",
    "description": "description",
    "completed": "completed",
    "due_date": "due_date",
    "list_name": "list",
    "tags": "tags",
    "subtasks": "subtasks",
    "priority": "priority",
}


def now_iso(now: Optional[datetime] = None) -> str:
    """UTC timestamp string. Fixed format so stored values compare as text."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="seconds")


class Store(Protocol):
    """Persistence for users, tasks and password resets.

    Every task method takes the owning user id; a task owned by someone
    else behaves exactly like a missing one.
    """

    def create_user(self, email: str, password_hash: str) -> User: ...
    def get_user_by_email(self, email: str) -> Optional[User]: ...
    def get_user_by_id(self, user_id: int) -> Optional[User]: ...
    def update_password(self, email: str, password_hash: str) -> bool: ...

    def list_tasks(self, user_id: int) -> list[Task]: ...
    def get_task(self, task_id: int, user_id: int) -> Optional[Task]: ...
    def insert_task(self, user_id: int, fields: dict) -> Task: ...
    def update_task(self, task_id: int, user_id: int, changes: dict) -> Optional[Task]: ...
    def toggle_task(self, task_id: int, user_id: int) -> Optional[Task]: ...
    def delete_task(self, task_id: int, user_id: int) -> bool: ...

    def insert_reset(self, email: str, otp: str, expires_at: datetime) -> PasswordReset: ...
    def consume_reset(self, email: str, otp: str, now: datetime) -> Optional[PasswordReset]: ...
    def invalidate_resets(self, email: str) -> int: ...


# Row conversion, shared by every backend (rows are dicts or sqlite3.Row)

def _load_list(raw) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding malformed list column: %r", raw)
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def _row_to_task(row) -> Task:
    """Convert a stored row to the client task shape."""
    keys = row.keys()
    priority = row["priority"] if "priority" in keys else None
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        completed=bool(row["completed"]),
        due_date=row["due_date"] or "",
        list_name=row["list"] or DEFAULT_LIST,
        tags=_load_list(row["tags"]),
        subtasks=_load_list(row["subtasks"]),
        priority=priority or DEFAULT_PRIORITY,
        created_at=row["created_at"],
        updated_at=row["updated_at"] or None,
    )


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        created_at=row["created_at"],
    )


def _row_to_reset(row) -> PasswordReset:
    return PasswordReset(
        id=row["id"],
        email=row["email"],
        otp=row["otp"],
        expires_at=row["expires_at"],
        used=bool(row["used"]),
        created_at=row["created_at"],
    )


def _to_columns(fields: dict) -> dict:
    """Map task model fields to storage columns, encoding lists and booleans."""
    columns = {}
    for field, value in fields.items():
        column = TASK_COLUMNS.get(field)
        if column is None:
            continue
        if field in ("tags", "subtasks"):
            value = json.dumps(list(value or []))
        elif field == "completed":
            value = int(bool(value))
        columns[column] = value
    return columns


def _new_task_row(user_id: int, fields: dict) -> dict:
    row = {
        "user_id": user_id,
        "title": fields["title"],
        "description": fields.get("description") or "",
        "completed": 0,
        "due_date": fields.get("due_date") or "",
        "list": fields.get("list_name") or DEFAULT_LIST,
        "tags": json.dumps(list(fields.get("tags") or [])),
        "subtasks": json.dumps(list(fields.get("subtasks") or [])),
        "priority": fields.get("priority") or DEFAULT_PRIORITY,
        "created_at": now_iso(),
        "updated_at": None,
    }
    return row


class MemoryStore:
    """In-process store. Rows use the same columns as the SQL schema."""

    TABLES = ("users", "tasks", "password_resets")

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, dict]] = {name: {} for name in self.TABLES}
        self._next_ids = {name: 1 for name in self.TABLES}

    def _insert(self, table: str, row: dict) -> dict:
        row = dict(row, id=self._next_ids[table])
        self._next_ids[table] += 1
        self._tables[table][row["id"]] = row
        return row

    def _changed(self) -> None:
        """Called after every write while the lock is held."""

    # Users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._lock:
            if any(u["email"] == email for u in self._tables["users"].values()):
                raise ConflictError("Email already registered")
            row = self._insert("users", {
                "email": email,
                "password_hash": password_hash,
                "created_at": now_iso(),
            })
            self._changed()
            logger.info("User created: %s (id %s)", email, row["id"])
            return _row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            for row in self._tables["users"].values():
                if row["email"] == email:
                    return _row_to_user(row)
        return None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            row = self._tables["users"].get(user_id)
            return _row_to_user(row) if row else None

    def update_password(self, email: str, password_hash: str) -> bool:
        with self._lock:
            for row in self._tables["users"].values():
                if row["email"] == email:
                    row["password_hash"] = password_hash
                    self._changed()
                    return True
        return False

    # Tasks
    def _owned(self, task_id: int, user_id: int) -> Optional[dict]:
        row = self._tables["tasks"].get(task_id)
        if row is None or row["user_id"] != user_id:
            return None
        return row

    def list_tasks(self, user_id: int) -> list[Task]:
        with self._lock:
            rows = [r for r in self._tables["tasks"].values() if r["user_id"] == user_id]
            return [_row_to_task(r) for r in sorted(rows, key=lambda r: r["id"], reverse=True)]

    def get_task(self, task_id: int, user_id: int) -> Optional[Task]:
        with self._lock:
            row = self._owned(task_id, user_id)
            return _row_to_task(row) if row else None

    def insert_task(self, user_id: int, fields: dict) -> Task:
        with self._lock:
            row = self._insert("tasks", _new_task_row(user_id, fields))
            self._changed()
            return _row_to_task(row)

    def update_task(self, task_id: int, user_id: int, changes: dict) -> Optional[Task]:
        with self._lock:
            row = self._owned(task_id, user_id)
            if row is None:
                return None
            row.update(_to_columns(changes))
            row["updated_at"] = now_iso()
            self._changed()
            return _row_to_task(row)

    def toggle_task(self, task_id: int, user_id: int) -> Optional[Task]:
        with self._lock:
            row = self._owned(task_id, user_id)
            if row is None:
                return None
            row["completed"] = 0 if row["completed"] else 1
            row["updated_at"] = now_iso()
            self._changed()
            return _row_to_task(row)

    def delete_task(self, task_id: int, user_id: int) -> bool:
        with self._lock:
            if self._owned(task_id, user_id) is None:
                return False
            del self._tables["tasks"][task_id]
            self._changed()
            return True

    # Password resets
    def insert_reset(self, email: str, otp: str, expires_at: datetime) -> PasswordReset:
        with self._lock:
            row = self._insert("password_resets", {
                "email": email,
                "otp": otp,
                "expires_at": now_iso(expires_at),
                "used": 0,
                "created_at": now_iso(),
            })
            self._changed()
            return _row_to_reset(row)

    def consume_reset(self, email: str, otp: str, now: datetime) -> Optional[PasswordReset]:
        cutoff = now_iso(now)
        with self._lock:
            matches = [
                r for r in self._tables["password_resets"].values()
                if r["email"] == email and r["otp"] == otp and not r["used"] and r["expires_at"] > cutoff
            ]
            if not matches:
                return None
            row = max(matches, key=lambda r: (r["created_at"], r["id"]))
            row["used"] = 1
            self._changed()
            return _row_to_reset(row)

    def invalidate_resets(self, email: str) -> int:
        with self._lock:
            count = 0
            for row in self._tables["password_resets"].values():
                if row["email"] == email and not row["used"]:
                    row["used"] = 1
                    count += 1
            if count:
                self._changed()
            return count


class JsonFileStore(MemoryStore):
    """MemoryStore persisted to a JSON file, rewritten after every write."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        if os.path.exists(path):
            self._load()
        # last state known to be on disk
        self._saved = json.dumps(self._dump())

    def _dump(self) -> dict:
        data = {table: list(self._tables[table].values()) for table in self.TABLES}
        data["next_ids"] = dict(self._next_ids)
        return data

    def _apply(self, data: dict) -> None:
        for table in self.TABLES:
            rows = data.get(table, [])
            self._tables[table] = {row["id"]: row for row in rows}
            next_id = data.get("next_ids", {}).get(table)
            self._next_ids[table] = next_id or max(self._tables[table], default=0) + 1

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Could not read store file %s: %s", self.path, e)
            raise ServerError() from e
        self._apply(data)
        logger.info("Loaded %d users, %d tasks from %s",
                    len(self._tables["users"]), len(self._tables["tasks"]), self.path)

    def _changed(self) -> None:
        """Write the tables to disk, or undo the pending change if that fails."""
        data = self._dump()
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.exception("Could not write store file %s", self.path)
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self._apply(json.loads(self._saved))
            raise ServerError() from e
        self._saved = json.dumps(data)


class SQLiteStore:
    """SQLite store. Schema is managed by the Alembic migrations in migrations/."""

    def __init__(self, path: str):
        self.path = path
        # sqlite serializes writers per file; the lock also keeps
        # read-modify-write sequences in this process atomic
        self._lock = threading.Lock()

    @contextmanager
    def get_db(self):
        """Context manager for database connections."""
        conn = None
        try:
            conn = sqlite3.connect(self.path, timeout=10)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            logger.exception("Database error on %s", self.path)
            raise ServerError() from e
        finally:
            if conn is not None:
                conn.close()

    def migrate(self) -> None:
        """Bring the schema up to date by running Alembic migrations."""
        from alembic import command
        from alembic.config import Config

        # built in code so installs without alembic.ini still migrate
        cfg = Config()
        cfg.set_main_option("script_location", MIGRATIONS_DIR.replace("%", "%%"))
        url = f"sqlite:///{os.path.abspath(self.path)}"
        cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
        # keep the application's logging setup
        cfg.attributes["configure_logger"] = False
        command.upgrade(cfg, "head")

    # Users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._lock, self.get_db() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO users (email, password_hash, created_at) VALUES (?, ?, ?)",
                    (email, password_hash, now_iso())
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Email already registered") from e
            conn.commit()
            row = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
            logger.info("User created: %s (id %s)", email, row["id"])
            return _row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            return _row_to_user(row) if row else None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _row_to_user(row) if row else None

    def update_password(self, email: str, password_hash: str) -> bool:
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ? WHERE email = ?",
                (password_hash, email)
            )
            conn.commit()
            return cursor.rowcount > 0

    # Tasks
    def list_tasks(self, user_id: int) -> list[Task]:
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? ORDER BY id DESC", (user_id,)
            ).fetchall()
            return [_row_to_task(row) for row in rows]

    def get_task(self, task_id: int, user_id: int) -> Optional[Task]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id)
            ).fetchone()
            return _row_to_task(row) if row else None

    def insert_task(self, user_id: int, fields: dict) -> Task:
        row = _new_task_row(user_id, fields)
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                f"INSERT INTO tasks ({columns}) VALUES ({placeholders})", list(row.values())
            )
            conn.commit()
            created = conn.execute("SELECT * FROM tasks WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _row_to_task(created)

    def update_task(self, task_id: int, user_id: int, changes: dict) -> Optional[Task]:
        columns = _to_columns(changes)
        columns["updated_at"] = now_iso()
        # column names come from TASK_COLUMNS, never from the request
        set_clause = ", ".join(f"{column} = ?" for column in columns)
        values = list(columns.values()) + [task_id, user_id]
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {set_clause} WHERE id = ? AND user_id = ?", values
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return _row_to_task(row)

    def toggle_task(self, task_id: int, user_id: int) -> Optional[Task]:
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                """UPDATE tasks
                   SET completed = CASE WHEN completed THEN 0 ELSE 1 END, updated_at = ?
                   WHERE id = ? AND user_id = ?""",
                (now_iso(), task_id, user_id)
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return _row_to_task(row)

    def delete_task(self, task_id: int, user_id: int) -> bool:
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id)
            )
            conn.commit()
            return cursor.rowcount > 0

    # Password resets
    def insert_reset(self, email: str, otp: str, expires_at: datetime) -> PasswordReset:
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                "INSERT INTO password_resets (email, otp, expires_at, used, created_at) VALUES (?, ?, ?, 0, ?)",
                (email, otp, now_iso(expires_at), now_iso())
            )
            conn.commit()
            row = conn.execute("SELECT * FROM password_resets WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _row_to_reset(row)

    def consume_reset(self, email: str, otp: str, now: datetime) -> Optional[PasswordReset]:
        with self._lock, self.get_db() as conn:
            row = conn.execute(
                """SELECT * FROM password_resets
                   WHERE email = ? AND otp = ? AND used = 0 AND expires_at > ?
                   ORDER BY created_at DESC, id DESC LIMIT 1""",
                (email, otp, now_iso(now))
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE password_resets SET used = 1 WHERE id = ?", (row["id"],))
            conn.commit()
            return _row_to_reset(row).model_copy(update={"used": True})

    def invalidate_resets(self, email: str) -> int:
        with self._lock, self.get_db() as conn:
            cursor = conn.execute(
                "UPDATE password_resets SET used = 1 WHERE email = ? AND used = 0", (email,)
            )
            conn.commit()
            return cursor.rowcount


def create_store(settings) -> Store:
    """Build the store selected by STORE_BACKEND."""
    backend = settings.store_backend
    if backend == "memory":
        logger.warning("Using in-memory store; data is lost on restart")
        return MemoryStore()
    if backend == "json":
        return JsonFileStore(settings.json_store_path)
    if backend == "sqlite":
        store = SQLiteStore(settings.database_path)
        store.migrate()
        return store
    raise ValueError(f"Unknown STORE_BACKEND: {backend!r}")
