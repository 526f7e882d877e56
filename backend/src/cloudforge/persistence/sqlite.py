"""SQLite persistence adapter.

Stores every class in one table as JSON documents. Queries support
equality constraints on top-level fields, a single sort key and
limit/skip pagination.
"""

import json
import re
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cloudforge.persistence.adapter import project

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def new_object_id() -> str:
    return uuid.uuid4().hex[:10]


class SQLiteAdapter:
    """Simple SQLite document adapter."""

    def __init__(self, db_path: Path | str = ":memory:"):
        self.db_path = str(db_path)
        self.conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Establish database connection and create the objects table."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS _objects (
                class_name  TEXT NOT NULL,
                object_id   TEXT NOT NULL,
                data        TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                PRIMARY KEY (class_name, object_id)
            )
        """)
        self.conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if not self.conn:
            raise RuntimeError("Database not connected")
        return self.conn

    def _row_to_object(self, row: sqlite3.Row) -> dict[str, Any]:
        data = json.loads(row["data"])
        data["objectId"] = row["object_id"]
        data["createdAt"] = row["created_at"]
        data["updatedAt"] = row["updated_at"]
        return data

    def _payload(self, data: dict[str, Any]) -> str:
        body = {
            k: v for k, v in data.items()
            if k not in ("objectId", "createdAt", "updatedAt")
        }
        return json.dumps(body, default=str)

    def create(self, class_name: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new object.

        Returns:
            The stored object with objectId and audit timestamps
        """
        conn = self._require_conn()
        object_id = data.get("objectId") or new_object_id()
        now = datetime.now(UTC).isoformat()

        conn.execute(
            "INSERT INTO _objects (class_name, object_id, data, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [class_name, object_id, self._payload(data), now, now],
        )
        conn.commit()

        return self.get(class_name, object_id)  # type: ignore[return-value]

    def get(self, class_name: str, object_id: str) -> dict[str, Any] | None:
        """Fetch a single object by ID."""
        conn = self._require_conn()
        row = conn.execute(
            "SELECT * FROM _objects WHERE class_name = ? AND object_id = ?",
            [class_name, object_id],
        ).fetchone()

        if row:
            return self._row_to_object(row)
        return None

    def update(
        self, class_name: str, object_id: str, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Replace an existing object's fields. Returns None if it does not exist."""
        conn = self._require_conn()
        now = datetime.now(UTC).isoformat()

        cursor = conn.execute(
            "UPDATE _objects SET data = ?, updated_at = ? "
            "WHERE class_name = ? AND object_id = ?",
            [self._payload(data), now, class_name, object_id],
        )
        conn.commit()

        if cursor.rowcount == 0:
            return None
        return self.get(class_name, object_id)

    def delete(self, class_name: str, object_id: str) -> bool:
        """Delete an object."""
        conn = self._require_conn()
        cursor = conn.execute(
            "DELETE FROM _objects WHERE class_name = ? AND object_id = ?",
            [class_name, object_id],
        )
        conn.commit()

        return cursor.rowcount > 0

    def find(
        self,
        class_name: str,
        where: dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
        skip: int = 0,
        keys: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Query objects of a class.

        Args:
            class_name: Class to query
            where: {field: value} equality constraints on top-level fields
            order: Field to sort by; prefix with "-" for descending
            limit: Maximum number of objects
            skip: Number of objects to skip
            keys: Top-level fields to return; objectId, createdAt and
                updatedAt are always included. None returns every field.
        """
        conn = self._require_conn()
        sql = "SELECT * FROM _objects WHERE class_name = ?"
        values: list[Any] = [class_name]

        for field, value in (where or {}).items():
            if field == "objectId":
                sql += " AND object_id = ?"
                values.append(value)
                continue
            sql += f" AND json_extract(data, '$.{self._field(field)}') = ?"
            values.append(json.dumps(value) if isinstance(value, (dict, list)) else value)

        if order:
            descending = order.startswith("-")
            field = order.lstrip("-")
            if field in ("objectId", "createdAt", "updatedAt"):
                column = {"objectId": "object_id", "createdAt": "created_at", "updatedAt": "updated_at"}[field]
            else:
                column = f"json_extract(data, '$.{self._field(field)}')"
            sql += f" ORDER BY {column} {'DESC' if descending else 'ASC'}"
        else:
            sql += " ORDER BY created_at ASC"

        if limit is not None or skip:
            sql += " LIMIT ? OFFSET ?"
            values.extend([limit if limit is not None else -1, skip])

        rows = conn.execute(sql, values).fetchall()
        objects = [self._row_to_object(row) for row in rows]
        if keys is None:
            return objects
        return [project(obj, keys) for obj in objects]

    def _field(self, name: str) -> str:
        if not _FIELD_NAME.match(name):
            raise ValueError(f"Invalid field name: {name!r}")
        return name
