"""Where class records live, and the adapter that stores them."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloudforge.persistence.adapter import PersistenceAdapter

DEFAULT_DB_NAME = "cloudforge.db"
_SQLITE_PREFIX = "sqlite:///"


def sqlalchemy_url(url: str) -> str:
    """Pin bare postgresql:// URLs to the psycopg (v3) driver.

    The optional postgres extra installs psycopg[binary], not psycopg2.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


@dataclass
class DatabaseConfig:
    """Location of the class record database.

    Only SQLite URLs can back the record adapter. The job status store
    takes its own SQLAlchemy URL (jobStoreUrl) and is not limited to SQLite.
    """

    url: str

    @classmethod
    def from_env(cls, base_path: Path | None = None) -> DatabaseConfig:
        """Resolve the database URL.

        DATABASE_URL wins, then CLOUDFORGE_DB_PATH (a file path), then
        base_path/data/cloudforge.db, then cloudforge.db in the CWD.
        """
        explicit = os.environ.get("DATABASE_URL")
        if explicit:
            return cls(url=explicit)

        path = os.environ.get("CLOUDFORGE_DB_PATH")
        if not path:
            path = str(base_path / "data" / DEFAULT_DB_NAME) if base_path else DEFAULT_DB_NAME
        return cls(url=_SQLITE_PREFIX + path)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def sqlite_path(self) -> str:
        """Filesystem path for sqlite URLs (":memory:" when empty)."""
        return self.url.removeprefix(_SQLITE_PREFIX) or ":memory:"

    def ensure_directory(self) -> None:
        """Create the parent directory of a file-backed SQLite database."""
        if self.is_sqlite and self.sqlite_path != ":memory:":
            Path(self.sqlite_path).parent.mkdir(parents=True, exist_ok=True)


def create_adapter(config: DatabaseConfig) -> PersistenceAdapter:
    """Build an adapter for config. The adapter is returned unconnected.

    Raises:
        ValueError: If the URL does not name a SQLite database
    """
    if not config.is_sqlite:
        raise ValueError(f"Unsupported database URL scheme: {config.url}")

    from cloudforge.persistence.sqlite import SQLiteAdapter

    return SQLiteAdapter(config.sqlite_path)
