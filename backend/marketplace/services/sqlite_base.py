import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")


def configured_db_path() -> str:
    return os.getenv("MARKETPLACE_DB_PATH", DEFAULT_DB_PATH)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SqliteStore:
    """Shared connection handling for the sqlite-backed stores.

    Every operation opens its own connection. Writes that must be atomic go
    through ``transaction()``.
    """

    db_path: str

    def __post_init__(self) -> None:
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        with self.transaction() as conn:
            self._init_db(conn)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()
