import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .config import settings


def get_connection(db_path: Optional[Path] = None):
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(path, check_same_thread=False)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


@contextmanager
def connect(db_path: Optional[Path] = None):
    con = get_connection(db_path)
    try:
        yield con
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()


def rows_to_dicts(rows):
    return [dict(r) for r in rows]


def table_columns(cur, table: str) -> set:
    cur.execute(f"PRAGMA table_info({table})")
    return {r[1] for r in cur.fetchall()}


def add_missing_columns(cur, table: str, columns: dict) -> None:
    """ALTER TABLE for every column of `columns` (name -> DDL) not yet present."""
    existing = table_columns(cur, table)
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def ensure_unique_index(cur, table: str, index: str, key: str) -> int:
    """Create a unique index on `key`, first dropping older rows that repeat it.

    Returns how many duplicate rows were removed.
    """
    exists = cur.execute(
        "SELECT 1 FROM sqlite_master WHERE type='index' AND name=?", (index,)
    ).fetchone()
    if exists:
        return 0
    cur.execute(f"DELETE FROM {table} WHERE id NOT IN (SELECT MAX(id) FROM {table} GROUP BY {key})")
    removed = cur.rowcount
    cur.execute(f"CREATE UNIQUE INDEX {index} ON {table}({key})")
    return removed
