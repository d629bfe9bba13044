import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .schema_sql import SCHEMA_SQL

DB_DIR = Path(os.getenv("DB_DIR", "./data"))
DB_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DB_DIR / os.getenv("DB_FILE", "comm_tracker.sqlite")

def get_connection(path=None):
    con = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    con.row_factory = sqlite3.Row
    # cascades (project -> systems -> subsystems -> itrs, pack -> tags) live in the schema
    con.execute("PRAGMA foreign_keys = ON")
    return con

@contextmanager
def connect(path=None):
    con = get_connection(path)
    try:
        yield con
    except Exception:
        # a failed statement must not leave the write lock held past close
        con.rollback()
        raise
    finally:
        con.close()

def init_schema(con) -> None:
    con.executescript(SCHEMA_SQL)
    con.commit()
