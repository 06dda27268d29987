# storage/db.py
import os
import sqlite3
from pathlib import Path


_DEFAULT_DB_PATH = Path.home() / ".keyrouter" / "keyrouter.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id                   TEXT    PRIMARY KEY,
    position             INTEGER NOT NULL,
    credential           TEXT    NOT NULL,
    label                TEXT    NOT NULL,
    model                TEXT    NOT NULL,
    system_instruction   TEXT,
    budget               INTEGER NOT NULL,
    usage_count          INTEGER NOT NULL DEFAULT 0,
    enabled              INTEGER NOT NULL DEFAULT 1,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    cooldown_until       REAL,
    last_used            REAL
);

CREATE TABLE IF NOT EXISTS pool_settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Abre y configura la conexión a SQLite.
    Siempre devuelve rows como dicts (row_factory).
    check_same_thread=False: el Repository serializa el acceso con su propio lock.
    """
    path = db_path or os.environ.get("KEYROUTER_DB_PATH") or str(_DEFAULT_DB_PATH)

    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Crea las tablas si no existen. Idempotente."""
    with conn:
        conn.executescript(_SCHEMA)
