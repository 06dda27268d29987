# storage/repository.py
import logging
import sqlite3
import threading
from typing import Any, Optional

from keyrouter.storage.db import get_connection, init_schema

logger = logging.getLogger(__name__)

_AUTO_THROTTLE_KEY = "auto_throttle"


class Repository:
    """
    Única interfaz entre el pool y SQLite.
    Guarda y carga el estado del pool con el mismo shape que
    NodePool.to_state() / load_state(). Recibe un db_path para
    facilitar el testing con :memory:.
    """

    def __init__(self, db_path: str | None = None):
        self._conn = get_connection(db_path)
        self._lock = threading.Lock()
        init_schema(self._conn)

    def save_pool_state(self, state: dict[str, Any]) -> None:
        """
        Reemplaza el estado guardado en una sola transacción.
        Atómico: o se guarda todo o no se guarda nada.
        """
        rows = [
            (
                node["id"],
                position,
                node["credential"],
                node["label"],
                node["model"],
                node.get("systemInstruction"),
                node["budget"],
                node["usageCount"],
                int(bool(node["enabled"])),
                node["consecutiveFailures"],
                node.get("cooldownUntil"),
                node.get("lastUsed"),
            )
            for position, node in enumerate(state.get("nodes", []))
        ]
        auto_throttle = "1" if state.get("autoThrottle") else "0"

        with self._lock, self._conn:
            self._conn.execute("DELETE FROM nodes")
            self._conn.executemany(
                """
                INSERT INTO nodes
                    (id, position, credential, label, model, system_instruction,
                     budget, usage_count, enabled, consecutive_failures,
                     cooldown_until, last_used)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._conn.execute(
                """
                INSERT INTO pool_settings (key, value) VALUES (?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value
                """,
                (_AUTO_THROTTLE_KEY, auto_throttle),
            )
        logger.debug("Estado del pool guardado: %d nodos", len(rows))

    def load_pool_state(self) -> Optional[dict[str, Any]]:
        """None si todavía no se guardó nada (primer arranque)."""
        with self._lock:
            setting = self._conn.execute(
                "SELECT value FROM pool_settings WHERE key = ?", (_AUTO_THROTTLE_KEY,)
            ).fetchone()
            rows = self._conn.execute(
                "SELECT * FROM nodes ORDER BY position ASC"
            ).fetchall()

        if setting is None and not rows:
            return None

        return {
            "autoThrottle": bool(setting and setting["value"] == "1"),
            "nodes":        [self._row_to_node(r) for r in rows],
        }

    # ------------------------------------------------------------------
    # Mapeo de rows al shape persistido
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id":                  row["id"],
            "credential":          row["credential"],
            "label":               row["label"],
            "model":               row["model"],
            "systemInstruction":   row["system_instruction"],
            "budget":              row["budget"],
            "usageCount":          row["usage_count"],
            "enabled":             bool(row["enabled"]),
            "consecutiveFailures": row["consecutive_failures"],
            "cooldownUntil":       row["cooldown_until"],
            "lastUsed":            row["last_used"],
        }

    def close(self) -> None:
        self._conn.close()
