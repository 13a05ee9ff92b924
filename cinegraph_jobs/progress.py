from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .common import parse_float, parse_int
from .database import LocalDatabase


class ProgressState:
    """Process-wide key/value coordination state shared by all workers.

    Writes overwrite; nothing here deletes keys. Counters go through
    ``increment`` so concurrent workers never lose updates.
    """

    def __init__(self, db: LocalDatabase):
        self.db = db

    @property
    def conn(self):
        return self.db.conn

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM state WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return default
        return str(row["value"])

    def get_int(self, key: str, default: int = 0) -> int:
        parsed = parse_int(self.get(key))
        return default if parsed is None else parsed

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        parsed = parse_float(self.get(key))
        return default if parsed is None else parsed

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, sort_keys=True))

    def set_many(self, values: Dict[str, Any]) -> None:
        with self.conn:
            for key, value in values.items():
                self.conn.execute(
                    """
                    INSERT INTO state(key, value) VALUES(?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value
                    """,
                    (key, str(value)),
                )

    def increment(self, key: str, amount: int = 1) -> int:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO state(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = CAST(state.value AS INTEGER) + ?
                """,
                (key, str(int(amount)), int(amount)),
            )
        return self.get_int(key)

    def compare_and_set(self, key: str, expected: Optional[str], value: Any) -> bool:
        """Write ``value`` only when the stored value equals ``expected`` (None: key absent)."""
        with self.conn:
            if expected is None:
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO state(key, value) VALUES(?, ?)",
                    (key, str(value)),
                )
            else:
                cursor = self.conn.execute(
                    "UPDATE state SET value = ? WHERE key = ? AND value = ?",
                    (str(value), key, str(expected)),
                )
        return cursor.rowcount == 1

    def items(self, prefix: str = "") -> Dict[str, str]:
        rows = self.conn.execute(
            "SELECT key, value FROM state WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (_like_prefix(prefix),),
        ).fetchall()
        return {str(row["key"]): str(row["value"]) for row in rows}


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"
