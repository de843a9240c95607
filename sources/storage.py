#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
File: storage.py
Description:
    Low-level DAO (Data-Access-Object)
    A small key-value store on top of an embedded SQLite database.  The survey
    client keeps everything it must survive a restart in here: the survey
    area collection, the two loose points, their images and metadata.
    Values are JSON text; every write is committed immediately.

    Key features:
        • Automatic schema creation (single ``kv`` table)
        • Parameterised SQL statements (SQL-injection safe)
        • JSON helpers ``get_json`` / ``set_json``
        • Pure-standard-library implementation (no external dependencies)
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union


class KeyValueStore:
    """get / set / delete over the ``kv`` table."""

    def __init__(self, db_path: Union[str, Path] = "survey.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, detect_types=sqlite3.PARSE_DECLTYPES)
        self.conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # --------------------------------------------------------------
    # Schema creation
    # --------------------------------------------------------------
    def _ensure_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key         TEXT PRIMARY KEY,
                value       TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    # ==============================================================
    #                     RAW ACCESS
    # ==============================================================
    def get(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM kv WHERE key = ?;", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        sql = """
            INSERT INTO kv (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at;
        """
        self.conn.execute(sql, (key, value, datetime.now(timezone.utc).isoformat()))
        self.conn.commit()

    def delete(self, key: str) -> int:
        """
        Remove ``key``.

        Returns
        -------
        int
            Number of rows deleted (0 if the key did not exist).
        """
        cur = self.conn.execute("DELETE FROM kv WHERE key = ?;", (key,))
        self.conn.commit()
        return cur.rowcount

    def keys(self) -> Iterable[str]:
        cur = self.conn.execute("SELECT key FROM kv ORDER BY key;")
        for r in cur:
            yield r["key"]

    # ==============================================================
    #                     JSON HELPERS
    # ==============================================================
    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Clean shutdown
    # ------------------------------------------------------------------
    def close(self) -> None:
        self.conn.close()
