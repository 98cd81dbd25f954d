from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


class LeadformDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS tracking_pixels (
                  shop_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  pixel_id TEXT NOT NULL DEFAULT '',
                  enabled INTEGER NOT NULL DEFAULT 0,
                  api_enabled INTEGER NOT NULL DEFAULT 0,
                  access_token_enc TEXT,
                  test_code TEXT,
                  events_json TEXT NOT NULL DEFAULT '{}',
                  last_fired_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (shop_id, platform)
                );

                CREATE INDEX IF NOT EXISTS idx_tracking_pixels_shop_enabled
                ON tracking_pixels(shop_id, enabled);

                CREATE TABLE IF NOT EXISTS pixel_event_logs (
                  id TEXT PRIMARY KEY,
                  shop_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  event TEXT NOT NULL,
                  domain_event TEXT,
                  status TEXT NOT NULL,
                  payload_json TEXT,
                  error TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pixel_event_logs_shop_created
                ON pixel_event_logs(shop_id, created_at);
                """
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE key='schema_version'"
            ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0
