from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from leadform.util import new_id, now_utc_iso


class Repo:
    """
    Lightweight repository for the pixel subsystem, web and CLI.
    Pixel event logs are append-only: there is no update or delete for them.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def list_pixels(self, shop_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tracking_pixels WHERE shop_id=? ORDER BY platform",
                (shop_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    def list_enabled_pixels(self, shop_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tracking_pixels WHERE shop_id=? AND enabled=1 ORDER BY platform",
                (shop_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    def get_pixel(self, shop_id: str, platform: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM tracking_pixels WHERE shop_id=? AND platform=?",
                (shop_id, platform),
            ).fetchone()
            return dict(row) if row else None

    def upsert_pixel(
        self,
        *,
        shop_id: str,
        platform: str,
        pixel_id: str,
        enabled: bool,
        api_enabled: bool,
        access_token_enc: str | None,
        test_code: str | None,
        events: dict[str, Any],
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO tracking_pixels(
                  shop_id, platform, pixel_id, enabled, api_enabled,
                  access_token_enc, test_code, events_json, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id, platform) DO UPDATE SET
                  pixel_id=excluded.pixel_id,
                  enabled=excluded.enabled,
                  api_enabled=excluded.api_enabled,
                  access_token_enc=excluded.access_token_enc,
                  test_code=excluded.test_code,
                  events_json=excluded.events_json,
                  updated_at=excluded.updated_at
                """,
                (
                    shop_id,
                    platform,
                    pixel_id,
                    1 if enabled else 0,
                    1 if api_enabled else 0,
                    access_token_enc,
                    test_code,
                    json.dumps(events, ensure_ascii=True),
                    now,
                    now,
                ),
            )

    def delete_pixel(self, shop_id: str, platform: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "DELETE FROM tracking_pixels WHERE shop_id=? AND platform=?",
                (shop_id, platform),
            )
            return cur.rowcount > 0

    def touch_pixel_last_fired(self, shop_id: str, platform: str) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE tracking_pixels SET last_fired_at=? WHERE shop_id=? AND platform=?",
                (now, shop_id, platform),
            )

    def create_pixel_log(
        self,
        *,
        shop_id: str,
        platform: str,
        event: str,
        domain_event: str | None,
        status: str,
        payload: Any = None,
        error: str | None = None,
    ) -> str:
        log_id = new_id("pxl")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO pixel_event_logs(
                  id, shop_id, platform, event, domain_event, status, payload_json, error, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    shop_id,
                    platform,
                    event,
                    domain_event,
                    status,
                    json.dumps(payload, ensure_ascii=True, default=str) if payload is not None else None,
                    error,
                    now_utc_iso(),
                ),
            )
        return log_id

    def list_pixel_logs(self, shop_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pixel_event_logs
                WHERE shop_id=?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (shop_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]
