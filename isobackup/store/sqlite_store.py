from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


class BackupRunState:
    """Petit helper pour stocker l'état des runs dans SQLite."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def ensure_schema(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_runs (
                    run_id TEXT PRIMARY KEY,
                    profile TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stage TEXT,
                    exit_code INTEGER,
                    updated_at TEXT NOT NULL,
                    message TEXT
                )
                """
            )

    def upsert_status(
        self,
        run_id: str,
        profile: str,
        status: str,
        message: str,
        stage: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO backup_runs(run_id, profile, status, stage, exit_code, updated_at, message)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status=excluded.status,
                    stage=excluded.stage,
                    exit_code=excluded.exit_code,
                    updated_at=excluded.updated_at,
                    message=excluded.message
                """,
                (run_id, profile, status, stage, exit_code, timestamp, message),
            )

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT run_id, profile, status, stage, exit_code, updated_at, message FROM backup_runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
            return dict(row) if row else None

    def list_runs(self, profile: str | None = None) -> List[Dict[str, Any]]:
        query = "SELECT run_id, profile, status, stage, exit_code, updated_at, message FROM backup_runs"
        params: tuple = ()
        if profile:
            query += " WHERE profile = ?"
            params = (profile,)
        query += " ORDER BY updated_at DESC, rowid DESC"
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            return [dict(row) for row in conn.execute(query, params).fetchall()]
