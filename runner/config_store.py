from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import List, Optional

from isobackup.backup.config import DB_PATH, BackupConfig, parse_backup_config


class BackupProfileStore:
    """Profils de backup enregistrés pour le runner, un par nom."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_schema()

    def ensure_schema(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_profiles (
                    name TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def list_profiles(self) -> List[BackupConfig]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("SELECT payload FROM backup_profiles ORDER BY name").fetchall()
            return [parse_backup_config(json.loads(row[0])) for row in rows]

    def get(self, name: str) -> Optional[BackupConfig]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM backup_profiles WHERE name = ?", (name,)).fetchone()
            if row:
                return parse_backup_config(json.loads(row[0]))
            return None

    def upsert(self, config: BackupConfig) -> None:
        payload = json.dumps(config.to_payload(), ensure_ascii=False)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO backup_profiles (name, payload)
                VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET payload=excluded.payload
                """,
                (config.name, payload),
            )
            conn.commit()
