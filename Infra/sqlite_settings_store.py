# ensemble/Infra/sqlite_settings_store.py
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from Domain.schemas import EnsembleSettings, settings_from_dict

logger = logging.getLogger(__name__)


@dataclass
class SQLiteSettingsStore:
    """
    SQLite-backed EnsembleSettings store (single row per key).

    - load(): defaults if nothing is stored yet or the row is unreadable
    - save(): upserts the whole settings object
    - update(**changes): validated partial update, returns the new settings
    """

    db_path: str
    key: str = "ensemble"
    schema_version: int = 1

    def __post_init__(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    json TEXT NOT NULL,
                    schema_version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def load(self) -> EnsembleSettings:
        row = self._conn.execute(
            "SELECT json FROM settings WHERE key = ? LIMIT 1;",
            (self.key,),
        ).fetchone()
        if row is None:
            return EnsembleSettings()

        try:
            return settings_from_dict(json.loads(row[0]))
        except ValueError as e:
            # covers JSONDecodeError and pydantic ValidationError
            logger.warning("stored settings for %r unreadable, using defaults: %s", self.key, e)
            return EnsembleSettings()

    def save(self, settings: EnsembleSettings) -> None:
        json_str = json.dumps(settings.model_dump(), ensure_ascii=False, separators=(",", ":"))
        updated_at = datetime.now(timezone.utc).isoformat()

        with self._conn:
            self._conn.execute(
                """
                INSERT INTO settings(key, json, schema_version, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    json=excluded.json,
                    schema_version=excluded.schema_version,
                    updated_at=excluded.updated_at;
                """,
                (self.key, json_str, int(self.schema_version), updated_at),
            )

    def update(self, **changes: Any) -> EnsembleSettings:
        merged = {**self.load().model_dump(), **changes}
        settings = EnsembleSettings.model_validate(merged)
        self.save(settings)
        return settings


@dataclass
class InMemorySettingsSource:
    settings: Optional[EnsembleSettings] = None

    def load(self) -> EnsembleSettings:
        if self.settings is None:
            self.settings = EnsembleSettings()
        return self.settings

    def save(self, settings: EnsembleSettings) -> None:
        self.settings = settings

    def update(self, **changes: Any) -> EnsembleSettings:
        merged = {**self.load().model_dump(), **changes}
        self.settings = EnsembleSettings.model_validate(merged)
        return self.settings
