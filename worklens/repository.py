from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logging_utils import get_logger
from .utils import ensure_directory

logger = get_logger("repository")


class LocalAnalysisArchive:
    """Keeps analyses the backend registry refused, in memory and optionally in SQLite.

    Entries are keyed by ``(session_id, kind, batch_index)``; storing the same key
    again replaces the earlier entry.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path
        self._memory: Dict[tuple[str, str, int], dict[str, Any]] = {}
        if db_path is not None:
            ensure_directory(db_path.parent)
            self._initialize()

    def _initialize(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analyses (
                    session_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    batch_index INTEGER NOT NULL,
                    stored_at TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (session_id, kind, batch_index)
                )
                """
            )
            conn.commit()

    def save(self, session_id: str, kind: str, batch_index: int, payload: dict[str, Any]) -> None:
        stored_at = datetime.now(timezone.utc).isoformat()
        self._memory[(session_id, kind, batch_index)] = {"stored_at": stored_at, **payload}
        if self.db_path is not None:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO analyses (session_id, kind, batch_index, stored_at, payload)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (session_id, kind, batch_index, stored_at, json.dumps(payload, ensure_ascii=False)),
                )
                conn.commit()
        logger.info("Archived %s analysis %s for session %s locally", kind, batch_index, session_id)

    def for_session(self, session_id: str, kind: str | None = None) -> List[dict[str, Any]]:
        if self.db_path is not None:
            query = "SELECT kind, batch_index, stored_at, payload FROM analyses WHERE session_id = ?"
            params: list[Any] = [session_id]
            if kind:
                query += " AND kind = ?"
                params.append(kind)
            query += " ORDER BY kind, batch_index"
            with sqlite3.connect(self.db_path) as conn:
                rows = conn.execute(query, params).fetchall()
            return [
                {"kind": row[0], "batch_index": row[1], "stored_at": row[2], **json.loads(row[3])}
                for row in rows
            ]

        entries = [
            {"kind": key[1], "batch_index": key[2], **value}
            for key, value in self._memory.items()
            if key[0] == session_id and (kind is None or key[1] == kind)
        ]
        return sorted(entries, key=lambda entry: (entry["kind"], entry["batch_index"]))

    def count(self) -> int:
        if self.db_path is not None:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute("SELECT COUNT(*) FROM analyses").fetchone()
            return int((row or [0])[0])
        return len(self._memory)
