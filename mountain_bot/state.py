"""Persistent storage for community submissions, quiz sets and scores."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .models import BugReport, QuizQuestion, ScoreRecord, UserMountain
from .text import matches

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_mountains (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_reading TEXT,
    elevation INTEGER,
    location TEXT,
    description TEXT,
    photo_url TEXT,
    added_by TEXT NOT NULL,
    approved INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_user_mountains_approved
    ON user_mountains (approved, created_at DESC);
CREATE TABLE IF NOT EXISTS quiz_scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT UNIQUE,
    username TEXT NOT NULL,
    score INTEGER NOT NULL,
    time_ms INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_quiz_scores_rank
    ON quiz_scores (score DESC, time_ms ASC);
CREATE TABLE IF NOT EXISTS bug_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    details TEXT NOT NULL,
    steps TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS quiz_sets (
    created_at INTEGER PRIMARY KEY,
    payload TEXT NOT NULL
);
"""

ANONYMOUS_USER_IDS = ("", "anonymous")

_USER_MOUNTAIN_COLUMNS = (
    "id, name, name_reading, elevation, location, description, photo_url, "
    "added_by, approved, created_at"
)


def _row_to_user_mountain(row: Sequence) -> UserMountain:
    created_at = None
    if row[9]:
        try:
            created_at = datetime.fromisoformat(row[9])
        except ValueError:
            created_at = None
    return UserMountain(
        id=int(row[0]),
        name=row[1],
        name_reading=row[2],
        elevation=row[3],
        location=row[4],
        description=row[5],
        photo_url=row[6],
        added_by=row[7],
        approved=bool(row[8]),
        created_at=created_at,
    )


class MountainStore:
    """High level interface for working with persistent state."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    # Community submissions ---------------------------------------------
    def add_user_mountain(
        self,
        *,
        name: str,
        added_by: str,
        name_reading: Optional[str] = None,
        elevation: Optional[int] = None,
        location: Optional[str] = None,
        description: Optional[str] = None,
        photo_url: Optional[str] = None,
        approved: bool = False,
        now: Optional[datetime] = None,
    ) -> UserMountain:
        created_at = (now or datetime.now(timezone.utc)).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "INSERT INTO user_mountains (name, name_reading, elevation, location, description, "
                "photo_url, added_by, approved, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    name,
                    name_reading,
                    elevation,
                    location,
                    description,
                    photo_url,
                    added_by,
                    int(approved),
                    created_at,
                ),
            )
            conn.commit()
            new_id = int(cursor.lastrowid)
        logger.info("Stored community mountain %s (%s) from %s", new_id, name, added_by)
        return UserMountain(
            id=new_id,
            name=name,
            name_reading=name_reading,
            elevation=elevation,
            location=location,
            description=description,
            photo_url=photo_url,
            added_by=added_by,
            approved=approved,
            created_at=datetime.fromisoformat(created_at),
        )

    def get_user_mountain(self, mountain_id: int) -> Optional[UserMountain]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_USER_MOUNTAIN_COLUMNS} FROM user_mountains WHERE id = ?",
                (mountain_id,),
            ).fetchone()
        return _row_to_user_mountain(row) if row else None

    def list_user_mountains(
        self,
        *,
        approved: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[UserMountain]:
        sql = f"SELECT {_USER_MOUNTAIN_COLUMNS} FROM user_mountains"
        params: list = []
        if approved is not None:
            sql += " WHERE approved = ?"
            params.append(int(approved))
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_user_mountain(row) for row in rows]

    def find_user_mountain(self, identifier: str, *, approved_only_for_name: bool = True) -> Optional[UserMountain]:
        """Match ``user-<id>``/``<id>`` exactly, else by name or reading.

        Exact id matches ignore the approval flag so moderators can inspect
        pending entries; name matches use the same kana-insensitive matching
        as search and only consider approved rows by default.
        """

        text = str(identifier or "").strip()
        if not text:
            return None
        raw_id = text[len("user-"):] if text.startswith("user-") else text
        if raw_id.isdigit():
            found = self.get_user_mountain(int(raw_id))
            if found is not None:
                return found
        candidates = self.list_user_mountains(approved=True if approved_only_for_name else None)
        return next((m for m in candidates if matches(text, (m.name, m.name_reading))), None)

    def approve_user_mountains(self, mountain_ids: Iterable[int]) -> int:
        ids = [int(i) for i in mountain_ids]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                f"UPDATE user_mountains SET approved = 1 WHERE id IN ({placeholders})", ids
            )
            conn.commit()
            return cursor.rowcount

    def reject_user_mountains(self, mountain_ids: Iterable[int]) -> int:
        ids = [int(i) for i in mountain_ids]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                f"DELETE FROM user_mountains WHERE approved = 0 AND id IN ({placeholders})", ids
            )
            conn.commit()
            return cursor.rowcount

    # Quiz scores -------------------------------------------------------
    def get_score(self, user_id: str) -> Optional[ScoreRecord]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT user_id, username, score, time_ms FROM quiz_scores WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return ScoreRecord(user_id=row[0], display_name=row[1], score=row[2], total_time_ms=row[3])

    def find_anonymous_score(self, display_name: str) -> Optional[ScoreRecord]:
        """Legacy rows were keyed by display name only."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT user_id, username, score, time_ms FROM quiz_scores "
                "WHERE (user_id IS NULL OR user_id IN (?, ?)) AND username = ? "
                "ORDER BY score DESC LIMIT 1",
                (*ANONYMOUS_USER_IDS, display_name),
            ).fetchone()
        if not row:
            return None
        return ScoreRecord(user_id=row[0], display_name=row[1], score=row[2], total_time_ms=row[3])

    def record_best_score(
        self,
        user_id: str,
        display_name: str,
        score: int,
        total_time_ms: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Store ``score`` if it beats the user's best; returns True when written.

        A missing user row first tries to adopt an anonymous row with the same
        display name before inserting a new one.
        """

        updated_at = (now or datetime.now(timezone.utc)).isoformat()
        existing = self.get_score(user_id)
        with closing(sqlite3.connect(self._db_path)) as conn:
            if existing is None:
                anonymous = conn.execute(
                    "SELECT id, score FROM quiz_scores "
                    "WHERE (user_id IS NULL OR user_id IN (?, ?)) AND username = ? "
                    "ORDER BY score DESC LIMIT 1",
                    (*ANONYMOUS_USER_IDS, display_name),
                ).fetchone()
                if anonymous is not None:
                    conn.execute(
                        "UPDATE quiz_scores SET user_id = ? WHERE id = ?",
                        (user_id, anonymous[0]),
                    )
                    conn.commit()
                    logger.info("Adopted anonymous score row for %s", display_name)
                    existing = ScoreRecord(user_id, display_name, int(anonymous[1]), 0)
            if existing is None:
                conn.execute(
                    "INSERT INTO quiz_scores (user_id, username, score, time_ms, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, display_name, score, total_time_ms, updated_at),
                )
                conn.commit()
                return True
            if score <= existing.score:
                return False
            conn.execute(
                "UPDATE quiz_scores SET username = ?, score = ?, time_ms = ?, updated_at = ? "
                "WHERE user_id = ?",
                (display_name, score, total_time_ms, updated_at, user_id),
            )
            conn.commit()
        return True

    def top_scores(self, limit: int = 10) -> List[ScoreRecord]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT user_id, username, score, time_ms FROM quiz_scores "
                "ORDER BY score DESC, time_ms ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [ScoreRecord(user_id=r[0], display_name=r[1], score=r[2], total_time_ms=r[3]) for r in rows]

    # Latest quiz slot --------------------------------------------------
    def save_quiz_set(self, created_at_ms: int, questions: Sequence[QuizQuestion], keep: int = 20) -> None:
        payload = json.dumps([q.to_dict() for q in questions], ensure_ascii=False)
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO quiz_sets (created_at, payload) VALUES (?, ?)",
                (int(created_at_ms), payload),
            )
            if keep > 0:
                conn.execute(
                    "DELETE FROM quiz_sets WHERE created_at NOT IN "
                    "(SELECT created_at FROM quiz_sets ORDER BY created_at DESC LIMIT ?)",
                    (keep,),
                )
            conn.commit()

    def latest_quiz_set(self) -> Optional[List[QuizQuestion]]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT payload FROM quiz_sets ORDER BY created_at DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        try:
            return [QuizQuestion.from_dict(item) for item in json.loads(row[0])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Latest quiz set is malformed; ignoring it")
            return None

    # Bug reports -------------------------------------------------------
    def add_bug_report(
        self,
        *,
        user_id: str,
        title: str,
        details: str,
        steps: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BugReport:
        created_at = (now or datetime.now(timezone.utc)).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "INSERT INTO bug_reports (user_id, title, details, steps, created_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, title, details, steps, created_at),
            )
            conn.commit()
            new_id = int(cursor.lastrowid)
        logger.info("Stored bug report %s from %s: %s", new_id, user_id, title)
        return BugReport(new_id, user_id, title, details, steps, datetime.fromisoformat(created_at))

    def list_bug_reports(self, limit: int = 10) -> List[BugReport]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT id, user_id, title, details, steps, created_at FROM bug_reports "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            BugReport(r[0], r[1], r[2], r[3], r[4], datetime.fromisoformat(r[5]) if r[5] else None)
            for r in rows
        ]


__all__ = ["ANONYMOUS_USER_IDS", "MountainStore"]
