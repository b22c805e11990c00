from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from ..errors import RecordConflict, StoreUnavailable
from ..logging import logger
from ..scheduler import ReviewItem
from .base import ItemMetadata, ReviewEvent
from .common import normalize_non_negative_int, parse_iso, to_iso


_REVIEW_ITEM_COLUMNS = (
    "learner_id, item_id, easiness_factor, interval_days, repetitions, "
    "next_review_date, last_reviewed_at, created_at, revision"
)


class SQLiteReviewStore:
    """SQLite-backed review record store.

    - review_items: (learner_id, item_id) ごとに1行の SM-2 状態
    - review_sessions: 採点履歴（品質・所要時間）
    - puzzles: キュー表示用のパズルメタデータ
    - 採点の反映は BEGIN IMMEDIATE の中で revision を照合してから書き込む
    """

    def __init__(self, db_path: str, *, timeout_seconds: float = 10.0) -> None:
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open review database: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"review database error: {exc}") from exc
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_items (
                        learner_id TEXT NOT NULL,
                        item_id TEXT NOT NULL,
                        easiness_factor REAL NOT NULL DEFAULT 2.5,
                        interval_days INTEGER NOT NULL DEFAULT 1,
                        repetitions INTEGER NOT NULL DEFAULT 0,
                        next_review_date TEXT NOT NULL,
                        last_reviewed_at TEXT,
                        created_at TEXT NOT NULL,
                        revision INTEGER NOT NULL DEFAULT 1,
                        PRIMARY KEY(learner_id, item_id)
                    );
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_review_items_due ON review_items(learner_id, next_review_date);"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS review_sessions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        learner_id TEXT NOT NULL,
                        item_id TEXT NOT NULL,
                        quality INTEGER NOT NULL,
                        time_spent_seconds INTEGER NOT NULL DEFAULT 0,
                        reviewed_at TEXT NOT NULL,
                        easiness_factor REAL NOT NULL,
                        interval_days INTEGER NOT NULL,
                        next_review_date TEXT NOT NULL
                    );
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_review_sessions_learner ON review_sessions(learner_id, reviewed_at);"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS puzzles (
                        item_id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        math_concept TEXT NOT NULL DEFAULT '',
                        difficulty INTEGER NOT NULL DEFAULT 1,
                        zone_id TEXT,
                        updated_at TEXT NOT NULL
                    );
                    """
                )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ReviewItem:
        return ReviewItem(
            learner_id=str(row["learner_id"]),
            item_id=str(row["item_id"]),
            easiness_factor=float(row["easiness_factor"]),
            interval_days=int(row["interval_days"]),
            repetitions=normalize_non_negative_int(row["repetitions"]),
            next_review_date=parse_iso(row["next_review_date"]),
            last_reviewed_at=parse_iso(row["last_reviewed_at"]),
            created_at=parse_iso(row["created_at"]),
            revision=int(row["revision"]),
        )

    @staticmethod
    def _item_params(item: ReviewItem, revision: int) -> tuple:
        return (
            item.learner_id,
            item.item_id,
            float(item.easiness_factor),
            int(item.interval_days),
            int(item.repetitions),
            to_iso(item.next_review_date),
            to_iso(item.last_reviewed_at),
            to_iso(item.created_at or datetime.now(UTC)),
            revision,
        )

    # --- review records ---
    def get_review_item(self, learner_id: str, item_id: str) -> ReviewItem | None:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_REVIEW_ITEM_COLUMNS} FROM review_items WHERE learner_id = ? AND item_id = ?;",
                (learner_id, item_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_item(row)

    def insert_review_item(self, item: ReviewItem) -> bool:
        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    f"""
                    INSERT INTO review_items ({_REVIEW_ITEM_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(learner_id, item_id) DO NOTHING;
                    """,
                    self._item_params(item, 1),
                )
                return cur.rowcount == 1

    def commit_review(self, item: ReviewItem, event: ReviewEvent, *, expected_revision: int) -> ReviewItem:
        with self._conn() as conn:
            # BEGIN IMMEDIATE で書き込みロックを先に取得し、同一行への並行採点を直列化する
            conn.execute("BEGIN IMMEDIATE;")
            try:
                row = conn.execute(
                    "SELECT revision FROM review_items WHERE learner_id = ? AND item_id = ?;",
                    (item.learner_id, item.item_id),
                ).fetchone()
                current_revision = int(row["revision"]) if row is not None else 0
                if current_revision != expected_revision:
                    raise RecordConflict(
                        item.learner_id,
                        item.item_id,
                        f"expected revision {expected_revision}, found {current_revision}",
                    )
                new_revision = current_revision + 1
                conn.execute(
                    f"""
                    INSERT INTO review_items ({_REVIEW_ITEM_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(learner_id, item_id) DO UPDATE SET
                        easiness_factor = excluded.easiness_factor,
                        interval_days = excluded.interval_days,
                        repetitions = excluded.repetitions,
                        next_review_date = excluded.next_review_date,
                        last_reviewed_at = excluded.last_reviewed_at,
                        revision = excluded.revision;
                    """,
                    self._item_params(item, new_revision),
                )
                conn.execute(
                    """
                    INSERT INTO review_sessions(
                        learner_id, item_id, quality, time_spent_seconds, reviewed_at,
                        easiness_factor, interval_days, next_review_date
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        event.learner_id,
                        event.item_id,
                        int(event.quality),
                        normalize_non_negative_int(event.time_spent_seconds),
                        to_iso(event.reviewed_at),
                        float(event.easiness_factor),
                        int(event.interval_days),
                        to_iso(event.next_review_date),
                    ),
                )
                conn.execute("COMMIT;")
            except Exception:
                try:
                    conn.execute("ROLLBACK;")
                except sqlite3.Error:
                    logger.warning(
                        "sqlite_review_rollback_failed",
                        learner_id=item.learner_id,
                        item_id=item.item_id,
                    )
                raise

        stored = self.get_review_item(item.learner_id, item.item_id)
        if stored is None:  # pragma: no cover - committed row must be readable
            raise StoreUnavailable("review record vanished after commit")
        return stored

    def list_due_items(self, learner_id: str, now: datetime, limit: int | None = None) -> list[ReviewItem]:
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                SELECT {_REVIEW_ITEM_COLUMNS} FROM review_items
                WHERE learner_id = ? AND next_review_date <= ?
                ORDER BY next_review_date ASC, item_id ASC
                LIMIT ?;
                """,
                (learner_id, to_iso(now), -1 if limit is None else int(limit)),
            )
            return [self._row_to_item(row) for row in cur.fetchall()]

    def list_review_items(self, learner_id: str) -> list[ReviewItem]:
        with self._conn() as conn:
            cur = conn.execute(
                f"SELECT {_REVIEW_ITEM_COLUMNS} FROM review_items WHERE learner_id = ? ORDER BY item_id ASC;",
                (learner_id,),
            )
            return [self._row_to_item(row) for row in cur.fetchall()]

    def list_review_events(self, learner_id: str, since: datetime) -> list[ReviewEvent]:
        with self._conn() as conn:
            cur = conn.execute(
                """
                SELECT learner_id, item_id, quality, time_spent_seconds, reviewed_at,
                       easiness_factor, interval_days, next_review_date
                FROM review_sessions
                WHERE learner_id = ? AND reviewed_at >= ?
                ORDER BY reviewed_at ASC, id ASC;
                """,
                (learner_id, to_iso(since)),
            )
            rows = cur.fetchall()
        return [
            ReviewEvent(
                learner_id=str(row["learner_id"]),
                item_id=str(row["item_id"]),
                quality=int(row["quality"]),
                time_spent_seconds=int(row["time_spent_seconds"]),
                reviewed_at=parse_iso(row["reviewed_at"]),  # type: ignore[arg-type]
                easiness_factor=float(row["easiness_factor"]),
                interval_days=int(row["interval_days"]),
                next_review_date=parse_iso(row["next_review_date"]),  # type: ignore[arg-type]
            )
            for row in rows
        ]

    # --- puzzle metadata ---
    def save_item_metadata(self, metadata: ItemMetadata) -> None:
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO puzzles (item_id, title, math_concept, difficulty, zone_id, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(item_id) DO UPDATE SET
                        title = excluded.title,
                        math_concept = excluded.math_concept,
                        difficulty = excluded.difficulty,
                        zone_id = excluded.zone_id,
                        updated_at = excluded.updated_at;
                    """,
                    (
                        metadata.item_id,
                        metadata.title,
                        metadata.math_concept,
                        int(metadata.difficulty),
                        metadata.zone_id,
                        to_iso(datetime.now(UTC)),
                    ),
                )

    def get_item_metadata(self, item_ids: Iterable[str]) -> Mapping[str, ItemMetadata]:
        ids = sorted({str(item_id) for item_id in item_ids})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._conn() as conn:
            cur = conn.execute(
                f"SELECT item_id, title, math_concept, difficulty, zone_id FROM puzzles WHERE item_id IN ({placeholders});",
                ids,
            )
            rows = cur.fetchall()
        return {
            str(row["item_id"]): ItemMetadata(
                item_id=str(row["item_id"]),
                title=str(row["title"]),
                math_concept=str(row["math_concept"] or ""),
                difficulty=int(row["difficulty"]),
                zone_id=row["zone_id"],
            )
            for row in rows
        }
