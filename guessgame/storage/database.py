"""Database — SQLite persistence layer.

Manages connections, runs migrations, and provides the queries used by
the guess engine, the pollers and the API.

The connection runs in autocommit mode; multi-statement units of work go
through ``transaction()``, which opens ``BEGIN IMMEDIATE`` so the SQLite
write lock is held from the first read. That serialises every writer
(threads and processes alike), which is what makes the engine's
check-then-write sequences atomic.

One ``Database`` per task: API requests, the resolution poller and the
price poller each open their own connection.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from guessgame.config import StorageConfig
from guessgame.storage.migrations import run_migrations
from guessgame.storage.models import (
    Direction,
    GuessRecord,
    PlayerRecord,
    PriceSample,
)
from guessgame.observability.logger import get_logger

log = get_logger(__name__)


def to_db_time(value: dt.datetime) -> str:
    """Fixed-width UTC ISO string so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


class Database:
    """SQLite database for the game."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self, migrate: bool = True) -> None:
        """Open database connection and (optionally) run migrations."""
        db_path = Path(self._config.sqlite_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(db_path),
            timeout=self._config.busy_timeout_secs,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        if migrate:
            run_migrations(self._conn)
        log.debug("database.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction: commit on success, roll back on any exception."""
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ── Players ──────────────────────────────────────────────────────

    def get_or_create_player(self, external_id: str, now: dt.datetime) -> PlayerRecord:
        """Upsert-on-read: a new identity starts with score 0."""
        ts = to_db_time(now)
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO players (external_id, score, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            """,
            (external_id, ts, ts),
        )
        if cur.rowcount:
            log.info("player.created", external_id=external_id)
        row = self.conn.execute(
            "SELECT * FROM players WHERE external_id = ?", (external_id,)
        ).fetchone()
        return PlayerRecord(**dict(row))

    def get_player(self, player_id: int) -> PlayerRecord | None:
        row = self.conn.execute(
            "SELECT * FROM players WHERE id = ?", (player_id,)
        ).fetchone()
        if row:
            return PlayerRecord(**dict(row))
        return None

    def set_player_score(self, player_id: int, score: int, now: dt.datetime) -> None:
        self.conn.execute(
            "UPDATE players SET score = ?, updated_at = ? WHERE id = ?",
            (score, to_db_time(now), player_id),
        )

    def get_top_players(self, limit: int = 10) -> list[PlayerRecord]:
        rows = self.conn.execute(
            "SELECT * FROM players ORDER BY score DESC, id ASC LIMIT ?", (limit,)
        ).fetchall()
        return [PlayerRecord(**dict(r)) for r in rows]

    # ── Price Cache ──────────────────────────────────────────────────

    def get_latest_price(self) -> PriceSample | None:
        row = self.conn.execute(
            "SELECT * FROM price_cache ORDER BY fetched_at DESC, id DESC LIMIT 1"
        ).fetchone()
        if row:
            return PriceSample(**dict(row))
        return None

    def insert_price_if_changed(
        self,
        price: int,
        source_updated_at: dt.datetime,
        fetched_at: dt.datetime,
    ) -> PriceSample | None:
        """Append a sample unless it repeats the latest one.

        Returns the new sample, or None when price and source timestamp
        both match the most recent cached sample.
        """
        with self.transaction():
            latest = self.get_latest_price()
            if (
                latest is not None
                and latest.price == price
                and to_db_time(latest.source_updated_at) == to_db_time(source_updated_at)
            ):
                return None
            cur = self.conn.execute(
                "INSERT INTO price_cache (price, fetched_at, source_updated_at) VALUES (?, ?, ?)",
                (price, to_db_time(fetched_at), to_db_time(source_updated_at)),
            )
            sample_id = cur.lastrowid
        return PriceSample(
            id=sample_id,
            price=price,
            fetched_at=fetched_at,
            source_updated_at=source_updated_at,
        )

    def get_price_chart(self, minutes: int = 15) -> list[dict[str, Any]]:
        """Average price per minute, newest minute first."""
        rows = self.conn.execute(
            """
            SELECT substr(fetched_at, 12, 5) AS minute_label,
                   AVG(price) AS avg_price
            FROM price_cache
            GROUP BY substr(fetched_at, 1, 16)
            ORDER BY substr(fetched_at, 1, 16) DESC
            LIMIT ?
            """,
            (minutes,),
        ).fetchall()
        return [
            {"minute_label": r["minute_label"], "price": round(r["avg_price"]) / 100}
            for r in rows
        ]

    # ── Guesses ──────────────────────────────────────────────────────

    def find_active_guess(
        self, player_id: int, now: dt.datetime, guess_id: int | None = None
    ) -> GuessRecord | None:
        """Newest unresolved, unexpired guess for a player (optionally one id)."""
        sql = (
            "SELECT * FROM guesses WHERE player_id = ? "
            "AND resolved_at IS NULL AND expires_at > ?"
        )
        params: list[Any] = [player_id, to_db_time(now)]
        if guess_id is not None:
            sql += " AND id = ?"
            params.append(guess_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT 1"
        row = self.conn.execute(sql, params).fetchone()
        if row:
            return GuessRecord.from_row(row)
        return None

    def insert_guess(
        self,
        player_id: int,
        direction: Direction,
        sample: PriceSample,
        created_at: dt.datetime,
        expires_at: dt.datetime,
    ) -> GuessRecord:
        cur = self.conn.execute(
            """
            INSERT INTO guesses
                (player_id, guess_direction, price_at_guess,
                 price_cache_id_at_guess, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                player_id, direction.sign, sample.price, sample.id,
                to_db_time(created_at), to_db_time(expires_at),
            ),
        )
        guess = self.get_guess(cur.lastrowid)
        assert guess is not None
        return guess

    def mark_guess_resolved(
        self,
        guess_id: int,
        resolved_at: dt.datetime,
        price_cache_id_at_resolve: int,
        is_correct: bool | None = None,
        price_at_resolve: int | None = None,
    ) -> bool:
        """Set the resolution fields once. Returns False if already resolved."""
        cur = self.conn.execute(
            """
            UPDATE guesses
               SET resolved_at = ?, is_correct = ?, price_at_resolve = ?,
                   price_cache_id_at_resolve = ?
             WHERE id = ? AND resolved_at IS NULL
            """,
            (
                to_db_time(resolved_at),
                None if is_correct is None else int(is_correct),
                price_at_resolve,
                price_cache_id_at_resolve,
                guess_id,
            ),
        )
        return cur.rowcount == 1

    def get_guess(self, guess_id: int) -> GuessRecord | None:
        row = self.conn.execute(
            "SELECT * FROM guesses WHERE id = ?", (guess_id,)
        ).fetchone()
        if row:
            return GuessRecord.from_row(row)
        return None

    def get_guesses(self, player_id: int, limit: int = 20) -> list[GuessRecord]:
        rows = self.conn.execute(
            "SELECT * FROM guesses WHERE player_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (player_id, limit),
        ).fetchall()
        return [GuessRecord.from_row(r) for r in rows]

    def count_guesses(self, player_id: int | None = None) -> int:
        if player_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM guesses").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM guesses WHERE player_id = ?", (player_id,)
            ).fetchone()
        return int(row[0]) if row else 0

    def find_due_guesses(
        self, now: dt.datetime, created_before: dt.datetime, limit: int = 100
    ) -> list[GuessRecord]:
        """Pending guesses past their game window that have not yet expired."""
        rows = self.conn.execute(
            """
            SELECT * FROM guesses
             WHERE created_at <= ? AND resolved_at IS NULL AND expires_at > ?
             ORDER BY created_at DESC, id DESC
             LIMIT ?
            """,
            (to_db_time(created_before), to_db_time(now), limit),
        ).fetchall()
        return [GuessRecord.from_row(r) for r in rows]

    # ── Engine State ─────────────────────────────────────────────────

    def set_engine_state(self, key: str, value: str) -> None:
        """Persist poller state (for cross-process status reads)."""
        self.conn.execute(
            "INSERT OR REPLACE INTO engine_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, to_db_time(dt.datetime.now(dt.timezone.utc))),
        )

    def get_engine_state(self, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM engine_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def get_all_engine_state(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT key, value FROM engine_state").fetchall()
        return {r["key"]: r["value"] for r in rows}
