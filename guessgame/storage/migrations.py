"""Database migrations — create and upgrade schema."""

from __future__ import annotations

import sqlite3

from guessgame.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS players (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT NOT NULL UNIQUE,
            score INTEGER NOT NULL DEFAULT 0 CHECK (score >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS price_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            price INTEGER NOT NULL,
            fetched_at TEXT NOT NULL,
            source_updated_at TEXT NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_price_fetched ON price_cache(fetched_at);
        """,
        """
        CREATE TABLE IF NOT EXISTS guesses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            player_id INTEGER NOT NULL,
            guess_direction INTEGER NOT NULL CHECK (guess_direction IN (1, -1)),
            price_at_guess INTEGER NOT NULL,
            price_at_resolve INTEGER,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            resolved_at TEXT,
            is_correct INTEGER CHECK (is_correct IN (0, 1)),
            price_cache_id_at_guess INTEGER,
            price_cache_id_at_resolve INTEGER,
            FOREIGN KEY (player_id) REFERENCES players(id),
            FOREIGN KEY (price_cache_id_at_guess) REFERENCES price_cache(id),
            FOREIGN KEY (price_cache_id_at_resolve) REFERENCES price_cache(id),
            CHECK ((is_correct IS NULL) = (price_at_resolve IS NULL)),
            CHECK (is_correct IS NULL OR resolved_at IS NOT NULL)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_guesses_player ON guesses(player_id, created_at);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_guesses_pending ON guesses(resolved_at, expires_at);
        """,
    ],
    2: [
        # Poller state, read by the CLI status view
        """
        CREATE TABLE IF NOT EXISTS engine_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT
        );
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        conn.execute("BEGIN IMMEDIATE")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        log.info("migrations.applied", version=version)

    log.debug("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
