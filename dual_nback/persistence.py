from __future__ import annotations

import logging
import os
import sqlite3
import time
from pathlib import Path

from .engine import BlockResult

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
HISTORY_PATH_ENV = "DUAL_NBACK_HISTORY_PATH"


def default_history_path() -> Path:
    explicit = os.environ.get(HISTORY_PATH_ENV)
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".dual_nback_history.sqlite3"


def open_db(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    _migrate(conn)
    return conn


def _utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time()))


def _migrate(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version;").fetchone()
    ver = int(row[0]) if row else 0
    if ver >= SCHEMA_VERSION:
        return

    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session (
                id INTEGER PRIMARY KEY,
                created_at_utc TEXT NOT NULL,
                app_version TEXT NOT NULL,
                rng_seed INTEGER NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS block (
                id INTEGER PRIMARY KEY,
                session_id INTEGER NOT NULL REFERENCES session(id) ON DELETE CASCADE,
                block_number INTEGER NOT NULL,
                n INTEGER NOT NULL,
                next_n INTEGER NOT NULL,
                trials INTEGER NOT NULL,
                duration_ms INTEGER NOT NULL,
                completed_at_utc TEXT NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metric (
                block_id INTEGER NOT NULL REFERENCES block(id) ON DELETE CASCADE,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (block_id, key)
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_block_session ON block(session_id, block_number);")
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


class BlockHistoryRecorder:
    """Appends completed blocks of one training session to the history database.

    The session row is created lazily with the first block. Write failures are
    logged and reported as None; they never interrupt training.
    """

    def __init__(self, *, db_path: Path, app_version: str, seed: int) -> None:
        self._db_path = db_path
        self._app_version = str(app_version)
        self._seed = int(seed)
        self._session_id: int | None = None

    @property
    def session_id(self) -> int | None:
        return self._session_id

    def record(self, result: BlockResult) -> int | None:
        try:
            conn = open_db(self._db_path)
        except sqlite3.Error as exc:
            logger.warning("Block history unavailable at %s: %s", self._db_path, exc)
            return None
        try:
            if self._session_id is None:
                self._session_id = _insert_session(conn=conn, app_version=self._app_version, seed=self._seed)
            return _insert_block(conn=conn, session_id=self._session_id, result=result)
        except sqlite3.Error as exc:
            logger.warning("Could not record block %d: %s", result.block_number, exc)
            return None
        finally:
            conn.close()


def _insert_session(*, conn: sqlite3.Connection, app_version: str, seed: int) -> int:
    with conn:
        cur = conn.execute(
            "INSERT INTO session(created_at_utc, app_version, rng_seed) VALUES (?, ?, ?)",
            (_utc_now_iso(), app_version, int(seed)),
        )
    return int(cur.lastrowid)


def _insert_block(*, conn: sqlite3.Connection, session_id: int, result: BlockResult) -> int:
    duration_ms = int(round(max(0.0, result.completed_at_s - result.started_at_s) * 1000.0))

    with conn:
        cur = conn.execute(
            """
            INSERT INTO block(
                session_id, block_number, n, next_n, trials, duration_ms, completed_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(session_id),
                int(result.block_number),
                int(result.n),
                int(result.next_n),
                int(result.trials),
                duration_ms,
                _utc_now_iso(),
            ),
        )
        block_id = int(cur.lastrowid)

        t = result.tally
        metrics = {
            "pos_hits": str(t.pos_hits),
            "pos_misses": str(t.pos_misses),
            "pos_false_alarms": str(t.pos_false_alarms),
            "snd_hits": str(t.snd_hits),
            "snd_misses": str(t.snd_misses),
            "snd_false_alarms": str(t.snd_false_alarms),
            "position_accuracy": f"{result.position_accuracy:.6f}",
            "sound_accuracy": f"{result.sound_accuracy:.6f}",
            "combined_accuracy": f"{result.combined_accuracy:.6f}",
        }
        for k, v in metrics.items():
            conn.execute("INSERT INTO metric(block_id, key, value) VALUES (?, ?, ?)", (block_id, k, v))

    return block_id
