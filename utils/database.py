"""SQLite store for captured passes and their images.

The store is opened as a single logical writer: one shared connection,
serialised by a re-entrant lock, lives for the whole process.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable

import config
from utils.logging import get_logger

logger = get_logger('skyarchive.database')

DB_PATH = Path(config.DATABASE_PATH)
DB_DIR = DB_PATH.parent

_connection: sqlite3.Connection | None = None
_lock = threading.RLock()

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS passes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE,
        satellite TEXT,
        timestamp INTEGER,
        rawDataPath TEXT,
        downlink TEXT
    );

    CREATE TABLE IF NOT EXISTS images (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT,
        composite TEXT,
        sensor TEXT,
        mapOverlay INTEGER,
        corrected INTEGER,
        filled INTEGER,
        vPixels INTEGER,
        passId INTEGER,
        needsThumb INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY (passId) REFERENCES passes(id)
    );

    CREATE INDEX IF NOT EXISTS idx_images_needs_thumb ON images(needsThumb);
    CREATE INDEX IF NOT EXISTS idx_images_pass_id ON images(passId);
'''

# Columns added after the first release; a table missing any of them is rebuilt
REQUIRED_COLUMNS = {
    'passes': 'downlink',
    'images': 'needsThumb',
}


def get_connection() -> sqlite3.Connection:
    """Get the shared database connection, opening it on first use."""
    global _connection
    with _lock:
        if _connection is None:
            DB_DIR.mkdir(parents=True, exist_ok=True)
            _connection = sqlite3.connect(str(DB_PATH), check_same_thread=False)
            _connection.row_factory = sqlite3.Row
            _connection.execute('PRAGMA foreign_keys = ON')
            _connection.execute('PRAGMA journal_mode = WAL')
            _connection.execute('PRAGMA synchronous = NORMAL')
            logger.debug(f"Opened database {DB_PATH}")
        return _connection


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database access.

    Holds the writer lock for the duration of the block and commits on
    success or rolls back on error.
    """
    with _lock:
        conn = get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row['name'] for row in conn.execute(f'PRAGMA table_info({table})')}


def init_db() -> None:
    """Create the schema, rebuilding tables left behind by an older schema."""
    with get_db() as conn:
        for table, column in REQUIRED_COLUMNS.items():
            columns = _table_columns(conn, table)
            if columns and column not in columns:
                logger.warning(
                    f"Table '{table}' is missing column '{column}'; dropping passes and images"
                )
                conn.execute('DROP TABLE IF EXISTS images')
                conn.execute('DROP TABLE IF EXISTS passes')
                break
        conn.executescript(SCHEMA)
    logger.info(f"Database initialized at {DB_PATH}")


def close_db() -> None:
    """Close the shared connection."""
    global _connection
    with _lock:
        if _connection is not None:
            _connection.close()
            _connection = None


def drop_tables() -> None:
    """Drop and recreate both tables."""
    with get_db() as conn:
        conn.execute('DROP TABLE IF EXISTS images')
        conn.execute('DROP TABLE IF EXISTS passes')
        conn.executescript(SCHEMA)


def clear_tables() -> None:
    """Delete every pass and image row."""
    with get_db() as conn:
        conn.execute('DELETE FROM images')
        conn.execute('DELETE FROM passes')


# =============================================================================
# Passes and images
# =============================================================================

def pass_exists(name: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute('SELECT 1 FROM passes WHERE name = ?', (name,))
        return cursor.fetchone() is not None


def store_pass(
    name: str,
    satellite: str,
    timestamp: int | None,
    raw_data_path: str | None,
    downlink: str,
    images: Iterable[dict],
) -> int:
    """Insert a pass and all of its images in one transaction.

    A pass already stored under the same name is replaced together with
    its images. Nothing is written if any insert fails.

    Returns:
        The new pass id.
    """
    with get_db() as conn:
        conn.execute(
            'DELETE FROM images WHERE passId IN (SELECT id FROM passes WHERE name = ?)',
            (name,)
        )
        cursor = conn.execute('''
            INSERT OR REPLACE INTO passes (name, satellite, timestamp, rawDataPath, downlink)
            VALUES (?, ?, ?, ?, ?)
        ''', (name, satellite, timestamp, raw_data_path, downlink))
        pass_id = cursor.lastrowid

        conn.executemany('''
            INSERT INTO images
            (path, composite, sensor, mapOverlay, corrected, filled, vPixels, passId, needsThumb)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
        ''', [
            (
                img['path'],
                img['composite'],
                img['sensor'],
                img['mapOverlay'],
                img['corrected'],
                img['filled'],
                img['vPixels'],
                pass_id,
            )
            for img in images
        ])
        return pass_id


def get_pass(name: str) -> dict | None:
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT id, name, satellite, timestamp, rawDataPath, downlink
            FROM passes WHERE name = ?
        ''', (name,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_pass_images(pass_id: int) -> list[dict]:
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT id, path, composite, sensor, mapOverlay, corrected, filled,
                   vPixels, passId, needsThumb
            FROM images WHERE passId = ?
            ORDER BY path
        ''', (pass_id,))
        return [dict(row) for row in cursor]


def get_store_summary() -> dict:
    """Return row counts for the status endpoint."""
    with get_db() as conn:
        passes = conn.execute('SELECT COUNT(*) FROM passes').fetchone()[0]
        images = conn.execute('SELECT COUNT(*) FROM images').fetchone()[0]
        pending = conn.execute(
            'SELECT COUNT(*) FROM images WHERE needsThumb = 1'
        ).fetchone()[0]
    return {
        'passes': passes,
        'images': images,
        'pending_thumbnails': pending,
    }


# =============================================================================
# Thumbnail bookkeeping
# =============================================================================

def count_pending_thumbnails() -> int:
    with get_db() as conn:
        return conn.execute('SELECT COUNT(*) FROM images WHERE needsThumb = 1').fetchone()[0]


PENDING_BATCH_SIZE = 500


def iter_pending_thumbnails(batch_size: int = PENDING_BATCH_SIZE) -> Generator[tuple[int, str], None, None]:
    """Stream (id, path) for every image still waiting for a thumbnail.

    Rows are read in id order one batch at a time; the writer lock is only
    held while a batch is fetched, never while the caller consumes it.
    """
    last_id = 0
    while True:
        with get_db() as conn:
            rows = conn.execute('''
                SELECT id, path FROM images
                WHERE needsThumb = 1 AND id > ?
                ORDER BY id
                LIMIT ?
            ''', (last_id, batch_size)).fetchall()
        if not rows:
            return
        for row in rows:
            yield row['id'], row['path']
        last_id = rows[-1]['id']


def mark_thumbnails_done(image_ids: Iterable[int]) -> int:
    """Clear needsThumb for every id in a single transaction.

    Returns:
        Number of ids submitted.
    """
    ids = [(image_id,) for image_id in image_ids]
    if not ids:
        return 0
    with get_db() as conn:
        conn.executemany('UPDATE images SET needsThumb = 0 WHERE id = ?', ids)
    return len(ids)
