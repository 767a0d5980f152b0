# storage.py - SQLite catalog of images held in the local image store
#
# One row per repository:tag, pointing at the archive file copied into the
# store directory.

import os
import sqlite3
from datetime import datetime
from typing import Optional


# =============================================================================
# Database Configuration
# =============================================================================

CATALOG_FILENAME = "catalog.db"


# =============================================================================
# Database Initialization
# =============================================================================

def init_database(store_dir: str) -> sqlite3.Connection:
    """
    Initialize the SQLite catalog for a local image store.

    Creates the store directory, database file and tables if they don't exist.

    Args:
        store_dir: Root directory of the local image store

    Returns:
        sqlite3.Connection to the database
    """
    if store_dir and not os.path.exists(store_dir):
        os.makedirs(store_dir)

    conn = sqlite3.connect(os.path.join(store_dir, CATALOG_FILENAME))
    conn.row_factory = sqlite3.Row  # Enable dict-like access to rows

    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS images (
            repo TEXT NOT NULL,
            tag TEXT NOT NULL,
            image_id TEXT NOT NULL,
            archive_path TEXT NOT NULL,
            layer_count INTEGER NOT NULL,
            archive_size INTEGER DEFAULT 0,
            stored_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (repo, tag)
        )
    """)
    conn.commit()
    return conn


# =============================================================================
# Catalog Access
# =============================================================================

def save_image_record(
    conn: sqlite3.Connection,
    repo: str,
    tag: str,
    image_id: str,
    archive_path: str,
    layer_count: int,
    archive_size: int = 0,
) -> None:
    """Insert or replace the catalog row for repo:tag."""
    cursor = conn.cursor()
    cursor.execute("""
        INSERT OR REPLACE INTO images (
            repo, tag, image_id, archive_path, layer_count, archive_size, stored_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        repo,
        tag,
        image_id,
        archive_path,
        layer_count,
        archive_size,
        datetime.now().isoformat(),
    ))
    conn.commit()


def get_image_record(conn: sqlite3.Connection, repo: str, tag: str) -> Optional[dict]:
    """
    Get the catalog row for repo:tag.

    Returns:
        Dict with image metadata, or None if not found
    """
    cursor = conn.cursor()
    cursor.execute(
        "SELECT * FROM images WHERE repo = ? AND tag = ?",
        (repo, tag)
    )
    row = cursor.fetchone()
    if row:
        return dict(row)
    return None


def delete_image_record(conn: sqlite3.Connection, repo: str, tag: str) -> bool:
    """Delete the row for repo:tag; returns True if a row was removed."""
    cursor = conn.cursor()
    cursor.execute("DELETE FROM images WHERE repo = ? AND tag = ?", (repo, tag))
    conn.commit()
    return cursor.rowcount > 0


def list_image_records(conn: sqlite3.Connection, repo: Optional[str] = None) -> list[dict]:
    """All catalog rows, optionally for one repository, newest first."""
    cursor = conn.cursor()
    if repo:
        cursor.execute(
            "SELECT * FROM images WHERE repo = ? ORDER BY stored_at DESC, tag", (repo,)
        )
    else:
        cursor.execute("SELECT * FROM images ORDER BY stored_at DESC, repo, tag")
    return [dict(row) for row in cursor.fetchall()]
