"""
SQLite database connection and schema management.

This module provides a simple, synchronous interface for the local cache
database with connection management and schema initialization.
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple, Union

from chat_inbox.config import DEFAULT_AVATAR_COLOR, DEFAULT_FOLDER

logger = logging.getLogger(__name__)


SCHEMA = [
    # Tabs
    """
    CREATE TABLE IF NOT EXISTS tabs (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0
    )
    """,
    # Groups
    f"""
    CREATE TABLE IF NOT EXISTS groups (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        avatar_color TEXT NOT NULL DEFAULT '{DEFAULT_AVATAR_COLOR}',
        is_pinned INTEGER NOT NULL DEFAULT 0,
        notify_enabled INTEGER NOT NULL DEFAULT 1,
        is_hidden INTEGER NOT NULL DEFAULT 0,
        tab_id INTEGER REFERENCES tabs(id) ON DELETE SET NULL,
        created_at TIMESTAMP
    )
    """,
    # Group members
    """
    CREATE TABLE IF NOT EXISTS group_members (
        id INTEGER PRIMARY KEY,
        group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        display_name TEXT,
        UNIQUE(group_id, email)
    )
    """,
    # Messages (bodies are stored encrypted)
    f"""
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY,
        uid INTEGER NOT NULL,
        message_id TEXT UNIQUE,
        group_id INTEGER REFERENCES groups(id) ON DELETE SET NULL,
        from_email TEXT NOT NULL,
        from_name TEXT,
        to_email TEXT,
        subject TEXT,
        body_text TEXT,
        body_html TEXT,
        received_at TIMESTAMP,
        is_read INTEGER NOT NULL DEFAULT 0,
        is_sent INTEGER NOT NULL DEFAULT 0,
        is_bookmarked INTEGER NOT NULL DEFAULT 0,
        folder TEXT NOT NULL DEFAULT '{DEFAULT_FOLDER}'
    )
    """,
    # Attachments
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id INTEGER PRIMARY KEY,
        message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        filename TEXT NOT NULL,
        mime_type TEXT,
        size INTEGER NOT NULL DEFAULT 0,
        local_path TEXT
    )
    """,
    # Settings (key-value store)
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_group_id ON messages(group_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_received_at ON messages(received_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_from_email ON messages(from_email)",
    "CREATE INDEX IF NOT EXISTS idx_group_members_email ON group_members(email)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_message_id ON attachments(message_id)",
]


class Database:
    """
    Local SQLite cache database.

    Each helper opens a short-lived connection, mirroring how the rest of
    the application treats the cache as a simple synchronous store.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def get_connection(self) -> sqlite3.Connection:
        """
        Get a SQLite database connection.

        Returns:
            A sqlite3.Connection with row_factory set to sqlite3.Row.

        Note:
            The connection should be closed by the caller when done.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def init_db(self) -> None:
        """
        Initialize the database schema.

        Creates all required tables if they don't exist.
        """
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            for statement in SCHEMA:
                cursor.execute(statement)
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Cache database ready at {self.path}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run several statements as one unit.

        Commits when the block finishes, rolls back if it raises.
        """
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(self, query: str, params: Tuple[Any, ...] = ()) -> sqlite3.Cursor:
        """
        Execute a SQL query and return the cursor.

        Args:
            query: SQL query string.
            params: Query parameters.

        Returns:
            The cursor object (useful for lastrowid, rowcount, etc.).
        """
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(query, params)
            conn.commit()
            return cursor
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()
        finally:
            conn.close()

    def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchone()
        finally:
            conn.close()
