"""
Cache repository layer for SQLite persistence.

This module saves and restores snapshots of the conversation and message
stores, converting between database rows and domain models. Message bodies
are encrypted before they reach the database.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.core.message_store import MessageStore
from chat_inbox.models import Attachment, Group, GroupMember, Message, Tab
from chat_inbox.storage.db import Database
from chat_inbox.storage.encryption import BodyCipher
from chat_inbox.utils.errors import CacheError, DecryptionError

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Persisted state of both stores. Unread counters are derived on load."""
    groups: List[Group] = field(default_factory=list)
    members: List[GroupMember] = field(default_factory=list)
    tabs: List[Tab] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.groups or self.tabs or self.messages)


# ============================================================================
# Snapshots
# ============================================================================

def snapshot_from_stores(conversations: ConversationStore, messages: MessageStore) -> Snapshot:
    groups = conversations.list_groups()
    members = [member for group in groups for member in conversations.list_members(group.id)]
    return Snapshot(
        groups=groups,
        members=members,
        tabs=conversations.list_tabs(),
        messages=messages.all_messages(),
    )


def apply_snapshot(snapshot: Snapshot, conversations: ConversationStore, messages: MessageStore) -> None:
    """Load a snapshot into the stores; unread counters are rebuilt."""
    conversations.load(snapshot.groups, snapshot.members, snapshot.tabs)
    messages.load(snapshot.messages)


def save_snapshot(database: Database, cipher: BodyCipher, snapshot: Snapshot) -> None:
    """
    Replace the cached state with a snapshot.

    Runs as one transaction, so a failure leaves the previous cache intact.

    Raises:
        CacheError: If the database cannot be written.
    """
    try:
        with database.transaction() as conn:
            cursor = conn.cursor()
            for table in ("attachments", "messages", "group_members", "groups", "tabs"):
                cursor.execute(f"DELETE FROM {table}")

            cursor.executemany(
                "INSERT INTO tabs (id, name, sort_order) VALUES (?, ?, ?)",
                [(tab.id, tab.name, tab.sort_order) for tab in snapshot.tabs]
            )
            cursor.executemany(
                """
                INSERT INTO groups (id, name, avatar_color, is_pinned, notify_enabled,
                                    is_hidden, tab_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        group.id,
                        group.name,
                        group.avatar_color,
                        1 if group.is_pinned else 0,
                        1 if group.notify_enabled else 0,
                        1 if group.is_hidden else 0,
                        group.tab_id,
                        group.created_at.isoformat() if group.created_at else None,
                    )
                    for group in snapshot.groups
                ]
            )
            cursor.executemany(
                "INSERT INTO group_members (id, group_id, email, display_name) VALUES (?, ?, ?, ?)",
                [(m.id, m.group_id, m.email, m.display_name) for m in snapshot.members]
            )
            cursor.executemany(
                """
                INSERT INTO messages (id, uid, message_id, group_id, from_email, from_name,
                                      to_email, subject, body_text, body_html, received_at,
                                      is_read, is_sent, is_bookmarked, folder)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [_message_to_row(message, cipher) for message in snapshot.messages]
            )
            cursor.executemany(
                """
                INSERT INTO attachments (id, message_id, filename, mime_type, size, local_path)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (a.id, a.message_id, a.filename, a.mime_type, a.size, a.local_path)
                    for message in snapshot.messages
                    for a in message.attachments
                ]
            )
    except sqlite3.Error as e:
        raise CacheError(f"Could not write cache: {e}") from e

    logger.info(
        f"Saved cache snapshot: {len(snapshot.groups)} groups, "
        f"{len(snapshot.messages)} messages"
    )


def load_snapshot(database: Database, cipher: BodyCipher) -> Snapshot:
    """
    Read the cached state.

    Bodies that cannot be decrypted are dropped (logged), the rest of the
    message is kept.

    Raises:
        CacheError: If the database cannot be read.
    """
    try:
        tab_rows = database.fetchall("SELECT * FROM tabs ORDER BY sort_order, id")
        group_rows = database.fetchall("SELECT * FROM groups ORDER BY id")
        member_rows = database.fetchall("SELECT * FROM group_members ORDER BY id")
        message_rows = database.fetchall("SELECT * FROM messages ORDER BY received_at, id")
        attachment_rows = database.fetchall("SELECT * FROM attachments ORDER BY id")
    except sqlite3.Error as e:
        raise CacheError(f"Could not read cache: {e}") from e

    attachments_by_message: Dict[int, List[Attachment]] = {}
    for row in attachment_rows:
        attachment = _row_to_attachment(row)
        attachments_by_message.setdefault(attachment.message_id, []).append(attachment)

    messages = []
    for row in message_rows:
        message = _row_to_message(row, cipher)
        message.attachments = attachments_by_message.get(message.id, [])
        messages.append(message)

    return Snapshot(
        groups=[_row_to_group(row) for row in group_rows],
        members=[_row_to_member(row) for row in member_rows],
        tabs=[_row_to_tab(row) for row in tab_rows],
        messages=messages,
    )


# ============================================================================
# Settings
# ============================================================================

def get_settings(database: Database) -> Dict[str, Any]:
    """
    Get all application settings.

    Returns:
        A dictionary of setting key-value pairs. JSON values are decoded.
    """
    rows = database.fetchall("SELECT key, value FROM settings")

    settings = {}
    for row in rows:
        try:
            settings[row["key"]] = json.loads(row["value"])
        except (json.JSONDecodeError, TypeError):
            settings[row["key"]] = row["value"]
    return settings


def save_settings(database: Database, key: str, value: Any) -> None:
    """
    Save an application setting.

    Args:
        key: The setting key.
        value: The setting value (strings are stored as-is, anything else as JSON).
    """
    if isinstance(value, str):
        value_str = value
    else:
        value_str = json.dumps(value, default=str)

    database.execute(
        """
        INSERT OR REPLACE INTO settings (key, value, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        """,
        (key, value_str)
    )


# ============================================================================
# Helper functions for row conversion
# ============================================================================

def _message_to_row(message: Message, cipher: BodyCipher) -> tuple:
    return (
        message.id,
        message.uid,
        message.message_id,
        message.group_id,
        message.from_email,
        message.from_name,
        message.to_email,
        message.subject,
        cipher.encrypt_text(message.body_text),
        cipher.encrypt_text(message.body_html),
        message.received_at.isoformat() if message.received_at else None,
        1 if message.is_read else 0,
        1 if message.is_sent else 0,
        1 if message.is_bookmarked else 0,
        message.folder,
    )


def _row_to_tab(row: sqlite3.Row) -> Tab:
    return Tab(id=row["id"], name=row["name"], sort_order=row["sort_order"] or 0)


def _row_to_group(row: sqlite3.Row) -> Group:
    """Convert a database row to a Group model."""
    return Group(
        id=row["id"],
        name=row["name"],
        avatar_color=row["avatar_color"],
        is_pinned=bool(row["is_pinned"]),
        notify_enabled=bool(row["notify_enabled"]),
        is_hidden=bool(row["is_hidden"]),
        tab_id=row["tab_id"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_member(row: sqlite3.Row) -> GroupMember:
    return GroupMember(
        id=row["id"],
        group_id=row["group_id"],
        email=row["email"],
        display_name=row["display_name"],
    )


def _row_to_message(row: sqlite3.Row, cipher: BodyCipher) -> Message:
    """Convert a database row to a Message model, decrypting the bodies."""
    body_text = _decrypt_or_none(cipher, row["body_text"], row["id"])
    body_html = _decrypt_or_none(cipher, row["body_html"], row["id"])

    return Message(
        id=row["id"],
        uid=row["uid"],
        message_id=row["message_id"],
        group_id=row["group_id"],
        from_email=row["from_email"],
        from_name=row["from_name"],
        to_email=row["to_email"],
        subject=row["subject"],
        body_text=body_text,
        body_html=body_html,
        received_at=_parse_datetime(row["received_at"]),
        is_read=bool(row["is_read"]),
        is_sent=bool(row["is_sent"]),
        is_bookmarked=bool(row["is_bookmarked"]),
        folder=row["folder"],
    )


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    """Convert a database row to an Attachment model."""
    return Attachment(
        id=row["id"],
        message_id=row["message_id"],
        filename=row["filename"],
        mime_type=row["mime_type"] or "",
        size=row["size"] or 0,
        local_path=row["local_path"],
    )


def _decrypt_or_none(cipher: BodyCipher, data: Optional[str], message_id: int) -> Optional[str]:
    try:
        return cipher.decrypt_text(data)
    except DecryptionError as e:
        logger.warning(f"Dropping unreadable body of message {message_id}: {e}")
        return None


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a datetime string from the database."""
    if not dt_str:
        return None

    try:
        return datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        try:
            return datetime.strptime(dt_str, '%Y-%m-%d %H:%M:%S')
        except (ValueError, AttributeError):
            return None
