"""
Core domain models for the chat inbox.

This module contains pure domain models (dataclasses) without any database
or UI dependencies. These models represent the core business entities.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

from chat_inbox.config import DEFAULT_AVATAR_COLOR, DEFAULT_FOLDER


AVATAR_PALETTE = (
    "#2e7d32", "#1565c0", "#6a1b9a", "#c62828", "#ef6c00",
    "#00838f", "#558b2f", "#4527a0", "#ad1457", "#00695c",
)


def normalize_email(email: Optional[str]) -> str:
    """Lowercase and strip an address so lookups are case-insensitive."""
    return (email or "").strip().lower()


def avatar_color_for(seed: str) -> str:
    """Pick a stable palette color from the byte sum of `seed`."""
    total = sum(seed.encode("utf-8")) & 0xFFFFFFFF
    return AVATAR_PALETTE[total % len(AVATAR_PALETTE)]


@dataclass(slots=True)
class Group:
    """A conversation thread aggregating mail to/from its member addresses."""
    id: Optional[int] = None
    name: str = ""
    avatar_color: str = DEFAULT_AVATAR_COLOR
    is_pinned: bool = False
    notify_enabled: bool = True
    is_hidden: bool = False
    tab_id: Optional[int] = None  # None = the implicit "main" tab
    created_at: Optional[datetime] = None

    @property
    def is_provisional(self) -> bool:
        """Locally created and not yet given an id by the backend."""
        return self.id is not None and self.id < 0

    def is_listed_in(self, tab_id: Optional[int]) -> bool:
        """Check if this group is shown under a tab. Hidden groups never are."""
        if self.is_hidden:
            return False
        return self.tab_id == tab_id


@dataclass(slots=True)
class GroupMember:
    """One mailbox address bound to a group."""
    id: Optional[int] = None
    group_id: int = 0
    email: str = ""
    display_name: Optional[str] = None


@dataclass(slots=True)
class Tab:
    """A user-defined bucket partitioning non-hidden groups."""
    id: Optional[int] = None
    name: str = ""
    sort_order: int = 0


@dataclass(slots=True)
class Attachment:
    """Represents an email attachment."""
    id: Optional[int] = None
    message_id: int = 0  # Local id of the owning Message
    filename: str = ""
    mime_type: str = ""
    size: int = 0
    local_path: Optional[str] = None  # Set once downloaded


@dataclass(slots=True)
class Message:
    """Represents one mail item inside a conversation."""
    id: Optional[int] = None
    uid: int = 0  # Server-assigned UID
    message_id: Optional[str] = None  # Message-ID header
    group_id: Optional[int] = None
    from_email: str = ""
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    received_at: Optional[datetime] = None
    is_read: bool = False
    is_sent: bool = False
    is_bookmarked: bool = False
    folder: str = DEFAULT_FOLDER
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def dedup_key(self) -> str:
        """Key used to detect re-delivered messages."""
        if self.message_id:
            return self.message_id
        return f"{self.folder}:{self.uid}"

    @property
    def contact_email(self) -> str:
        """The other party's address: recipient for sent mail, sender otherwise."""
        if self.is_sent:
            return normalize_email(self.to_email)
        return normalize_email(self.from_email)

    @property
    def counts_as_unread(self) -> bool:
        return not self.is_read and not self.is_sent

    def involves(self, email: str) -> bool:
        """Check if `email` is this message's sender or recipient."""
        address = normalize_email(email)
        return address in (normalize_email(self.from_email), normalize_email(self.to_email))
