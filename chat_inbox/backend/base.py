"""
Collaborator interfaces for the chat inbox core.

These interfaces separate the core from the remote mailbox, the persistence
engine and desktop notification delivery, so any of them can be swapped
without changing the stores or the sync coordinator.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from chat_inbox.models import Group, GroupMember, Message, Tab


class MailBackend(ABC):
    """
    Remote mailbox and persistence collaborator.

    Every method is a coroutine. Implementations raise AuthRequiredError
    when credentials are missing or rejected, and TransientError for
    network or server failures.
    """

    @abstractmethod
    async def fetch_new_messages(self) -> List[Message]:
        """Fetch messages that arrived since the previous call."""
        pass

    @abstractmethod
    async def fetch_groups(self) -> List[Group]:
        """Fetch all persisted groups."""
        pass

    @abstractmethod
    async def fetch_group_members(self, group_id: int) -> List[GroupMember]:
        """Fetch the members of a group."""
        pass

    @abstractmethod
    async def fetch_tabs(self) -> List[Tab]:
        """Fetch all tabs."""
        pass

    @abstractmethod
    async def persist_group(self, group: Group) -> Optional[int]:
        """
        Store a created or updated group.

        Returns:
            The id the backend keeps the group under, or None to keep
            group.id.
        """
        pass

    @abstractmethod
    async def delete_group_remote(self, group_id: int) -> None:
        """Delete a group; its messages are kept."""
        pass

    @abstractmethod
    async def persist_tab(self, tab: Tab) -> None:
        """Store a created, renamed or reordered tab."""
        pass

    @abstractmethod
    async def delete_tab_remote(self, tab_id: int) -> None:
        """Delete a tab."""
        pass

    @abstractmethod
    async def persist_member_change(
        self,
        group_id: int,
        email: str,
        display_name: Optional[str] = None,
        removed: bool = False
    ) -> None:
        """Store an added or removed group member."""
        pass

    @abstractmethod
    async def mark_read(self, message_id: int) -> None:
        """Mark one message read."""
        pass

    @abstractmethod
    async def mark_group_read(self, group_id: int) -> None:
        """Mark all messages of a group read."""
        pass

    @abstractmethod
    async def merge_groups_remote(self, target_id: int, source_id: int) -> None:
        """Apply a merge remotely."""
        pass

    @abstractmethod
    async def split_group_remote(self, source_id: int, emails: List[str], name: str) -> int:
        """Apply a split remotely and return the new group's id."""
        pass

    @abstractmethod
    async def download_attachment(self, attachment_id: int, destination: Path) -> str:
        """Download an attachment into `destination` and return its local path."""
        pass

    @abstractmethod
    async def open_attachment(self, attachment_id: int) -> None:
        """Open a downloaded attachment with the system handler."""
        pass

    @abstractmethod
    async def reauthenticate(self) -> None:
        """Run the authentication flow again."""
        pass

    @abstractmethod
    async def logout(self) -> None:
        """Drop the stored credentials."""
        pass


class Notifier(ABC):
    """Desktop notification delivery."""

    @abstractmethod
    def notify_new_mail(self, from_name: str, subject: str, group_id: int) -> None:
        """Announce a single new message."""
        pass

    @abstractmethod
    def notify_new_mails(self, count: int) -> None:
        """Announce several new messages at once."""
        pass


class NullNotifier(Notifier):
    """Notifier that delivers nothing (headless runs)."""

    def notify_new_mail(self, from_name: str, subject: str, group_id: int) -> None:
        pass

    def notify_new_mails(self, count: int) -> None:
        pass
