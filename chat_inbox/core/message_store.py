"""
In-memory store for messages and their attachments.

Messages are keyed by local id, indexed by group and by de-duplication key.
Every insert and read-state change updates the owning group's unread counter
in the ConversationStore in the same synchronous step.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.events import Observable
from chat_inbox.models import Attachment, Message
from chat_inbox.utils.errors import NotFoundError

logger = logging.getLogger(__name__)


def _sort_key(message: Message):
    received = message.received_at
    return (received.timestamp() if received else 0.0, message.id or 0)


class MessageStore(Observable):
    """Owns Messages and Attachments, grouped by conversation."""

    def __init__(self, conversations: ConversationStore):
        super().__init__()
        self.conversations = conversations
        self._messages: Dict[int, Message] = {}
        self._by_key: Dict[str, int] = {}
        self._by_group: Dict[Optional[int], Set[int]] = {}
        self._attachments: Dict[int, Attachment] = {}
        self._next_message_id = 1
        self._next_attachment_id = 1

    # ========================================================================
    # Queries
    # ========================================================================

    def __len__(self) -> int:
        return len(self._messages)

    def contains(self, dedup_key: Optional[str]) -> bool:
        return bool(dedup_key) and dedup_key in self._by_key

    def get_message(self, local_id: int) -> Optional[Message]:
        return self._messages.get(local_id)

    def require_message(self, local_id: int) -> Message:
        message = self._messages.get(local_id)
        if message is None:
            raise NotFoundError(f"Message {local_id} not found")
        return message

    def list_messages(self, group_id: Optional[int]) -> List[Message]:
        """List a group's messages, oldest first."""
        ids = self._by_group.get(group_id, set())
        return sorted((self._messages[i] for i in ids), key=_sort_key)

    def message_ids_for_group(self, group_id: Optional[int]) -> Set[int]:
        return set(self._by_group.get(group_id, set()))

    def all_messages(self) -> List[Message]:
        return sorted(self._messages.values(), key=_sort_key)

    def list_bookmarks(self) -> List[Message]:
        """Bookmarked messages, newest first."""
        bookmarks = [m for m in self._messages.values() if m.is_bookmarked]
        return sorted(bookmarks, key=_sort_key, reverse=True)

    # ========================================================================
    # Ingestion
    # ========================================================================

    def append(self, message: Message) -> Optional[Message]:
        """
        Insert a new message.

        A message whose de-duplication key is already stored is skipped.
        The owning group's unread counter is incremented for unread
        received mail.

        Returns:
            The stored message with ids populated, or None if it was a
            duplicate.
        """
        key = message.dedup_key
        if key in self._by_key:
            logger.debug(f"Skipping known message {key}")
            return None

        message.id = self._next_message_id
        self._next_message_id += 1
        for attachment in message.attachments:
            attachment.id = self._next_attachment_id
            self._next_attachment_id += 1
            attachment.message_id = message.id
            self._attachments[attachment.id] = attachment

        self._messages[message.id] = message
        self._by_key[key] = message.id
        self._by_group.setdefault(message.group_id, set()).add(message.id)

        if message.group_id is not None:
            if message.counts_as_unread:
                self.conversations.increment_unread(message.group_id)
            self.conversations.touch(message.group_id, message.received_at)

        self._emit("message_added", group_id=message.group_id, message_ids=(message.id,))
        return message

    # ========================================================================
    # Read state and bookmarks
    # ========================================================================

    def mark_as_read(self, local_id: int) -> bool:
        """
        Mark one message read.

        Returns:
            True if the state changed. A second call on an already-read
            message is a no-op and never decrements again.
        """
        message = self.require_message(local_id)
        if message.is_read:
            return False
        message.is_read = True
        if not message.is_sent and message.group_id is not None:
            self.conversations.decrement_unread(message.group_id)
        self._emit("read_changed", group_id=message.group_id, message_ids=(local_id,))
        return True

    def mark_as_unread(self, local_id: int) -> bool:
        message = self.require_message(local_id)
        if not message.is_read:
            return False
        message.is_read = False
        if not message.is_sent and message.group_id is not None:
            self.conversations.increment_unread(message.group_id)
        self._emit("read_changed", group_id=message.group_id, message_ids=(local_id,))
        return True

    def mark_group_as_read(self, group_id: int) -> List[int]:
        """
        Mark every message of a group read and clear its counter in one step.

        Returns:
            IDs of the messages whose state changed (empty when repeated).
        """
        changed = []
        for local_id in self._by_group.get(group_id, set()):
            message = self._messages[local_id]
            if not message.is_read:
                message.is_read = True
                changed.append(local_id)
        self.conversations.clear_unread(group_id)
        if changed:
            self._emit("read_changed", group_id=group_id, message_ids=tuple(changed))
        return changed

    def toggle_bookmark(self, local_id: int) -> bool:
        """
        Toggle the bookmark flag.

        Returns:
            The new bookmark state.
        """
        message = self.require_message(local_id)
        message.is_bookmarked = not message.is_bookmarked
        self._emit("bookmark_changed", group_id=message.group_id, message_ids=(local_id,))
        return message.is_bookmarked

    def count_unread(self, group_id: int) -> int:
        """Count unread received messages of a group by scanning them."""
        return sum(
            1 for local_id in self._by_group.get(group_id, set())
            if self._messages[local_id].counts_as_unread
        )

    # ========================================================================
    # Structural moves (used by MergeSplitEngine and group deletion)
    # ========================================================================

    def move_messages(self, local_ids: Iterable[int], target_group_id: Optional[int]) -> List[int]:
        """
        Re-parent messages without touching unread counters.

        Callers adjust counters themselves because merge sums them and split
        recounts them.
        """
        moved = []
        for local_id in local_ids:
            message = self._messages.get(local_id)
            if message is None or message.group_id == target_group_id:
                continue
            self._by_group.get(message.group_id, set()).discard(local_id)
            message.group_id = target_group_id
            self._by_group.setdefault(target_group_id, set()).add(local_id)
            if target_group_id is not None:
                self.conversations.touch(target_group_id, message.received_at)
            moved.append(local_id)
        if moved:
            self._emit("messages_moved", group_id=target_group_id, message_ids=tuple(moved))
        return moved

    def detach_group(self, group_id: int) -> List[int]:
        """Unlink a deleted group's messages; the messages themselves are kept."""
        return self.move_messages(sorted(self._by_group.get(group_id, set())), None)

    def adopt_group_id(self, provisional_id: int, final_id: int) -> int:
        """
        Rekey a locally created group, and its messages, to the id the
        backend assigned.

        Returns:
            The group's id afterwards. When final_id is already taken locally
            the group keeps its provisional id.
        """
        if provisional_id == final_id:
            return final_id
        if self.conversations.has_group(final_id):
            logger.error(f"Backend id {final_id} for group {provisional_id} is already in use locally")
            return provisional_id
        message_ids = sorted(self._by_group.get(provisional_id, set()))
        self.conversations.rekey_group(provisional_id, final_id)
        self.move_messages(message_ids, final_id)
        logger.debug(f"Group {provisional_id} is now {final_id}")
        return final_id

    def relink_by_contact(self) -> int:
        """
        Attach every message to the group that currently owns its contact
        address, or detach it when no group does, and rebuild the counters.

        Used after the group structure was replaced, when local group ids
        no longer mean anything.

        Returns:
            The number of messages whose group changed.
        """
        messages = self.all_messages()
        changed = 0
        for message in messages:
            owner = self.conversations.find_group_by_email(message.contact_email)
            group_id = owner.id if owner is not None else None
            if group_id != message.group_id:
                message.group_id = group_id
                changed += 1
        self.load(messages)
        if changed:
            logger.info(f"Relinked {changed} messages to their current groups")
        return changed

    # ========================================================================
    # Attachments
    # ========================================================================

    def get_attachment(self, attachment_id: int) -> Optional[Attachment]:
        return self._attachments.get(attachment_id)

    def set_attachment_path(self, attachment_id: int, local_path: str) -> Attachment:
        attachment = self._attachments.get(attachment_id)
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")
        attachment.local_path = local_path
        owner = self._messages.get(attachment.message_id)
        self._emit(
            "attachment_downloaded",
            group_id=owner.group_id if owner else None,
            message_ids=(attachment.message_id,),
        )
        return attachment

    # ========================================================================
    # Bulk loading
    # ========================================================================

    def load(self, messages: Iterable[Message]) -> None:
        """
        Replace the store contents with persisted messages.

        Unread counters are rebuilt once from the loaded set.
        """
        self._messages.clear()
        self._by_key.clear()
        self._by_group.clear()
        self._attachments.clear()

        counts: Dict[int, int] = {}
        for message in messages:
            if message.id is None:
                message.id = self._next_message_id
            self._next_message_id = max(self._next_message_id, message.id + 1)
            if message.group_id is not None and not self.conversations.has_group(message.group_id):
                message.group_id = None
            self._messages[message.id] = message
            self._by_key[message.dedup_key] = message.id
            self._by_group.setdefault(message.group_id, set()).add(message.id)
            for attachment in message.attachments:
                if attachment.id is None:
                    attachment.id = self._next_attachment_id
                self._next_attachment_id = max(self._next_attachment_id, attachment.id + 1)
                attachment.message_id = message.id
                self._attachments[attachment.id] = attachment
            if message.group_id is not None:
                self.conversations.touch(message.group_id, message.received_at)
                if message.counts_as_unread:
                    counts[message.group_id] = counts.get(message.group_id, 0) + 1

        for group in self.conversations.list_groups():
            self.conversations.set_unread(group.id, counts.get(group.id, 0))
        self._emit("reloaded")


def newest_first(messages: Iterable[Message]) -> List[Message]:
    """Sort messages newest first (search results, bookmark lists)."""
    return sorted(messages, key=_sort_key, reverse=True)
