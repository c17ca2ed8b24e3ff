"""
Merge and split of conversation groups.

Both operations validate every precondition before the first mutation and
then run to completion synchronously, so no sync batch can observe a
half-applied structural edit.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Set

from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.core.message_store import MessageStore
from chat_inbox.models import Group, GroupMember, avatar_color_for, normalize_email
from chat_inbox.utils.errors import InvalidArgumentError

logger = logging.getLogger(__name__)


@dataclass
class MergeRecord:
    """Everything needed to undo a merge exactly."""
    target_id: int
    source_group: Group
    members: List[GroupMember] = field(default_factory=list)
    discarded_emails: Set[str] = field(default_factory=set)
    message_ids: List[int] = field(default_factory=list)
    source_unread: int = 0

    @property
    def source_id(self) -> int:
        return self.source_group.id


class MergeSplitEngine:
    """Applies merge and split to the two stores."""

    def __init__(self, conversations: ConversationStore, messages: MessageStore):
        self.conversations = conversations
        self.messages = messages

    def merge(self, target_id: int, source_id: int) -> MergeRecord:
        """
        Fold the source group into the target group.

        Messages are re-parented first and members last; an address the
        target already has is discarded. The source group is deleted and its
        unread count added to the target's. Target metadata is kept.

        Raises:
            InvalidArgumentError: If target and source are the same group.
            NotFoundError: If either group does not exist.
        """
        if target_id == source_id:
            raise InvalidArgumentError("Cannot merge a group into itself")
        self.conversations.require_group(target_id)
        source = self.conversations.require_group(source_id)

        record = MergeRecord(
            target_id=target_id,
            source_group=replace(source),
            members=[replace(member) for member in self.conversations.list_members(source_id)],
            message_ids=sorted(self.messages.message_ids_for_group(source_id)),
            source_unread=self.conversations.unread_count(source_id),
        )

        self.messages.move_messages(record.message_ids, target_id)
        for member in record.members:
            if not self.conversations.move_member(member.email, source_id, target_id):
                record.discarded_emails.add(member.email)
        self.conversations.delete_group(source_id)
        if record.source_unread:
            self.conversations.increment_unread(target_id, record.source_unread)

        logger.info(
            f"Merged group {source_id} into {target_id}: "
            f"{len(record.message_ids)} messages, {len(record.members)} members"
        )
        return record

    def undo_merge(self, record: MergeRecord) -> Group:
        """
        Restore the source group of a merge with its id, metadata, members,
        messages and unread count.

        Messages that reached the target after the merge from an address
        the source gets back are moved to the source as well.
        """
        source = self.conversations.upsert_group(replace(record.source_group))
        restored: Set[str] = set()
        for member in record.members:
            if member.email in record.discarded_emails:
                self.conversations.restore_member(member, claim_address=False)
            else:
                self.conversations.move_member(member.email, record.target_id, source.id)
                restored.add(member.email)

        merged = set(record.message_ids)
        late = [
            message.id for message in self.messages.list_messages(record.target_id)
            if message.id not in merged and message.contact_email in restored
        ]
        if late:
            logger.debug(f"Returning {len(late)} messages that arrived during the merge")
        moved = self.messages.move_messages(record.message_ids + late, source.id)
        moved_unread = sum(
            1 for local_id in moved if self.messages.get_message(local_id).counts_as_unread
        )
        self.conversations.set_unread(source.id, moved_unread)
        if moved_unread:
            self.conversations.decrement_unread(record.target_id, moved_unread)
        remaining = self.messages.list_messages(record.target_id)
        self.conversations.reset_activity(record.target_id, remaining[-1].received_at if remaining else None)

        logger.info(f"Restored group {source.id} from group {record.target_id}")
        return source

    def split(self, source_id: int, member_emails: Iterable[str], new_group_name: str) -> int:
        """
        Move a subset of a group's members, and their messages, into a new group.

        Args:
            source_id: The group to split.
            member_emails: Addresses to move; must be a proper, non-empty
                subset of the source's members.
            new_group_name: Name of the new group.

        Returns:
            The id of the new group.

        Raises:
            InvalidArgumentError: On an empty selection, an address that is not
                a member, a selection covering every member, or an empty name.
            NotFoundError: If the source group does not exist.
        """
        name = (new_group_name or "").strip()
        self.conversations.require_group(source_id)
        selected = {normalize_email(email) for email in member_emails} - {""}
        if not selected:
            raise InvalidArgumentError("Select at least one member to split off")
        current = set(self.conversations.member_emails(source_id))
        unknown = selected - current
        if unknown:
            raise InvalidArgumentError(f"Not members of group {source_id}: {sorted(unknown)}")
        if selected == current:
            raise InvalidArgumentError("Cannot split off every member of a group")
        if not name:
            raise InvalidArgumentError("Group name cannot be empty")

        new_group = self.conversations.upsert_group(Group(
            name=name,
            avatar_color=avatar_color_for(",".join(sorted(selected))),
        ))

        moving = [
            message.id for message in self.messages.list_messages(source_id)
            if any(message.involves(email) for email in selected)
        ]
        self.messages.move_messages(moving, new_group.id)
        for email in sorted(selected):
            self.conversations.move_member(email, source_id, new_group.id)

        self.conversations.set_unread(source_id, self.messages.count_unread(source_id))
        self.conversations.set_unread(new_group.id, self.messages.count_unread(new_group.id))
        remaining = self.messages.list_messages(source_id)
        self.conversations.reset_activity(source_id, remaining[-1].received_at if remaining else None)

        logger.info(f"Split {len(selected)} members of group {source_id} into group {new_group.id}")
        return new_group.id

