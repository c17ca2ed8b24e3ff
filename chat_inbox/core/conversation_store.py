"""
In-memory store for conversation groups, members, tabs and unread counters.

The store is the single owner of group structure. It keeps an
address -> group index so that incoming mail always resolves against the
current ownership, and it maintains unread counters incrementally so that
reading a count never rescans messages.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from chat_inbox.events import Observable
from chat_inbox.models import Group, GroupMember, Tab, avatar_color_for, normalize_email
from chat_inbox.utils.errors import ConflictError, InvalidArgumentError, NotFoundError

logger = logging.getLogger(__name__)


class ConversationStore(Observable):
    """
    Owns Groups, GroupMembers, Tabs and per-group unread counters.

    Not thread-safe: all mutation happens on the event loop thread.
    """

    def __init__(self):
        super().__init__()
        self._groups: Dict[int, Group] = {}
        self._members: Dict[int, Dict[str, GroupMember]] = {}
        self._owner_by_email: Dict[str, int] = {}
        self._tabs: Dict[int, Tab] = {}
        self._unread: Dict[int, int] = {}
        self._last_activity: Dict[int, datetime] = {}
        self._next_provisional_id = -1
        self._next_member_id = 1
        self._next_tab_id = 1

    # ========================================================================
    # Groups
    # ========================================================================

    def list_groups(self) -> List[Group]:
        """
        List all groups, pinned first, then by latest activity, then newest.
        """
        def sort_key(group: Group):
            activity = self._last_activity.get(group.id)
            created = group.created_at or datetime.min
            return (
                not group.is_pinned,
                activity is None,
                -(activity.timestamp() if activity else 0.0),
                -(created.timestamp() if group.created_at else 0.0),
            )

        return sorted(self._groups.values(), key=sort_key)

    def list_groups_for_tab(self, tab_id: Optional[int]) -> List[Group]:
        """
        List the visible groups of a tab (None = main). Hidden groups are
        never listed, whatever their tab.
        """
        return [group for group in self.list_groups() if group.is_listed_in(tab_id)]

    def list_hidden_groups(self) -> List[Group]:
        return [group for group in self.list_groups() if group.is_hidden]

    def get_group(self, group_id: int) -> Optional[Group]:
        """
        Get a group by ID.

        Returns:
            The Group or None if not found.
        """
        return self._groups.get(group_id)

    def has_group(self, group_id: Optional[int]) -> bool:
        return group_id is not None and group_id in self._groups

    def require_group(self, group_id: int) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def upsert_group(self, group: Group) -> Group:
        """
        Insert or update a group.

        A group without an id gets the next provisional id. Provisional ids
        are negative so they never clash with the positive ids the backend
        assigns. Updating never changes the id or the creation time.

        Raises:
            InvalidArgumentError: If the name is empty.
            NotFoundError: If tab_id refers to an unknown tab.
        """
        if not group.name or not group.name.strip():
            raise InvalidArgumentError("Group name cannot be empty")
        if group.tab_id is not None and group.tab_id not in self._tabs:
            raise NotFoundError(f"Tab {group.tab_id} not found")

        existing = self._groups.get(group.id) if group.id is not None else None
        if existing is not None:
            group.created_at = existing.created_at
            self._groups[group.id] = group
            self._emit("group_updated", group_id=group.id)
            return group

        if group.id is None:
            group.id = self._next_provisional_id
        self._reserve_group_id(group.id)
        if group.created_at is None:
            group.created_at = datetime.now()
        self._groups[group.id] = group
        self._members.setdefault(group.id, {})
        self._unread.setdefault(group.id, 0)
        self._emit("group_created", group_id=group.id)
        return group

    def _reserve_group_id(self, group_id: int) -> None:
        if group_id < 0:
            self._next_provisional_id = min(self._next_provisional_id, group_id - 1)

    def list_provisional_groups(self) -> List[Group]:
        """Groups the backend has not assigned an id to yet."""
        return [group for group in self._groups.values() if group.is_provisional]

    def create_group(self, name: str, avatar_color: Optional[str] = None) -> Group:
        group = Group(name=name.strip() if name else name)
        if avatar_color:
            group.avatar_color = avatar_color
        return self.upsert_group(group)

    def create_group_for_email(self, email: str, display_name: Optional[str] = None) -> Group:
        """
        Create a new group for a previously unknown address.

        The group is named after the display name (or the address) and
        gets one member.
        """
        address = normalize_email(email)
        if not address:
            raise InvalidArgumentError("Email address cannot be empty")
        if address in self._owner_by_email:
            raise ConflictError(f"Address {address} already belongs to group {self._owner_by_email[address]}")

        group = self.upsert_group(Group(
            name=display_name or address,
            avatar_color=avatar_color_for(address),
        ))
        self._insert_member(group.id, address, display_name)
        logger.debug(f"Created group {group.id} for {address}")
        return group

    def delete_group(self, group_id: int) -> Group:
        """
        Delete a group together with its members and unread counter.

        Raises:
            NotFoundError: If the group does not exist.
        """
        group = self.require_group(group_id)
        for address in list(self._members.get(group_id, {})):
            if self._owner_by_email.get(address) == group_id:
                del self._owner_by_email[address]
        self._members.pop(group_id, None)
        self._unread.pop(group_id, None)
        self._last_activity.pop(group_id, None)
        del self._groups[group_id]
        self._emit("group_deleted", group_id=group_id)
        return group

    def set_group_tab(self, group_id: int, tab_id: Optional[int]) -> Group:
        group = self.require_group(group_id)
        return self.upsert_group(replace(group, tab_id=tab_id))

    def set_group_hidden(self, group_id: int, hidden: bool) -> Group:
        group = self.require_group(group_id)
        return self.upsert_group(replace(group, is_hidden=hidden))

    def touch(self, group_id: int, when: Optional[datetime]) -> None:
        """Record message activity used for ordering the group list."""
        if when is None or group_id not in self._groups:
            return
        current = self._last_activity.get(group_id)
        if current is None or when > current:
            self._last_activity[group_id] = when

    def last_activity(self, group_id: int) -> Optional[datetime]:
        return self._last_activity.get(group_id)

    def reset_activity(self, group_id: int, when: Optional[datetime]) -> None:
        """Overwrite the recorded activity after messages left a group."""
        if when is None:
            self._last_activity.pop(group_id, None)
        elif group_id in self._groups:
            self._last_activity[group_id] = when

    def rekey_group(self, old_id: int, new_id: int) -> Group:
        """
        Move a freshly created group to a different id.

        Only meant for provisional ids; MessageStore.adopt_group_id keeps
        messages in step.

        Raises:
            ConflictError: If new_id is already taken.
        """
        if old_id == new_id:
            return self.require_group(old_id)
        group = self.require_group(old_id)
        if new_id in self._groups:
            raise ConflictError(f"Group {new_id} already exists")

        group.id = new_id
        self._groups[new_id] = self._groups.pop(old_id)
        members = self._members.pop(old_id, {})
        for member in members.values():
            member.group_id = new_id
            if self._owner_by_email.get(member.email) == old_id:
                self._owner_by_email[member.email] = new_id
        self._members[new_id] = members
        self._unread[new_id] = self._unread.pop(old_id, 0)
        if old_id in self._last_activity:
            self._last_activity[new_id] = self._last_activity.pop(old_id)
        self._reserve_group_id(new_id)
        self._emit("group_rekeyed", group_id=new_id, previous_group_id=old_id)
        return group

    # ========================================================================
    # Members
    # ========================================================================

    def list_members(self, group_id: int) -> List[GroupMember]:
        return list(self._members.get(group_id, {}).values())

    def member_emails(self, group_id: int) -> List[str]:
        return list(self._members.get(group_id, {}))

    def find_group_by_email(self, email: str) -> Optional[Group]:
        """
        Find the group that currently owns an address.

        Always answered from the current state, never from a cached lookup.
        """
        group_id = self._owner_by_email.get(normalize_email(email))
        if group_id is None:
            return None
        return self._groups.get(group_id)

    def add_member(self, group_id: int, email: str, display_name: Optional[str] = None) -> GroupMember:
        """
        Bind an address to a group at the user's request.

        Raises:
            NotFoundError: If the group does not exist.
            InvalidArgumentError: If the address is empty.
            ConflictError: If the address is already a member of this group,
                or is owned by another group (direct calls never rebind).
        """
        self.require_group(group_id)
        address = normalize_email(email)
        if not address:
            raise InvalidArgumentError("Email address cannot be empty")
        if address in self._members[group_id]:
            raise ConflictError(f"{address} is already a member of group {group_id}")
        owner = self._owner_by_email.get(address)
        if owner is not None and owner != group_id:
            raise ConflictError(f"{address} already belongs to group {owner}")

        member = self._insert_member(group_id, address, display_name)
        self._emit("members_changed", group_id=group_id)
        return member

    def move_member(self, email: str, source_group_id: int, target_group_id: int) -> bool:
        """
        Re-parent a member row during merge or split.

        If the target already has the address, the source row is discarded
        instead of duplicated.

        Returns:
            True if the row was moved, False if it was dropped as a duplicate.
        """
        address = normalize_email(email)
        source_members = self._members.get(source_group_id, {})
        member = source_members.pop(address, None)
        target_members = self._members.setdefault(target_group_id, {})

        self._owner_by_email[address] = target_group_id
        if address in target_members:
            return False
        if member is None:
            member = GroupMember(id=self._allocate_member_id(), email=address)
        member.group_id = target_group_id
        target_members[address] = member
        self._emit("members_changed", group_id=target_group_id)
        return True

    def restore_member(self, member: GroupMember, claim_address: bool = True) -> GroupMember:
        """
        Put back a member row removed earlier, keeping its id.

        Used to compensate a failed remote change. With claim_address the
        row's group becomes the owner of the address again.
        """
        self.require_group(member.group_id)
        address = normalize_email(member.email)
        restored = self._insert_member(member.group_id, address, member.display_name, member_id=member.id)
        if claim_address:
            self._owner_by_email[address] = member.group_id
        self._emit("members_changed", group_id=member.group_id)
        return restored

    def remove_member(self, group_id: int, email: str) -> GroupMember:
        """
        Unbind an address from a group.

        Raises:
            NotFoundError: If the group or membership does not exist.
        """
        self.require_group(group_id)
        address = normalize_email(email)
        member = self._members[group_id].pop(address, None)
        if member is None:
            raise NotFoundError(f"{address} is not a member of group {group_id}")
        if self._owner_by_email.get(address) == group_id:
            del self._owner_by_email[address]
        self._emit("members_changed", group_id=group_id)
        return member

    def _insert_member(self, group_id: int, address: str, display_name: Optional[str],
                       member_id: Optional[int] = None) -> GroupMember:
        member = GroupMember(
            id=member_id if member_id is not None else self._allocate_member_id(),
            group_id=group_id,
            email=address,
            display_name=display_name,
        )
        self._next_member_id = max(self._next_member_id, member.id + 1)
        self._members.setdefault(group_id, {})[address] = member
        self._owner_by_email.setdefault(address, group_id)
        return member

    def _allocate_member_id(self) -> int:
        member_id = self._next_member_id
        self._next_member_id += 1
        return member_id

    # ========================================================================
    # Tabs
    # ========================================================================

    def list_tabs(self) -> List[Tab]:
        return sorted(self._tabs.values(), key=lambda tab: (tab.sort_order, tab.id))

    def get_tab(self, tab_id: int) -> Optional[Tab]:
        return self._tabs.get(tab_id)

    def create_tab(self, name: str) -> Tab:
        """Create a tab placed after the existing ones."""
        max_order = max((tab.sort_order for tab in self._tabs.values()), default=0)
        return self.upsert_tab(Tab(name=name, sort_order=max_order + 1))

    def upsert_tab(self, tab: Tab) -> Tab:
        if not tab.name or not tab.name.strip():
            raise InvalidArgumentError("Tab name cannot be empty")
        if tab.id is None:
            tab.id = self._next_tab_id
        self._next_tab_id = max(self._next_tab_id, tab.id + 1)
        created = tab.id not in self._tabs
        self._tabs[tab.id] = tab
        self._emit("tab_created" if created else "tab_updated", tab_id=tab.id)
        return tab

    def delete_tab(self, tab_id: int) -> List[int]:
        """
        Delete a tab. Groups on it fall back to the main tab; they are
        never deleted.

        Returns:
            IDs of the groups that were moved back to main.

        Raises:
            NotFoundError: If the tab does not exist.
        """
        if tab_id not in self._tabs:
            raise NotFoundError(f"Tab {tab_id} not found")
        moved = []
        for group in self._groups.values():
            if group.tab_id == tab_id:
                group.tab_id = None
                moved.append(group.id)
        del self._tabs[tab_id]
        self._emit("tab_deleted", tab_id=tab_id)
        return moved

    def reorder_tabs(self, orders: Dict[int, int]) -> None:
        """Apply new sort orders given as {tab_id: sort_order}."""
        missing = [tab_id for tab_id in orders if tab_id not in self._tabs]
        if missing:
            raise NotFoundError(f"Tabs not found: {missing}")
        for tab_id, order in orders.items():
            self._tabs[tab_id].sort_order = order
        self._emit("tabs_reordered")

    def restore_tabs(self, tabs: Iterable[Tab], group_tabs: Dict[int, Optional[int]]) -> None:
        """
        Put back a previous tab set and the groups' tab links.

        Args:
            tabs: The complete tab set to restore.
            group_tabs: {group_id: tab_id} for groups that still exist.
        """
        self._tabs = {tab.id: tab for tab in tabs}
        for tab_id in self._tabs:
            self._next_tab_id = max(self._next_tab_id, tab_id + 1)
        for group_id, tab_id in group_tabs.items():
            group = self._groups.get(group_id)
            if group is not None:
                group.tab_id = tab_id if tab_id in self._tabs else None
        self._emit("tabs_restored")

    # ========================================================================
    # Unread counters
    # ========================================================================

    def unread_count(self, group_id: int) -> int:
        return self._unread.get(group_id, 0)

    def unread_counts(self) -> Dict[int, int]:
        """Non-zero unread counts keyed by group id."""
        return {group_id: count for group_id, count in self._unread.items() if count > 0}

    def total_unread(self) -> int:
        return sum(self._unread.values())

    def increment_unread(self, group_id: int, amount: int = 1) -> int:
        if group_id not in self._groups:
            return 0
        self._unread[group_id] = self._unread.get(group_id, 0) + amount
        self._emit("unread_changed", group_id=group_id)
        return self._unread[group_id]

    def decrement_unread(self, group_id: int, amount: int = 1) -> int:
        """Decrement a counter, but not below 0."""
        if group_id not in self._groups:
            return 0
        self._unread[group_id] = max(0, self._unread.get(group_id, 0) - amount)
        self._emit("unread_changed", group_id=group_id)
        return self._unread[group_id]

    def clear_unread(self, group_id: int) -> None:
        if group_id in self._groups:
            self._unread[group_id] = 0
            self._emit("unread_changed", group_id=group_id)

    def set_unread(self, group_id: int, count: int) -> None:
        if group_id in self._groups:
            self._unread[group_id] = max(0, count)
            self._emit("unread_changed", group_id=group_id)

    # ========================================================================
    # Bulk loading
    # ========================================================================

    def load(
        self,
        groups: Iterable[Group],
        members: Iterable[GroupMember] = (),
        tabs: Iterable[Tab] = (),
    ) -> None:
        """
        Replace the store contents with persisted state.

        Unknown tab references are dropped to main. When persisted data
        binds one address to several groups, the first group wins the
        address lookup.
        """
        self._groups.clear()
        self._members.clear()
        self._owner_by_email.clear()
        self._tabs.clear()
        self._unread.clear()
        self._last_activity.clear()

        for tab in tabs:
            self._tabs[tab.id] = tab
            self._next_tab_id = max(self._next_tab_id, tab.id + 1)
        for group in groups:
            if group.tab_id is not None and group.tab_id not in self._tabs:
                logger.warning(f"Group {group.id} references missing tab {group.tab_id}")
                group.tab_id = None
            self._groups[group.id] = group
            self._members[group.id] = {}
            self._unread[group.id] = 0
            self._reserve_group_id(group.id)
        for member in members:
            if member.group_id not in self._groups:
                continue
            self._insert_member(member.group_id, normalize_email(member.email),
                                member.display_name, member_id=member.id)

        self._emit("reloaded")
