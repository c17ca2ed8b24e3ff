"""
Composition root of the chat inbox.

Inbox wires the stores, the merge/split engine and the sync coordinator to
one backend, and is the object a UI layer talks to. User edits are applied
to the local stores first; the backend is called afterwards and, if it
fails, the local change is compensated before the error is re-raised.
"""
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from chat_inbox.backend.base import MailBackend, Notifier
from chat_inbox.core import search
from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.core.footer import BodyAnalysis, analyze_body
from chat_inbox.core.merge_split import MergeSplitEngine
from chat_inbox.core.message_store import MessageStore
from chat_inbox.core.settings import UserSettings, save_settings
from chat_inbox.core.sync_coordinator import SyncCoordinator, SyncResult, SyncTrigger
from chat_inbox.events import GroupSelectionRequested, StoreChange
from chat_inbox.models import Group, GroupMember, Message, Tab
from chat_inbox.storage import cache_repo
from chat_inbox.storage.db import Database
from chat_inbox.storage.encryption import BodyCipher
from chat_inbox.utils.errors import (
    AttachmentError,
    AuthRequiredError,
    ConflictError,
    InboxError,
    NotFoundError,
    TransientError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ErrorListener = Callable[[InboxError], None]


class Inbox:
    """
    Application facade over the chat inbox core.

    Holds the current group selection and routes every user edit through
    optimistic local mutation plus backend call with compensation.
    """

    def __init__(
        self,
        backend: MailBackend,
        notifier: Optional[Notifier] = None,
        settings: Optional[UserSettings] = None,
        account_email: Optional[str] = None,
        database: Optional[Database] = None,
        cipher: Optional[BodyCipher] = None
    ):
        """
        Initialize the inbox.

        Args:
            backend: Remote mailbox and persistence collaborator.
            notifier: Optional desktop notification collaborator.
            settings: User settings; defaults are used when omitted.
            account_email: The user's own address.
            database: Optional local cache database.
            cipher: Body cipher for the local cache; required with `database`.
        """
        self.backend = backend
        self.settings = settings or UserSettings()
        self.database = database
        self.cipher = cipher

        self.conversations = ConversationStore()
        self.messages = MessageStore(self.conversations)
        self.engine = MergeSplitEngine(self.conversations, self.messages)
        self.coordinator = SyncCoordinator(
            self.conversations,
            self.messages,
            backend,
            notifier=notifier,
            account_email=account_email,
            interval_seconds=self.settings.sync_interval_seconds,
        )
        self.coordinator.notifications_enabled = self.settings.notifications_enabled
        self.coordinator.add_synced_listener(self._on_synced)

        self._selected_group_id: Optional[int] = None
        self._selected_messages: List[Message] = []
        self._error_listeners: List[ErrorListener] = []
        self.coordinator.add_error_listener(self._report)
        self.conversations.subscribe(self._on_store_change)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def load(self, from_backend: bool = True) -> None:
        """
        Bootstrap the stores.

        The local cache (if configured) is loaded first so the UI has data
        at once. With `from_backend`, groups, members and tabs are then
        refreshed from the backend. Cached messages are kept and attached to
        whichever group owns their contact address afterwards; local groups
        the backend does not know yet are kept when none of their addresses
        moved to a backend group.

        Raises:
            CacheError: If the cache cannot be read.
            AuthRequiredError / TransientError: If the backend refresh fails;
                cached data stays loaded.
        """
        if self.database is not None:
            snapshot = cache_repo.load_snapshot(self.database, self.cipher)
            cache_repo.apply_snapshot(snapshot, self.conversations, self.messages)
            logger.info(f"Loaded {len(snapshot.groups)} groups and {len(snapshot.messages)} messages from cache")

        if from_backend:
            await self._refresh_structure()
        self.coordinator.queue_for_persistence(
            group.id for group in self.conversations.list_provisional_groups()
        )
        if not self.conversations.has_group(self._selected_group_id):
            self._set_selection(None)

    async def _refresh_structure(self) -> None:
        async def fetch_structure():
            groups = await self.backend.fetch_groups()
            tabs = await self.backend.fetch_tabs()
            members: List[GroupMember] = []
            for group in groups:
                members.extend(await self.backend.fetch_group_members(group.id))
            return groups, members, tabs

        groups, members, tabs = await self._call_backend(fetch_structure(), lambda: None, "Loading groups")
        local_only = [
            (replace(group), [replace(member) for member in self.conversations.list_members(group.id)])
            for group in self.conversations.list_provisional_groups()
        ]
        self.conversations.load(groups, members, tabs)
        for group, group_members in local_only:
            self._keep_local_group(group, group_members)
        self.messages.relink_by_contact()

    def _keep_local_group(self, group: Group, members: List[GroupMember]) -> None:
        if self.conversations.has_group(group.id):
            return
        unclaimed = [m for m in members if self.conversations.find_group_by_email(m.email) is None]
        if members and not unclaimed:
            logger.info(f"Dropping local group {group.id}: the backend already has its addresses")
            return
        if group.tab_id is not None and self.conversations.get_tab(group.tab_id) is None:
            group.tab_id = None
        self.conversations.upsert_group(group)
        for member in unclaimed:
            self.conversations.add_member(group.id, member.email, member.display_name)

    def start(self) -> None:
        """Arm the periodic sync. Must be called from the event loop."""
        self.coordinator.start()

    async def close(self) -> None:
        """Stop syncing and write the local cache."""
        await self.coordinator.shutdown()
        self.save_cache()

    def save_cache(self) -> None:
        if self.database is None:
            return
        snapshot = cache_repo.snapshot_from_stores(self.conversations, self.messages)
        cache_repo.save_snapshot(self.database, self.cipher, snapshot)

    async def sync(self) -> SyncResult:
        """Run a manual sync."""
        return await self.coordinator.sync(SyncTrigger.MANUAL)

    def new_messages_available(self) -> None:
        """Push hint from the backend; schedules a background sync."""
        self.coordinator.new_messages_available()

    async def reauthenticate(self) -> None:
        await self.coordinator.reauthenticate()

    async def logout(self) -> None:
        await self.coordinator.logout()

    def apply_settings(self, settings: UserSettings) -> None:
        """
        Apply changed settings. The sync timer is re-armed when the
        interval changed; settings are saved when a cache is configured.
        """
        previous = self.settings
        self.settings = settings
        self.coordinator.notifications_enabled = settings.notifications_enabled
        if settings.sync_interval_seconds != previous.sync_interval_seconds:
            self.coordinator.set_interval(settings.sync_interval_seconds)
        if self.database is not None:
            save_settings(self.database, settings)

    # ========================================================================
    # Errors
    # ========================================================================

    def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
        """Listen for errors meant for the dismissible error banner."""
        self._error_listeners.append(listener)

        def remove() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return remove

    def _report(self, error: InboxError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener failed")

    async def _call_backend(self, call: Awaitable[T], compensate: Callable[[], None], what: str) -> T:
        """
        Await a backend call; on failure run the compensation and re-raise.

        Errors outside the InboxError taxonomy are re-raised as TransientError.
        """
        try:
            return await call
        except Exception as e:
            logger.warning(f"{what} failed, reverting local change: {e}")
            compensate()
            if isinstance(e, InboxError):
                self._report(e)
                raise
            error = TransientError(str(e) or e.__class__.__name__)
            self._report(error)
            raise error from e

    # ========================================================================
    # Selection
    # ========================================================================

    @property
    def selected_group_id(self) -> Optional[int]:
        return self._selected_group_id

    @property
    def selected_messages(self) -> List[Message]:
        return list(self._selected_messages)

    async def select_group(self, group_id: Optional[int]) -> Optional[Group]:
        """
        Select a conversation.

        Selecting a group that no longer exists is a no-op. With the
        auto-mark-as-read setting, the group's unread messages are marked
        read; a backend failure there is reported but keeps the selection.

        Returns:
            The selected group, or None.
        """
        if group_id is None:
            self._set_selection(None)
            return None
        group = self.conversations.get_group(group_id)
        if group is None:
            logger.debug(f"Ignoring selection of missing group {group_id}")
            return None

        self._set_selection(group_id)
        if self.settings.auto_mark_as_read and self.conversations.unread_count(group_id) > 0:
            try:
                await self.mark_group_as_read(group_id)
            except InboxError as e:
                logger.warning(f"Could not mark group {group_id} read on selection: {e}")
        return group

    async def handle_selection_request(self, request: GroupSelectionRequested) -> Optional[Group]:
        """Single entry point for every "open this conversation" signal."""
        logger.debug(f"Selection requested for group {request.group_id} ({request.source})")
        return await self.select_group(request.group_id)

    async def on_notification_clicked(self, group_id: int) -> Optional[Group]:
        return await self.handle_selection_request(
            GroupSelectionRequested(group_id=group_id, source="notification")
        )

    def _set_selection(self, group_id: Optional[int]) -> None:
        self._selected_group_id = group_id
        self._refresh_selected_messages()

    def _refresh_selected_messages(self) -> None:
        if self._selected_group_id is None:
            self._selected_messages = []
        else:
            self._selected_messages = self.messages.list_messages(self._selected_group_id)

    def _on_synced(self, result: SyncResult) -> None:
        touched = {message.group_id for message in result.new_messages}
        if self._selected_group_id in touched:
            self._refresh_selected_messages()

    def _on_store_change(self, change: StoreChange) -> None:
        if change.kind == "group_rekeyed" and change.previous_group_id == self._selected_group_id:
            self._selected_group_id = change.group_id

    # ========================================================================
    # Messages
    # ========================================================================

    def list_messages(self, group_id: int) -> List[Message]:
        return self.messages.list_messages(group_id)

    def analyze_message(self, local_id: int) -> BodyAnalysis:
        """Footer and truncation facts used to render one message."""
        message = self.messages.require_message(local_id)
        return analyze_body(message.body_text)

    async def mark_as_read(self, local_id: int) -> bool:
        """
        Mark one message read.

        Returns:
            False if it already was read (nothing sent to the backend).
        """
        if not self.messages.mark_as_read(local_id):
            return False
        await self._call_backend(
            self.backend.mark_read(local_id),
            lambda: self.messages.mark_as_unread(local_id),
            f"Marking message {local_id} read",
        )
        return True

    async def mark_group_as_read(self, group_id: int) -> List[int]:
        """Mark every message of a group read; returns the changed ids."""
        self.conversations.require_group(group_id)
        changed = self.messages.mark_group_as_read(group_id)
        if not changed:
            return changed

        def compensate():
            for local_id in changed:
                self.messages.mark_as_unread(local_id)

        await self._call_backend(
            self.backend.mark_group_read(group_id), compensate, f"Marking group {group_id} read"
        )
        return changed

    def toggle_bookmark(self, local_id: int) -> bool:
        return self.messages.toggle_bookmark(local_id)

    def list_bookmarks(self) -> List[Message]:
        return self.messages.list_bookmarks()

    def search(self, query: str, group_id: Optional[int] = None) -> List[Message]:
        return search.search_messages(self.messages, query=query, group_id=group_id)

    # ========================================================================
    # Groups
    # ========================================================================

    def list_groups(self, tab_id: Optional[int] = None) -> List[Group]:
        """Visible groups of a tab (None = main)."""
        return self.conversations.list_groups_for_tab(tab_id)

    async def create_group(self, name: str, avatar_color: Optional[str] = None) -> Group:
        """Create an empty group; it takes the id the backend assigns."""
        group = self.conversations.create_group(name, avatar_color)
        provisional_id = group.id
        final_id = await self._call_backend(
            self.backend.persist_group(group),
            lambda: self.conversations.delete_group(provisional_id),
            f"Creating group {name!r}",
        )
        self._adopt_group_id(provisional_id, final_id)
        return group

    async def update_group(self, group: Group) -> Group:
        """
        Store edited group metadata (name, color, pin, notify, hidden, tab).

        Raises:
            NotFoundError: If the group or its tab does not exist.
            InvalidArgumentError: If the name is empty.
        """
        previous = replace(self.conversations.require_group(group.id))
        stored = self.conversations.upsert_group(replace(group))
        final_id = await self._call_backend(
            self.backend.persist_group(stored),
            lambda: self.conversations.upsert_group(previous),
            f"Updating group {group.id}",
        )
        if stored.is_provisional:
            self._adopt_group_id(stored.id, final_id)
        return stored

    async def move_group_to_tab(self, group_id: int, tab_id: Optional[int]) -> Group:
        group = self.conversations.require_group(group_id)
        return await self.update_group(replace(group, tab_id=tab_id))

    async def set_group_hidden(self, group_id: int, hidden: bool) -> Group:
        group = self.conversations.require_group(group_id)
        return await self.update_group(replace(group, is_hidden=hidden))

    async def set_group_pinned(self, group_id: int, pinned: bool) -> Group:
        group = self.conversations.require_group(group_id)
        return await self.update_group(replace(group, is_pinned=pinned))

    async def delete_group(self, group_id: int) -> None:
        """
        Delete a group. Its messages are kept and detached; its members and
        counter are dropped.
        """
        group = replace(self.conversations.require_group(group_id))
        members = [replace(member) for member in self.conversations.list_members(group_id)]
        unread = self.conversations.unread_count(group_id)
        activity = self.conversations.last_activity(group_id)

        message_ids = self.messages.detach_group(group_id)
        self.conversations.delete_group(group_id)
        was_selected = self._selected_group_id == group_id
        if was_selected:
            self._set_selection(None)

        def compensate():
            self.conversations.upsert_group(replace(group))
            for member in members:
                self.conversations.restore_member(member)
            self.messages.move_messages(message_ids, group_id)
            self.conversations.set_unread(group_id, unread)
            self.conversations.reset_activity(group_id, activity)
            if was_selected:
                self._set_selection(group_id)

        await self._call_backend(
            self.backend.delete_group_remote(group_id), compensate, f"Deleting group {group_id}"
        )

    # ========================================================================
    # Members
    # ========================================================================

    def list_members(self, group_id: int) -> List[GroupMember]:
        return self.conversations.list_members(group_id)

    async def add_member(self, group_id: int, email: str, display_name: Optional[str] = None) -> GroupMember:
        member = self.conversations.add_member(group_id, email, display_name)
        await self._call_backend(
            self.backend.persist_member_change(group_id, member.email, display_name, removed=False),
            lambda: self.conversations.remove_member(group_id, member.email),
            f"Adding {member.email} to group {group_id}",
        )
        return member

    async def remove_member(self, group_id: int, email: str) -> GroupMember:
        member = self.conversations.remove_member(group_id, email)
        await self._call_backend(
            self.backend.persist_member_change(group_id, member.email, member.display_name, removed=True),
            lambda: self.conversations.restore_member(member),
            f"Removing {member.email} from group {group_id}",
        )
        return member

    # ========================================================================
    # Merge and split
    # ========================================================================

    async def merge_groups(self, target_id: int, source_id: int) -> Group:
        """
        Merge the source group into the target group.

        Returns:
            The target group.
        """
        record = self.engine.merge(target_id, source_id)
        was_selected = self._selected_group_id == source_id
        if was_selected:
            self._set_selection(target_id)
        elif self._selected_group_id == target_id:
            self._refresh_selected_messages()

        def compensate():
            self.engine.undo_merge(record)
            if was_selected:
                self._set_selection(source_id)
            elif self._selected_group_id == target_id:
                self._refresh_selected_messages()

        await self._call_backend(
            self.backend.merge_groups_remote(target_id, source_id),
            compensate,
            f"Merging group {source_id} into {target_id}",
        )
        return self.conversations.require_group(target_id)

    async def split_group(self, source_id: int, emails: Iterable[str], new_group_name: str) -> int:
        """
        Split members off into a new group.

        Returns:
            The new group's id as assigned by the backend. The local id is
            kept when the backend returns none or one that is already in use.
        """
        emails = list(emails)
        new_id = self.engine.split(source_id, emails, new_group_name)
        if self._selected_group_id == source_id:
            self._refresh_selected_messages()

        def compensate():
            self.engine.merge(source_id, new_id)
            if self._selected_group_id == source_id:
                self._refresh_selected_messages()

        final_id = await self._call_backend(
            self.backend.split_group_remote(source_id, emails, new_group_name.strip()),
            compensate,
            f"Splitting group {source_id}",
        )
        return self._adopt_group_id(new_id, final_id)

    def _adopt_group_id(self, provisional_id: int, final_id: Optional[int]) -> int:
        """
        Move a group to the id the backend returned. Never raises: the
        remote change already happened, so a clash only keeps the local id.
        """
        if final_id is None or final_id == provisional_id:
            return provisional_id
        if not self.conversations.has_group(provisional_id):
            logger.warning(f"Group {provisional_id} is gone; not adopting backend id {final_id}")
            return final_id
        group_id = self.messages.adopt_group_id(provisional_id, final_id)
        if group_id != final_id:
            self._report(ConflictError(f"The server returned group id {final_id}, which is already in use"))
        return group_id

    # ========================================================================
    # Tabs
    # ========================================================================

    def list_tabs(self) -> List[Tab]:
        return self.conversations.list_tabs()

    def _tab_state(self):
        tabs = [replace(tab) for tab in self.conversations.list_tabs()]
        links = {group.id: group.tab_id for group in self.conversations.list_groups()}
        return lambda: self.conversations.restore_tabs(tabs, links)

    async def create_tab(self, name: str) -> Tab:
        restore = self._tab_state()
        tab = self.conversations.create_tab(name)
        await self._call_backend(self.backend.persist_tab(tab), restore, f"Creating tab {name!r}")
        return tab

    async def rename_tab(self, tab_id: int, name: str) -> Tab:
        tab = self.conversations.get_tab(tab_id)
        if tab is None:
            raise NotFoundError(f"Tab {tab_id} not found")
        restore = self._tab_state()
        renamed = self.conversations.upsert_tab(replace(tab, name=name))
        await self._call_backend(self.backend.persist_tab(renamed), restore, f"Renaming tab {tab_id}")
        return renamed

    async def delete_tab(self, tab_id: int) -> List[int]:
        """Delete a tab; its groups go back to the main tab."""
        restore = self._tab_state()
        moved = self.conversations.delete_tab(tab_id)
        await self._call_backend(self.backend.delete_tab_remote(tab_id), restore, f"Deleting tab {tab_id}")
        return moved

    async def reorder_tabs(self, orders: Dict[int, int]) -> None:
        restore = self._tab_state()
        self.conversations.reorder_tabs(orders)

        async def persist_all():
            for tab_id in orders:
                await self.backend.persist_tab(self.conversations.get_tab(tab_id))

        await self._call_backend(persist_all(), restore, "Reordering tabs")

    # ========================================================================
    # Attachments
    # ========================================================================

    async def download_attachment(self, attachment_id: int) -> str:
        """
        Download an attachment, or return its path if already downloaded.

        Raises:
            AttachmentError: If the attachment is unknown or the download fails.
            AuthRequiredError: If the backend needs authentication.
        """
        attachment = self.messages.get_attachment(attachment_id)
        if attachment is None:
            raise AttachmentError(f"Attachment {attachment_id} not found")
        if attachment.local_path:
            return attachment.local_path

        try:
            local_path = await self.backend.download_attachment(attachment_id, self.settings.download_dir())
        except AuthRequiredError:
            raise
        except Exception as e:
            logger.error(f"Downloading attachment {attachment_id} failed: {e}")
            error = AttachmentError(f"Download of {attachment.filename} failed: {e}")
            self._report(error)
            raise error from e

        self.messages.set_attachment_path(attachment_id, local_path)
        return local_path

    async def open_attachment(self, attachment_id: int) -> str:
        """Open an attachment, downloading it first if needed."""
        local_path = await self.download_attachment(attachment_id)
        try:
            await self.backend.open_attachment(attachment_id)
        except InboxError:
            raise
        except Exception as e:
            raise AttachmentError(f"Could not open {local_path}: {e}") from e
        return local_path
