"""
Qt adapters for the chat inbox.

This module provides:
- QtInboxBridge: relays store changes, sync state and errors as Qt signals,
  and funnels every "open this conversation" request into one
  GroupSelectionRequested handled by the Inbox
- TrayNotifier: delivers new mail notifications through a system tray icon

No business logic; the adapters only translate between Qt and the core.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set

from PyQt5.QtCore import QObject, pyqtSignal
from PyQt5.QtWidgets import QSystemTrayIcon

from chat_inbox.backend.base import Notifier
from chat_inbox.core.inbox import Inbox
from chat_inbox.core.sync_coordinator import SyncState
from chat_inbox.events import GroupSelectionRequested, StoreChange
from chat_inbox.utils.errors import InboxError, human_friendly_message

logger = logging.getLogger(__name__)

NEW_MAIL_TITLE = "New mail"


class QtInboxBridge(QObject):
    """
    Signal bridge between an Inbox and Qt widgets.

    Widgets connect to the signals instead of subscribing to the stores,
    and call request_selection() instead of selecting groups directly.
    """

    storeChanged = pyqtSignal(object)  # StoreChange
    syncStateChanged = pyqtSignal(str)
    errorRaised = pyqtSignal(str)  # Banner text
    selectionRequested = pyqtSignal(object)  # GroupSelectionRequested

    def __init__(
        self,
        inbox: Inbox,
        dispatch: Optional[Callable[[GroupSelectionRequested], None]] = None,
        parent: Optional[QObject] = None
    ):
        """
        Initialize the bridge.

        Args:
            inbox: The inbox to relay.
            dispatch: Receives every selection request. Defaults to scheduling
                Inbox.handle_selection_request on the running event loop.
            parent: Optional Qt parent.
        """
        super().__init__(parent)
        self.inbox = inbox
        self._dispatch = dispatch or self._schedule_selection
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = [
            inbox.conversations.subscribe(self._relay_change),
            inbox.messages.subscribe(self._relay_change),
            inbox.coordinator.add_state_listener(self._relay_state),
            inbox.add_error_listener(self._relay_error),
        ]
        self.selectionRequested.connect(self._on_selection_requested)

    def request_selection(self, group_id: int, source: str = "direct") -> None:
        """Ask for a group to be selected (sidebar click, notification click)."""
        self.selectionRequested.emit(GroupSelectionRequested(group_id=group_id, source=source))

    def detach(self) -> None:
        """Stop relaying. Call before the bridge is destroyed."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_selection_requested(self, request: GroupSelectionRequested) -> None:
        self._dispatch(request)

    @property
    def pending_selections(self) -> int:
        return len(self._tasks)

    def _schedule_selection(self, request: GroupSelectionRequested) -> None:
        task = asyncio.ensure_future(self.inbox.handle_selection_request(request))
        self._tasks.add(task)
        task.add_done_callback(self._selection_done)

    def _selection_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Selecting group failed: {error}")

    def _relay_change(self, change: StoreChange) -> None:
        self.storeChanged.emit(change)

    def _relay_state(self, state: SyncState) -> None:
        self.syncStateChanged.emit(state.value)

    def _relay_error(self, error: InboxError) -> None:
        self.errorRaised.emit(human_friendly_message(error))


class TrayNotifier(Notifier):
    """
    Notifier that shows balloon messages on a system tray icon.

    The tray's messageClicked signal carries no payload, so the group of the
    last single-message notification is remembered and a click on it is
    turned into a selection request through the bridge.
    """

    def __init__(self, tray, bridge: Optional[QtInboxBridge] = None, duration_ms: int = 5000):
        """
        Initialize the notifier.

        Args:
            tray: A QSystemTrayIcon (or any object with showMessage() and a
                messageClicked signal).
            bridge: Bridge that receives notification clicks.
            duration_ms: How long a message stays visible.
        """
        self.tray = tray
        self.bridge = bridge
        self.duration_ms = duration_ms
        self._last_group_id: Optional[int] = None
        tray.messageClicked.connect(self._on_message_clicked)

    def notify_new_mail(self, from_name: str, subject: str, group_id: int) -> None:
        self._last_group_id = group_id
        self._show(from_name, subject)

    def notify_new_mails(self, count: int) -> None:
        self._last_group_id = None
        self._show(NEW_MAIL_TITLE, f"You have {count} new messages")

    def _show(self, title: str, body: str) -> None:
        logger.debug(f"Showing tray notification: {title}")
        self.tray.showMessage(title, body, QSystemTrayIcon.Information, self.duration_ms)

    def _on_message_clicked(self) -> None:
        if self._last_group_id is None or self.bridge is None:
            return
        self.bridge.request_selection(self._last_group_id, source="notification")
