"""
Tests for the Qt bridge and the tray notifier.
"""
import asyncio

import pytest

pytest.importorskip("PyQt5")

from PyQt5.QtCore import QCoreApplication, QObject, pyqtSignal  # noqa: E402

from chat_inbox.core.inbox import Inbox  # noqa: E402
from chat_inbox.events import GroupSelectionRequested  # noqa: E402
from chat_inbox.ui.notifications import NEW_MAIL_TITLE, QtInboxBridge, TrayNotifier  # noqa: E402
from chat_inbox.utils.errors import TransientError  # noqa: E402
from tests.helpers import ACCOUNT, make_message  # noqa: E402


class FakeTray(QObject):
    """Stands in for QSystemTrayIcon; records balloon messages."""
    messageClicked = pyqtSignal()

    def __init__(self):
        super().__init__()
        self.shown = []

    def showMessage(self, title, body, icon, duration):
        self.shown.append((title, body, duration))


@pytest.fixture(scope="module")
def qt_app():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def inbox(qt_app, backend):
    return Inbox(backend, account_email=ACCOUNT)


@pytest.fixture
def requests():
    return []


@pytest.fixture
def bridge(inbox, requests):
    bridge = QtInboxBridge(inbox, dispatch=requests.append)
    yield bridge
    bridge.detach()


@pytest.fixture
def tray(qt_app):
    return FakeTray()


def test_single_mail_click_requests_its_group(tray, bridge, requests):
    notifier = TrayNotifier(tray, duration_ms=3000)
    notifier.bridge = bridge

    notifier.notify_new_mail("Alice", "Lunch?", 3)
    tray.messageClicked.emit()

    assert tray.shown == [("Alice", "Lunch?", 3000)]
    assert requests == [GroupSelectionRequested(group_id=3, source="notification")]


def test_summary_notification_click_selects_nothing(tray, bridge, requests):
    notifier = TrayNotifier(tray, bridge=bridge)

    notifier.notify_new_mail("Alice", "Lunch?", 3)
    notifier.notify_new_mails(4)
    tray.messageClicked.emit()

    assert tray.shown[-1] == (NEW_MAIL_TITLE, "You have 4 new messages", 5000)
    assert requests == []


def test_click_without_bridge_is_ignored(tray):
    notifier = TrayNotifier(tray)
    notifier.notify_new_mail("Alice", "Lunch?", 3)
    tray.messageClicked.emit()


def test_bridge_relays_store_changes_and_errors(inbox, bridge):
    changes, banners = [], []
    bridge.storeChanged.connect(changes.append)
    bridge.errorRaised.connect(banners.append)

    inbox.conversations.create_group("Team")
    inbox._report(TransientError("connection refused"))

    assert [change.kind for change in changes] == ["group_created"]
    assert len(banners) == 1 and "connection" in banners[0]


def test_detached_bridge_stops_relaying(inbox, bridge):
    changes = []
    bridge.storeChanged.connect(changes.append)

    bridge.detach()
    inbox.conversations.create_group("Team")

    assert changes == []


@pytest.mark.asyncio
async def test_bridge_relays_sync_state(inbox, bridge):
    states = []
    bridge.syncStateChanged.connect(states.append)

    await inbox.sync()

    assert states == ["syncing", "idle"]


@pytest.mark.asyncio
async def test_default_dispatch_selects_on_the_event_loop(qt_app, backend):
    inbox = Inbox(backend, account_email=ACCOUNT)
    group = inbox.conversations.create_group_for_email("alice@example.com")
    inbox.messages.append(make_message("alice@example.com", group_id=group.id, is_read=True))
    bridge = QtInboxBridge(inbox)

    bridge.request_selection(group.id, source="notification")
    assert bridge.pending_selections == 1
    await _drain(bridge)

    assert inbox.selected_group_id == group.id
    assert bridge.pending_selections == 0
    bridge.detach()


@pytest.mark.asyncio
async def test_failed_scheduled_selection_is_logged(qt_app, backend, caplog):
    inbox = Inbox(backend, account_email=ACCOUNT)

    async def broken(request):
        raise RuntimeError("widget gone")

    inbox.handle_selection_request = broken
    bridge = QtInboxBridge(inbox)

    bridge.request_selection(3)
    await _drain(bridge)

    assert bridge.pending_selections == 0
    assert "widget gone" in caplog.text
    bridge.detach()


async def _drain(bridge):
    for _ in range(10):
        if not bridge.pending_selections:
            return
        await asyncio.sleep(0)
