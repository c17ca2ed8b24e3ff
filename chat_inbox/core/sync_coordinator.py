"""
Synchronization coordinator for the chat inbox.

This module pulls new mail from the backend, resolves each message to a
conversation group, and applies the batch to the stores as one synchronous
step. It also owns the periodic timer and the IDLE / SYNCING / AUTH_FAILED
state machine.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Set

from chat_inbox import config
from chat_inbox.backend.base import MailBackend, Notifier
from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.core.message_store import MessageStore
from chat_inbox.models import Message, normalize_email
from chat_inbox.utils.errors import AuthRequiredError, InboxError, TransientError

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    AUTH_FAILED = "auth_failed"


class SyncTrigger(Enum):
    MANUAL = "manual"
    PERIODIC = "periodic"
    PUSH = "push"
    FOLLOW_UP = "follow_up"  # Coalesced trigger that arrived during a sync


@dataclass
class SyncResult:
    """Outcome of one sync request."""
    trigger: SyncTrigger
    new_messages: List[Message] = field(default_factory=list)
    created_group_ids: List[int] = field(default_factory=list)
    duplicates: int = 0
    skipped_messages: int = 0
    initial: bool = False
    skipped: bool = False  # Not run at all (auth required)
    coalesced: bool = False  # Folded into the sync already running
    follow_up: Optional["SyncResult"] = None

    @property
    def new_count(self) -> int:
        return len(self.new_messages)


SyncedListener = Callable[[SyncResult], None]
ErrorListener = Callable[[InboxError], None]
StateListener = Callable[[SyncState], None]


class SyncCoordinator:
    """
    Reconciles the local stores with the remote mailbox.

    At most one fetch is in flight. A trigger arriving during a sync sets a
    single pending flag; when the running sync succeeds, exactly one
    follow-up sync runs, however many triggers arrived.

    Runs on the asyncio event loop thread only; the stores have no locks.
    """

    def __init__(
        self,
        conversations: ConversationStore,
        messages: MessageStore,
        backend: MailBackend,
        notifier: Optional[Notifier] = None,
        account_email: Optional[str] = None,
        interval_seconds: Optional[int] = None
    ):
        """
        Initialize the sync coordinator.

        Args:
            conversations: Group store messages are resolved against.
            messages: Store new messages are appended to.
            backend: The remote mailbox collaborator.
            notifier: Optional desktop notification collaborator.
            account_email: The user's own address, used to flag sent mail.
                Defaults to config.ACCOUNT_EMAIL.
            interval_seconds: Periodic sync interval; 0 or less disables it.
        """
        self.conversations = conversations
        self.messages = messages
        self.backend = backend
        self.notifier = notifier
        self.account_email = normalize_email(account_email or config.ACCOUNT_EMAIL) or None
        self.notifications_enabled = True

        self._interval = (
            interval_seconds if interval_seconds is not None
            else config.DEFAULT_SYNC_INTERVAL_SECONDS
        )
        self._state = SyncState.IDLE
        self._pending = False
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._unpersisted: Set[int] = set()
        self._last_error: Optional[InboxError] = None

        self._synced_listeners: List[SyncedListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._state_listeners: List[StateListener] = []

    # ========================================================================
    # State and listeners
    # ========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_error(self) -> Optional[InboxError]:
        return self._last_error

    @property
    def interval(self) -> int:
        return self._interval

    @property
    def timer_armed(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def is_syncing(self) -> bool:
        return self._state is SyncState.SYNCING

    def add_synced_listener(self, listener: SyncedListener) -> Callable[[], None]:
        """Run `listener` after every applied batch, before returning to IDLE."""
        return self._add(self._synced_listeners, listener)

    def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
        return self._add(self._error_listeners, listener)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        return self._add(self._state_listeners, listener)

    @staticmethod
    def _add(listeners: list, listener) -> Callable[[], None]:
        listeners.append(listener)

        def remove() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return remove

    def _set_state(self, state: SyncState) -> None:
        if state is self._state:
            return
        logger.debug(f"Sync state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Sync state listener failed")

    def _report_error(self, error: InboxError) -> None:
        self._last_error = error
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Sync error listener failed")

    # ========================================================================
    # Sync
    # ========================================================================

    async def sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        """
        Fetch new mail and apply it to the stores.

        Args:
            trigger: What asked for the sync.

        Returns:
            The SyncResult. If a sync is already running the request is
            coalesced and a result with `coalesced=True` returns at once.

        Raises:
            AuthRequiredError: If credentials are needed. A MANUAL trigger
                raises it while in AUTH_FAILED; automatic triggers are
                skipped instead.
            TransientError: For any other backend failure.
        """
        if self._state is SyncState.AUTH_FAILED:
            if trigger is SyncTrigger.MANUAL:
                raise AuthRequiredError("Sign in again to synchronize")
            logger.debug(f"Skipping {trigger.value} sync: authentication required")
            return SyncResult(trigger=trigger, skipped=True)

        if self._state is SyncState.SYNCING:
            self._pending = True
            logger.debug(f"{trigger.value} sync coalesced into the running one")
            return SyncResult(trigger=trigger, coalesced=True)

        self._set_state(SyncState.SYNCING)
        try:
            result = await self._run_once(trigger)
            last = result
            while self._pending:
                self._pending = False
                try:
                    last.follow_up = await self._run_once(SyncTrigger.FOLLOW_UP)
                except InboxError as e:
                    # Already recorded and reported; the caller's own sync succeeded
                    logger.warning(f"Follow-up sync failed: {e}")
                    break
                last = last.follow_up
        finally:
            self._pending = False
            if self._state is SyncState.SYNCING:
                self._set_state(SyncState.IDLE)
        return result

    async def _run_once(self, trigger: SyncTrigger) -> SyncResult:
        initial = len(self.messages) == 0
        logger.info(f"Starting {trigger.value} sync")
        try:
            fetched = await self.backend.fetch_new_messages()
        except AuthRequiredError as e:
            logger.warning(f"Sync needs authentication: {e}")
            self._pending = False
            self._set_state(SyncState.AUTH_FAILED)
            self._report_error(e)
            raise
        except TransientError as e:
            logger.error(f"Sync failed: {e}")
            self._set_state(SyncState.IDLE)
            self._report_error(e)
            raise
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            error = TransientError(str(e) or e.__class__.__name__)
            self._set_state(SyncState.IDLE)
            self._report_error(error)
            raise error from e

        result = self._apply_batch(trigger, fetched, initial)
        self._last_error = None
        self._unpersisted.update(result.created_group_ids)
        if self._unpersisted:
            await self._persist_new_groups(result)
        logger.info(
            f"{trigger.value} sync done: {result.new_count} new, "
            f"{result.duplicates} known, {len(result.created_group_ids)} groups created"
        )

        for listener in list(self._synced_listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Sync listener failed")
        self._notify(result)
        return result

    def _apply_batch(self, trigger: SyncTrigger, fetched: List[Message], initial: bool) -> SyncResult:
        """
        Apply one fetched batch. Synchronous, so no other coroutine sees a
        partially applied batch and every lookup uses current ownership.
        """
        result = SyncResult(trigger=trigger, initial=initial)
        for message in fetched:
            if self.messages.contains(message.dedup_key):
                result.duplicates += 1
                continue

            if self.account_email and normalize_email(message.from_email) == self.account_email:
                message.is_sent = True
            contact = message.contact_email
            if not contact or contact == self.account_email:
                result.skipped_messages += 1
                continue

            group = self.conversations.find_group_by_email(contact)
            if group is None:
                display_name = None if message.is_sent else message.from_name
                group = self.conversations.create_group_for_email(contact, display_name)
                result.created_group_ids.append(group.id)

            message.group_id = group.id
            stored = self.messages.append(message)
            if stored is None:
                result.duplicates += 1
            else:
                result.new_messages.append(stored)
        return result

    def queue_for_persistence(self, group_ids: Iterable[int]) -> None:
        """Have the next sync hand these locally created groups to the backend."""
        self._unpersisted.update(group_ids)

    @property
    def unpersisted_group_ids(self) -> Set[int]:
        return set(self._unpersisted)

    async def _persist_new_groups(self, result: SyncResult) -> None:
        """
        Store groups created by sync, with their members, and adopt the ids
        the backend assigns.

        A failure is reported but never undoes the applied batch; the group
        stays queued and is retried by the next sync.
        """
        adopted = {}
        for group_id in sorted(self._unpersisted, reverse=True):
            group = self.conversations.get_group(group_id)
            if group is None:
                self._unpersisted.discard(group_id)
                continue
            try:
                final_id = await self.backend.persist_group(group)
                if not self.conversations.has_group(group_id):
                    # Deleted or merged away while the call was in flight
                    self._unpersisted.discard(group_id)
                    continue
                current_id = group_id
                if final_id is not None:
                    current_id = self.messages.adopt_group_id(group_id, final_id)
                    adopted[group_id] = current_id
                self._unpersisted.discard(group_id)
                self._unpersisted.add(current_id)
                for member in self.conversations.list_members(current_id):
                    await self.backend.persist_member_change(
                        current_id, member.email, member.display_name, removed=False
                    )
                self._unpersisted.discard(current_id)
            except AuthRequiredError as e:
                logger.warning(f"Storing new group {group_id} needs authentication: {e}")
                self._pending = False
                self._set_state(SyncState.AUTH_FAILED)
                self._report_error(e)
                break
            except Exception as e:
                logger.error(f"Storing new group {group_id} failed, will retry: {e}")
                error = e if isinstance(e, InboxError) else TransientError(str(e) or e.__class__.__name__)
                self._report_error(error)
                break

        if adopted:
            result.created_group_ids = [adopted.get(i, i) for i in result.created_group_ids]

    def _notify(self, result: SyncResult) -> None:
        if result.initial or self.notifier is None or not self.notifications_enabled:
            return

        received = []
        for message in result.new_messages:
            if message.is_sent:
                continue
            group = self.conversations.get_group(message.group_id)
            if group is not None and group.notify_enabled:
                received.append(message)

        try:
            if len(received) == 1:
                message = received[0]
                self.notifier.notify_new_mail(
                    message.from_name or message.from_email,
                    message.subject or "",
                    message.group_id,
                )
            elif len(received) > 1:
                self.notifier.notify_new_mails(len(received))
        except Exception:
            # Delivery problems never fail a sync that was already applied
            logger.exception("Failed to deliver new mail notification")

    # ========================================================================
    # Triggers
    # ========================================================================

    async def on_timer_tick(self) -> SyncResult:
        return await self.sync(SyncTrigger.PERIODIC)

    def new_messages_available(self) -> asyncio.Task:
        """
        Handle a push hint that new mail exists.

        Schedules a PUSH sync on the running loop and returns its task.
        """
        return self._spawn(self.sync(SyncTrigger.PUSH))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Background sync ended with {error.__class__.__name__}: {error}")

    # ========================================================================
    # Timer
    # ========================================================================

    def start(self) -> None:
        """Arm the periodic timer. Must be called from the event loop."""
        self._running = True
        self._arm_timer()

    def set_interval(self, seconds: int) -> None:
        """
        Change the periodic interval. The timer is cancelled and re-armed;
        a value of 0 or less disables it.
        """
        self._interval = seconds
        logger.info(f"Sync interval set to {seconds}s")
        self._cancel_timer()
        if self._running:
            self._arm_timer()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._interval > 0 and self._state is not SyncState.AUTH_FAILED:
            self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop(self._interval))

    def _cancel_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    async def _timer_loop(self, interval: int) -> None:
        # Each tick runs in its own task so re-arming never cancels a fetch
        while True:
            await asyncio.sleep(interval)
            self._spawn(self.on_timer_tick())

    async def shutdown(self) -> None:
        """Cancel the timer and any background sync tasks."""
        self._running = False
        self._cancel_timer()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync coordinator stopped")

    # ========================================================================
    # Authentication
    # ========================================================================

    async def reauthenticate(self) -> None:
        """
        Run the backend's authentication flow again.

        On success the state returns to IDLE and the timer is re-armed.
        """
        try:
            await self.backend.reauthenticate()
        except AuthRequiredError as e:
            self._set_state(SyncState.AUTH_FAILED)
            self._report_error(e)
            raise
        except InboxError as e:
            self._report_error(e)
            raise
        except Exception as e:
            error = TransientError(str(e) or e.__class__.__name__)
            self._report_error(error)
            raise error from e

        self._last_error = None
        self._set_state(SyncState.IDLE)
        logger.info("Re-authenticated")
        if self._running and not self.timer_armed:
            self._arm_timer()

    async def logout(self) -> None:
        """
        Sign out. Cached groups and messages stay; syncing stays disabled
        until reauthenticate() succeeds.
        """
        await self.backend.logout()
        self._pending = False
        self._cancel_timer()
        self._set_state(SyncState.AUTH_FAILED)
        logger.info("Logged out")
