"""
Internal events and the observer mechanism used by the stores.

UI layers subscribe to store changes instead of polling, and every external
"open this conversation" signal is translated into one
GroupSelectionRequested event before it reaches the core.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupSelectionRequested:
    """Request to select a conversation, e.g. after a notification click."""
    group_id: int
    source: str = "direct"  # "direct" or "notification"


@dataclass(frozen=True)
class StoreChange:
    """Describes a mutation of ConversationStore or MessageStore."""
    kind: str  # e.g. "group_created", "members_changed", "unread_changed"
    group_id: Optional[int] = None
    tab_id: Optional[int] = None
    message_ids: tuple = ()
    previous_group_id: Optional[int] = None  # set on "group_rekeyed"


Listener = Callable[[StoreChange], None]


class Observable:
    """Minimal synchronous observer list."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for store changes.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, **payload) -> None:
        change = StoreChange(kind=kind, **payload)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                # A broken observer must not leave the store half-updated
                logger.exception(f"Store listener failed on {kind}")
