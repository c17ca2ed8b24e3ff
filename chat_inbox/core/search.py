"""
Search and filtering over the in-memory message store.

Matches the query as a case-insensitive substring of the subject, plain
body, sender name and sender address.
"""
from typing import List, Optional

from chat_inbox.core.message_store import MessageStore, newest_first
from chat_inbox.models import Message


def _matches(message: Message, needle: str) -> bool:
    haystacks = (message.subject, message.body_text, message.from_name, message.from_email)
    return any(needle in (text or "").lower() for text in haystacks)


def search_messages(
    messages: MessageStore,
    query: str = "",
    group_id: Optional[int] = None,
    read_state: Optional[str] = None,
    limit: Optional[int] = None
) -> List[Message]:
    """
    Search stored messages.

    Args:
        messages: The message store to search.
        query: Search text. If empty, every message matching the filters is returned.
        group_id: Optional group to restrict the search to.
        read_state: Optional read state filter: 'read', 'unread', or None for all.
        limit: Maximum number of results, or None for no limit.

    Returns:
        Matching messages, newest first.

    Example:
        >>> results = search_messages(store, query="invoice", group_id=3)
    """
    candidates = messages.list_messages(group_id) if group_id is not None else messages.all_messages()

    if read_state is not None:
        if read_state.lower() == "read":
            candidates = [m for m in candidates if m.is_read]
        elif read_state.lower() == "unread":
            candidates = [m for m in candidates if not m.is_read]

    needle = (query or "").strip().lower()
    if needle:
        candidates = [m for m in candidates if _matches(m, needle)]

    results = newest_first(candidates)
    if limit is not None:
        results = results[:limit]
    return results
