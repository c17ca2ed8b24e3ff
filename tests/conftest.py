"""
Shared fixtures for the chat inbox tests.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_inbox.backend.base import MailBackend, Notifier
from chat_inbox.core.conversation_store import ConversationStore
from chat_inbox.core.merge_split import MergeSplitEngine
from chat_inbox.core.message_store import MessageStore
from tests.helpers import ACCOUNT, make_message


@pytest.fixture
def conversations():
    return ConversationStore()


@pytest.fixture
def messages(conversations):
    return MessageStore(conversations)


@pytest.fixture
def engine(conversations, messages):
    return MergeSplitEngine(conversations, messages)


@pytest.fixture
def backend():
    """Mail backend whose coroutines all succeed with empty results."""
    backend = AsyncMock(spec=MailBackend)
    backend.fetch_new_messages.return_value = []
    backend.fetch_groups.return_value = []
    backend.fetch_tabs.return_value = []
    backend.fetch_group_members.return_value = []
    backend.persist_group.return_value = None
    backend.split_group_remote.return_value = None
    backend.download_attachment.return_value = "/tmp/downloads/report.pdf"
    return backend


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def seeded(conversations, messages):
    """
    Two conversations:
    - "Team" (alice, bob): 3 messages, 2 unread
    - "Carol" (carol): 2 messages, 1 unread
    """
    team = conversations.create_group_for_email("alice@example.com", "Alice")
    conversations.add_member(team.id, "bob@example.com", "Bob")
    carol = conversations.create_group_for_email("carol@example.com", "Carol")

    for message in (
        make_message("alice@example.com", group_id=team.id),
        make_message("bob@example.com", group_id=team.id, is_read=True),
        make_message("bob@example.com", group_id=team.id),
        make_message("carol@example.com", group_id=carol.id),
        make_message(ACCOUNT, to_email="carol@example.com", group_id=carol.id, is_read=True, is_sent=True),
    ):
        messages.append(message)
    return team, carol
