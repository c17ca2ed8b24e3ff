"""
Tests for merging and splitting conversation groups.
"""
import pytest

from chat_inbox.models import Group, GroupMember
from chat_inbox.utils.errors import InvalidArgumentError, NotFoundError
from tests.helpers import make_message


def _snapshot(conversations, messages, group_id):
    return (
        set(conversations.member_emails(group_id)),
        messages.message_ids_for_group(group_id),
        conversations.unread_count(group_id),
    )


class TestMerge:
    def test_merge_sums_members_messages_and_unread(self, seeded, conversations, messages, engine):
        team, carol = seeded
        team_members, team_msgs, team_unread = _snapshot(conversations, messages, team.id)
        carol_members, carol_msgs, carol_unread = _snapshot(conversations, messages, carol.id)

        engine.merge(team.id, carol.id)

        members, msgs, unread = _snapshot(conversations, messages, team.id)
        assert members == team_members | carol_members
        assert msgs == team_msgs | carol_msgs
        assert unread == team_unread + carol_unread == 3
        assert conversations.get_group(carol.id) is None
        assert conversations.find_group_by_email("carol@example.com").id == team.id

    def test_merge_keeps_target_metadata(self, seeded, conversations, engine):
        team, carol = seeded
        conversations.upsert_group(Group(id=team.id, name="Team", avatar_color="#000000", is_pinned=True))

        engine.merge(team.id, carol.id)

        merged = conversations.get_group(team.id)
        assert (merged.name, merged.avatar_color, merged.is_pinned) == ("Team", "#000000", True)

    def test_merge_into_itself_is_invalid(self, seeded, engine):
        team, _ = seeded
        with pytest.raises(InvalidArgumentError):
            engine.merge(team.id, team.id)

    def test_merge_with_missing_group_changes_nothing(self, seeded, conversations, messages, engine):
        team, _ = seeded
        before = _snapshot(conversations, messages, team.id)

        with pytest.raises(NotFoundError):
            engine.merge(team.id, 999)
        with pytest.raises(NotFoundError):
            engine.merge(999, team.id)

        assert _snapshot(conversations, messages, team.id) == before

    def test_duplicate_address_is_collapsed(self, conversations, messages, engine):
        conversations.load(
            groups=[Group(id=1, name="A"), Group(id=2, name="B")],
            members=[
                GroupMember(id=1, group_id=1, email="shared@example.com"),
                GroupMember(id=2, group_id=2, email="shared@example.com"),
                GroupMember(id=3, group_id=2, email="only-b@example.com"),
            ],
        )

        record = engine.merge(1, 2)

        assert sorted(conversations.member_emails(1)) == ["only-b@example.com", "shared@example.com"]
        assert record.discarded_emails == {"shared@example.com"}

    def test_undo_merge_restores_source_exactly(self, seeded, conversations, messages, engine):
        team, carol = seeded
        team_before = _snapshot(conversations, messages, team.id)
        carol_before = _snapshot(conversations, messages, carol.id)
        carol_group = conversations.get_group(carol.id)

        record = engine.merge(team.id, carol.id)
        engine.undo_merge(record)

        assert _snapshot(conversations, messages, team.id) == team_before
        assert _snapshot(conversations, messages, carol.id) == carol_before
        restored = conversations.get_group(carol.id)
        assert (restored.name, restored.created_at) == (carol_group.name, carol_group.created_at)
        assert conversations.find_group_by_email("carol@example.com").id == carol.id

    def test_undo_merge_returns_mail_that_arrived_after_the_merge(self, seeded, conversations, messages, engine):
        team, carol = seeded
        record = engine.merge(team.id, carol.id)
        late = messages.append(make_message("carol@example.com", group_id=team.id))
        from_team = messages.append(make_message("alice@example.com", group_id=team.id))

        engine.undo_merge(record)

        assert messages.get_message(late.id).group_id == carol.id
        assert messages.get_message(from_team.id).group_id == team.id
        assert conversations.unread_count(carol.id) == 2
        assert conversations.unread_count(team.id) == 3


@pytest.fixture
def group_five(conversations, messages):
    """Group 5 with members a, b and c and one unread message from each."""
    conversations.load(groups=[Group(id=5, name="Five")])
    for email in ("a@x.com", "b@x.com", "c@x.com"):
        conversations.add_member(5, email)
        messages.append(make_message(email, group_id=5))
    return conversations.get_group(5)


class TestSplit:
    def test_split_moves_selected_members_and_their_messages(self, group_five, conversations, messages, engine):
        new_id = engine.split(5, ["a@x.com", "B@X.com"], "New")

        assert conversations.member_emails(5) == ["c@x.com"]
        assert sorted(conversations.member_emails(new_id)) == ["a@x.com", "b@x.com"]
        assert {m.from_email for m in messages.list_messages(5)} == {"c@x.com"}
        assert {m.from_email for m in messages.list_messages(new_id)} == {"a@x.com", "b@x.com"}
        assert conversations.unread_count(5) == 1
        assert conversations.unread_count(new_id) == 2
        assert conversations.get_group(new_id).name == "New"
        assert conversations.find_group_by_email("a@x.com").id == new_id

    def test_split_moves_sent_mail_by_recipient(self, group_five, conversations, messages, engine):
        sent = messages.append(make_message("me@example.com", to_email="a@x.com", group_id=5, is_sent=True))

        new_id = engine.split(5, ["a@x.com"], "A")

        assert messages.get_message(sent.id).group_id == new_id

    def test_split_covering_every_member_fails_without_change(self, group_five, conversations, messages, engine):
        before = _snapshot(conversations, messages, 5)
        group_count = len(conversations.list_groups())

        with pytest.raises(InvalidArgumentError):
            engine.split(5, ["a@x.com", "b@x.com", "c@x.com"], "New")

        assert _snapshot(conversations, messages, 5) == before
        assert len(conversations.list_groups()) == group_count

    @pytest.mark.parametrize("emails,name", [
        ([], "New"),
        (["z@x.com"], "New"),
        (["a@x.com"], "  "),
    ])
    def test_invalid_split_arguments(self, group_five, conversations, engine, emails, name):
        with pytest.raises(InvalidArgumentError):
            engine.split(5, emails, name)
        assert len(conversations.list_groups()) == 1

    def test_split_missing_group(self, engine):
        with pytest.raises(NotFoundError):
            engine.split(5, ["a@x.com"], "New")

    def test_split_then_merge_round_trip(self, group_five, conversations, messages, engine):
        members_before = set(conversations.member_emails(5))
        messages_before = messages.message_ids_for_group(5)
        unread_before = conversations.unread_count(5)

        new_id = engine.split(5, ["a@x.com", "b@x.com"], "New")
        engine.merge(5, new_id)

        assert set(conversations.member_emails(5)) == members_before
        assert messages.message_ids_for_group(5) == messages_before
        assert conversations.unread_count(5) == unread_before
        assert conversations.get_group(new_id) is None

    def test_adopt_group_id_rekeys_group_and_messages(self, group_five, conversations, messages, engine):
        new_id = engine.split(5, ["a@x.com"], "A")
        moved = messages.message_ids_for_group(new_id)

        messages.adopt_group_id(new_id, 77)

        assert conversations.get_group(new_id) is None
        assert conversations.get_group(77).name == "A"
        assert messages.message_ids_for_group(77) == moved
        assert conversations.find_group_by_email("a@x.com").id == 77
        assert conversations.unread_count(77) == 1
