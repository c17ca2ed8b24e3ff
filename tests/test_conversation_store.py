"""
Tests for ConversationStore: groups, members, tabs and unread counters.
"""
from datetime import datetime

import pytest

from chat_inbox.models import Group, GroupMember, Tab
from chat_inbox.utils.errors import ConflictError, InvalidArgumentError, NotFoundError


class TestGroups:
    def test_create_group_for_email_binds_one_member(self, conversations):
        group = conversations.create_group_for_email("  Alice@Example.COM ", "Alice")

        assert group.id is not None
        assert group.name == "Alice"
        assert conversations.member_emails(group.id) == ["alice@example.com"]
        assert conversations.find_group_by_email("ALICE@example.com").id == group.id

    def test_create_group_for_owned_address_conflicts(self, conversations):
        conversations.create_group_for_email("alice@example.com")
        with pytest.raises(ConflictError):
            conversations.create_group_for_email("alice@example.com")

    def test_upsert_rejects_empty_name(self, conversations):
        with pytest.raises(InvalidArgumentError):
            conversations.upsert_group(Group(name="   "))

    def test_upsert_rejects_unknown_tab(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.upsert_group(Group(name="Team", tab_id=42))

    def test_update_keeps_id_and_created_at(self, conversations):
        group = conversations.create_group("Team")
        created_at = group.created_at

        updated = conversations.upsert_group(Group(id=group.id, name="Renamed", is_pinned=True))

        assert updated.id == group.id
        assert updated.created_at == created_at
        assert conversations.get_group(group.id).name == "Renamed"
        assert len(conversations.list_groups()) == 1

    def test_delete_group_drops_members_and_counter(self, conversations):
        group = conversations.create_group_for_email("alice@example.com")
        conversations.increment_unread(group.id, 3)

        conversations.delete_group(group.id)

        assert conversations.get_group(group.id) is None
        assert conversations.find_group_by_email("alice@example.com") is None
        assert conversations.unread_count(group.id) == 0

    def test_delete_missing_group(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.delete_group(99)

    def test_list_orders_pinned_then_activity(self, conversations):
        quiet = conversations.create_group("Quiet")
        busy = conversations.create_group("Busy")
        pinned = conversations.upsert_group(Group(name="Pinned", is_pinned=True))
        conversations.touch(quiet.id, datetime(2024, 1, 1))
        conversations.touch(busy.id, datetime(2024, 3, 1))

        names = [group.name for group in conversations.list_groups()]

        assert names == ["Pinned", "Busy", "Quiet"]

    def test_touch_only_moves_forward(self, conversations):
        group = conversations.create_group("Team")
        conversations.touch(group.id, datetime(2024, 3, 1))
        conversations.touch(group.id, datetime(2024, 1, 1))
        assert conversations.last_activity(group.id) == datetime(2024, 3, 1)


class TestMembers:
    def test_add_member_normalizes_address(self, conversations):
        group = conversations.create_group("Team")
        member = conversations.add_member(group.id, " Bob@Example.com", "Bob")

        assert member.email == "bob@example.com"
        assert conversations.find_group_by_email("bob@EXAMPLE.com").id == group.id

    def test_duplicate_member_in_same_group_conflicts(self, conversations):
        group = conversations.create_group_for_email("alice@example.com")
        with pytest.raises(ConflictError):
            conversations.add_member(group.id, "ALICE@example.com")

    def test_address_owned_by_other_group_conflicts(self, conversations):
        conversations.create_group_for_email("alice@example.com")
        other = conversations.create_group("Other")

        with pytest.raises(ConflictError):
            conversations.add_member(other.id, "alice@example.com")
        assert conversations.list_members(other.id) == []

    def test_empty_address_is_invalid(self, conversations):
        group = conversations.create_group("Team")
        with pytest.raises(InvalidArgumentError):
            conversations.add_member(group.id, "  ")

    def test_add_member_to_missing_group(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.add_member(7, "bob@example.com")

    def test_remove_member(self, conversations):
        group = conversations.create_group_for_email("alice@example.com")
        conversations.remove_member(group.id, "Alice@example.com")

        assert conversations.list_members(group.id) == []
        assert conversations.find_group_by_email("alice@example.com") is None

    def test_remove_missing_member(self, conversations):
        group = conversations.create_group("Team")
        with pytest.raises(NotFoundError):
            conversations.remove_member(group.id, "nobody@example.com")

    def test_restore_member_keeps_id(self, conversations):
        group = conversations.create_group_for_email("alice@example.com")
        removed = conversations.remove_member(group.id, "alice@example.com")

        restored = conversations.restore_member(removed)

        assert restored.id == removed.id
        assert conversations.find_group_by_email("alice@example.com").id == group.id


class TestTabs:
    def test_create_tab_appends_sort_order(self, conversations):
        work = conversations.create_tab("Work")
        family = conversations.create_tab("Family")

        assert family.sort_order == work.sort_order + 1
        assert [tab.name for tab in conversations.list_tabs()] == ["Work", "Family"]

    def test_empty_tab_name_is_invalid(self, conversations):
        with pytest.raises(InvalidArgumentError):
            conversations.create_tab("")

    def test_reorder_tabs(self, conversations):
        work = conversations.create_tab("Work")
        family = conversations.create_tab("Family")

        conversations.reorder_tabs({work.id: 5, family.id: 1})

        assert [tab.name for tab in conversations.list_tabs()] == ["Family", "Work"]

    def test_reorder_unknown_tab(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.reorder_tabs({3: 1})

    def test_delete_tab_moves_groups_to_main(self, conversations):
        work = conversations.create_tab("Work")
        group = conversations.create_group("Team")
        conversations.set_group_tab(group.id, work.id)
        assert [g.id for g in conversations.list_groups_for_tab(work.id)] == [group.id]

        moved = conversations.delete_tab(work.id)

        assert moved == [group.id]
        assert conversations.get_group(group.id) is not None
        assert [g.id for g in conversations.list_groups_for_tab(None)] == [group.id]

    def test_delete_missing_tab(self, conversations):
        with pytest.raises(NotFoundError):
            conversations.delete_tab(1)

    def test_hidden_group_is_not_listed_under_its_tab(self, conversations):
        work = conversations.create_tab("Work")
        group = conversations.create_group("Team")
        conversations.set_group_tab(group.id, work.id)
        conversations.set_group_hidden(group.id, True)

        assert conversations.list_groups_for_tab(work.id) == []
        assert conversations.list_groups_for_tab(None) == []
        assert [g.id for g in conversations.list_hidden_groups()] == [group.id]

    def test_restore_tabs(self, conversations):
        work = conversations.create_tab("Work")
        group = conversations.create_group("Team")
        conversations.set_group_tab(group.id, work.id)
        saved_tabs = [Tab(id=work.id, name="Work", sort_order=work.sort_order)]

        conversations.delete_tab(work.id)
        conversations.restore_tabs(saved_tabs, {group.id: work.id})

        assert conversations.get_tab(work.id).name == "Work"
        assert conversations.get_group(group.id).tab_id == work.id


class TestUnreadCounters:
    def test_decrement_is_floored_at_zero(self, conversations):
        group = conversations.create_group("Team")
        conversations.increment_unread(group.id)
        conversations.decrement_unread(group.id, 5)
        assert conversations.unread_count(group.id) == 0

    def test_counters_ignore_unknown_groups(self, conversations):
        assert conversations.increment_unread(99) == 0
        assert conversations.unread_counts() == {}

    def test_unread_counts_and_total(self, conversations):
        a = conversations.create_group("A")
        b = conversations.create_group("B")
        conversations.increment_unread(a.id, 2)

        assert conversations.unread_counts() == {a.id: 2}
        assert conversations.total_unread() == 2
        assert conversations.unread_count(b.id) == 0


class TestLoadAndObservers:
    def test_load_drops_missing_tab_reference(self, conversations):
        conversations.load(
            groups=[Group(id=4, name="Team", tab_id=9)],
            members=[GroupMember(id=1, group_id=4, email="Alice@example.com")],
            tabs=[],
        )

        assert conversations.get_group(4).tab_id is None
        assert conversations.find_group_by_email("alice@example.com").id == 4
        assert conversations.create_group("Next").id == -1

    def test_local_ids_are_provisional_and_skip_loaded_ones(self, conversations):
        conversations.load(groups=[Group(id=3, name="Server"), Group(id=-2, name="Local")])

        created = conversations.create_group("Next")

        assert created.id == -3
        assert created.is_provisional
        assert not conversations.get_group(3).is_provisional
        assert [g.id for g in conversations.list_provisional_groups()] == [-2, -3]

    def test_rekey_moves_members_and_reports_previous_id(self, conversations):
        seen = []
        group = conversations.create_group_for_email("alice@example.com")
        conversations.increment_unread(group.id, 2)
        conversations.subscribe(seen.append)

        conversations.rekey_group(group.id, 12)

        assert conversations.find_group_by_email("alice@example.com").id == 12
        assert conversations.unread_count(12) == 2
        assert (seen[-1].kind, seen[-1].group_id, seen[-1].previous_group_id) == ("group_rekeyed", 12, -1)

    def test_rekey_onto_taken_id_conflicts(self, conversations):
        conversations.load(groups=[Group(id=12, name="Server")])
        group = conversations.create_group("Local")

        with pytest.raises(ConflictError):
            conversations.rekey_group(group.id, 12)

    def test_listeners_receive_changes_until_unsubscribed(self, conversations):
        seen = []
        unsubscribe = conversations.subscribe(lambda change: seen.append(change.kind))

        group = conversations.create_group("Team")
        unsubscribe()
        conversations.delete_group(group.id)

        assert seen == ["group_created"]

    def test_broken_listener_does_not_break_mutation(self, conversations):
        def broken(change):
            raise RuntimeError("boom")

        conversations.subscribe(broken)
        group = conversations.create_group("Team")
        assert conversations.get_group(group.id) is not None
