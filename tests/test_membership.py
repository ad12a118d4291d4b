"""Tests for the Membership Store authorization gate."""

import pytest

from chatline.chat import conversations, membership
from chatline.core.errors import Forbidden, InvalidArgument, NotFound


# =============================================================================
# is_member / members_of
# =============================================================================


class TestMembershipReads:
    def test_members_of_direct_conversation(self, store, alice, bob):
        chat_id, _ = conversations.find_or_create_direct(store, alice["id"], bob["id"])

        assert membership.members_of(store, chat_id) == {alice["id"], bob["id"]}

    def test_is_member_only_for_rows_that_exist(self, store, alice, bob, carol):
        chat_id, _ = conversations.find_or_create_direct(store, alice["id"], bob["id"])

        assert membership.is_member(store, chat_id, alice["id"]) is True
        assert membership.is_member(store, chat_id, bob["id"]) is True
        assert membership.is_member(store, chat_id, carol["id"]) is False

    def test_require_member_raises_forbidden(self, store, alice, bob, carol):
        chat_id, _ = conversations.find_or_create_direct(store, alice["id"], bob["id"])

        with pytest.raises(Forbidden):
            membership.require_member(store, chat_id, carol["id"])

    def test_chat_ids_for_keeps_enumeration_order(self, store, alice, bob, carol):
        first, _ = conversations.find_or_create_direct(store, alice["id"], bob["id"])
        second = conversations.create_group(store, alice["id"], [carol["id"]], "Team")

        assert membership.chat_ids_for(store, alice["id"]) == [first, second]
        assert membership.chat_ids_for(store, carol["id"]) == [second]


# =============================================================================
# add
# =============================================================================


class TestAddMembers:
    def test_creator_can_grow_group(self, store, alice, bob, carol):
        chat_id = conversations.create_group(store, alice["id"], [bob["id"]])

        added = membership.add(store, chat_id, [carol["id"]], alice["id"])

        assert [row.user_id for row in added] == [carol["id"]]
        assert membership.is_member(store, chat_id, carol["id"])

    def test_non_creator_member_is_forbidden(self, store, alice, bob, carol):
        chat_id = conversations.create_group(store, alice["id"], [bob["id"]])

        with pytest.raises(Forbidden):
            membership.add(store, chat_id, [carol["id"]], bob["id"])

        assert not membership.is_member(store, chat_id, carol["id"])

    def test_outsider_cannot_add_themself(self, store, alice, bob, carol):
        chat_id = conversations.create_group(store, alice["id"], [bob["id"]])

        with pytest.raises(Forbidden):
            membership.add(store, chat_id, [carol["id"]], carol["id"])

    def test_direct_conversation_never_grows(self, store, alice, bob, carol):
        chat_id, _ = conversations.find_or_create_direct(store, alice["id"], bob["id"])

        with pytest.raises(Forbidden):
            membership.add(store, chat_id, [carol["id"]], alice["id"])

        assert membership.members_of(store, chat_id) == {alice["id"], bob["id"]}

    def test_existing_members_are_skipped(self, store, alice, bob):
        chat_id = conversations.create_group(store, alice["id"], [bob["id"]])

        added = membership.add(store, chat_id, [bob["id"], alice["id"]], alice["id"])

        assert added == []
        assert len(store.rows("chat_members", chat_id=chat_id)) == 2

    def test_unknown_conversation(self, store, alice):
        with pytest.raises(NotFound):
            membership.add(store, "missing-chat", [alice["id"]], alice["id"])

    def test_empty_member_list(self, store, alice, bob):
        chat_id = conversations.create_group(store, alice["id"], [bob["id"]])

        with pytest.raises(InvalidArgument):
            membership.add(store, chat_id, [], alice["id"])
