from datetime import datetime, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from database import CONVERSATIONS, DIRECT_PAIRS, MEMBERSHIP, USER_ID_ALPHABET, USER_ID_LENGTH
from errors import AuthorizationError, NotFoundError, StoreError


def test_create_user_assigns_short_alphanumeric_id(store):
    user = store.create_user("Alice", "hash")
    assert len(user.id) == USER_ID_LENGTH
    assert set(user.id) <= set(USER_ID_ALPHABET)
    assert store.get_user(user.id).name == "Alice"


def test_create_user_retries_on_id_collision(store, seed, monkeypatch):
    seed.user("AAAAA", "Taken")
    picks = iter("AAAAA" + "BBBBB")
    monkeypatch.setattr("database.secrets.choice", lambda _alphabet: next(picks))

    user = store.create_user("Bob", "hash")
    assert user.id == "BBBBB"


def test_adding_same_member_twice_is_idempotent(store, seed):
    seed.user("AAAA1", "Alice")
    seed.conversation(7, ["AAAA1"])

    assert store.add_members(7, ["AAAA1"]) == 0
    assert store.add_members(7, ["AAAA1", "AAAA1"]) == 0
    assert store.member_ids(7) == ["AAAA1"]
    assert store.db[MEMBERSHIP].count_documents({"conversation_id": 7}) == 1


def test_conversation_and_message_ids_are_sequential(store):
    first = store.create_conversation(["AAAA1"])
    second = store.create_conversation(["AAAA1"])
    assert second.id == first.id + 1

    m1 = store.insert_message(first.id, "AAAA1", "one")
    m2 = store.insert_message(first.id, "AAAA1", "two")
    assert m2.id == m1.id + 1
    assert [m.text for m in store.messages_for(first.id)] == ["one", "two"]


def test_messages_for_returns_most_recent_window_oldest_first(store):
    for i in range(5):
        store.insert_message(1, "AAAA1", f"m{i}")
    assert [m.text for m in store.messages_for(1, limit=2)] == ["m3", "m4"]


def test_edit_requires_author(store, seed):
    seed.message(42, 7, "AAAA1", "hi")

    with pytest.raises(AuthorizationError):
        store.edit_message(42, "CCCC3", "nope")
    assert store.get_message(42).text == "hi"

    edited = store.edit_message(42, "AAAA1", "hi there")
    assert edited.text == "hi there"
    assert edited.edited is True


def test_delete_then_edit_is_not_found(store, seed):
    seed.message(42, 7, "AAAA1", "hi")

    deleted = store.delete_message(42, "AAAA1")
    assert deleted.conversation_id == 7
    with pytest.raises(NotFoundError):
        store.edit_message(42, "AAAA1", "again")
    with pytest.raises(NotFoundError):
        store.delete_message(42, "AAAA1")


def test_find_user_by_name_treats_ambiguity_as_not_found(store, seed):
    seed.user("AAAA1", "Sam")
    seed.user("BBBB2", "Sam")
    seed.user("CCCC3", "Carol")

    assert store.find_user_by_name("Carol").id == "CCCC3"
    with pytest.raises(NotFoundError):
        store.find_user_by_name("Sam")
    with pytest.raises(NotFoundError):
        store.find_user_by_name("Nobody")


def test_driver_errors_become_store_errors(store, monkeypatch):
    class DownCollection:
        def find_one(self, *_args, **_kwargs):
            raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(store, "_collection", lambda _name: DownCollection())

    with pytest.raises(StoreError):
        store.get_user("AAAA1")


def test_message_times_are_utc_and_millisecond_precise(store):
    sent = datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=timezone.utc)
    message = store.insert_message(1, "AAAA1", "hi", client_timestamp=sent)

    [stored] = store.messages_for(1)
    assert stored.timestamp == message.timestamp
    assert stored.timestamp.utcoffset() is not None
    assert stored.timestamp.microsecond % 1000 == 0
    assert stored.client_timestamp == datetime(2024, 5, 1, 12, 30, 15, 123000, tzinfo=timezone.utc)


def test_direct_pair_is_reused_until_renamed(store, seed):
    seed.user("AAAA1", "Alice")
    seed.user("BBBB2", "Bob")

    first = store.open_direct_conversation("AAAA1", "BBBB2")
    assert store.open_direct_conversation("BBBB2", "AAAA1").id == first.id

    store.rename_conversation(first.id, "Team")
    fresh = store.open_direct_conversation("AAAA1", "BBBB2")
    assert fresh.id != first.id
    assert set(store.member_ids(fresh.id)) == {"AAAA1", "BBBB2"}


def test_losing_a_direct_pair_race_returns_the_winner(store, seed, monkeypatch):
    seed.user("AAAA1", "Alice")
    seed.user("BBBB2", "Bob")
    seed.conversation(7, ["AAAA1", "BBBB2"])
    create = store.create_conversation
    created = []

    def create_while_rival_commits(member_ids, **kwargs):
        conversation = create(member_ids, **kwargs)
        created.append(conversation.id)
        store.db[DIRECT_PAIRS].insert_one({"_id": "AAAA1:BBBB2", "conversation_id": 7})
        return conversation

    monkeypatch.setattr(store, "create_conversation", create_while_rival_commits)

    conversation = store.open_direct_conversation("BBBB2", "AAAA1")
    assert conversation.id == 7
    [loser] = created
    assert store.db[CONVERSATIONS].count_documents({"_id": loser}) == 0
    assert store.db[MEMBERSHIP].count_documents({"conversation_id": loser}) == 0
    assert store.conversation_ids_for("AAAA1") == [7]
