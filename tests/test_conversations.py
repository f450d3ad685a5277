from conversations import default_group_name, display_name_for
from schemas import Conversation, Participant

ALICE = Participant(user_id="AAAA1", name="Alice")
BOB = Participant(user_id="BBBB2", name="Bob")
CAROL = Participant(user_id="CCCC3", name="Carol")


def test_pair_shows_the_peer():
    conversation = Conversation(id=7)
    assert display_name_for(conversation, [ALICE, BOB], "AAAA1") == "Bob"
    assert display_name_for(conversation, [ALICE, BOB], "BBBB2") == "Alice"


def test_group_name_wins():
    conversation = Conversation(id=7, group_name="Team")
    assert display_name_for(conversation, [ALICE, BOB], "AAAA1") == "Team"


def test_unnamed_crowd_gets_default():
    conversation = Conversation(id=9)
    assert display_name_for(conversation, [ALICE, BOB, CAROL], "AAAA1") == default_group_name(9) == "Group 9"


def test_explicit_display_name():
    conversation = Conversation(id=3, display_name="Notes")
    assert display_name_for(conversation, [ALICE], "AAAA1") == "Notes"
