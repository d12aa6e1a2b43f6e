import pytest
from sqlalchemy.exc import IntegrityError

from sql_chatbot.db import get_database
from sql_chatbot.errors import NotFoundError
from sql_chatbot.models.chat import DEFAULT_TITLE
from sql_chatbot.services import conversations
from sql_chatbot.services.identity import UserProfile, parse_user_profile
from sql_chatbot.utils.search import search_conversations

from conftest import make_account


def exchange(prefix="m", user="Create a books table", assistant="Here is the SQL"):
    return [
        {"id": f"{prefix}1", "role": "user", "content": user},
        {"id": f"{prefix}2", "role": "assistant", "content": assistant},
    ]


def test_account_is_created_once(database):
    calls = []

    def loader(external_id):
        calls.append(external_id)
        return UserProfile(external_id, "ada@example.com", "Ada Lovelace")

    first = conversations.get_or_create_account("user_ada", profile_loader=loader)
    second = conversations.get_or_create_account("user_ada", profile_loader=loader)
    assert first == second
    assert first["id"] == first["external_id"] == "user_ada"
    assert first["email"] == "ada@example.com"
    assert calls == ["user_ada"]


def test_concurrent_account_creation_keeps_first_writer(database):
    def racing_loader(external_id):
        # another request creates the row while this one is loading the profile
        make_account(external_id, email="first@example.com")
        return UserProfile(external_id, "second@example.com", "Second")

    account = conversations.get_or_create_account("user_race", profile_loader=racing_loader)
    assert account["email"] == "first@example.com"


def test_account_email_fallback(database):
    account = conversations.get_or_create_account(
        "user_x",
        email_fallback="fallback@example.com",
        profile_loader=lambda ext: UserProfile(ext, None, None),
    )
    assert account["email"] == "fallback@example.com"


def test_parse_user_profile_prefers_primary_email():
    profile = parse_user_profile(
        "user_1",
        {
            "primary_email_address_id": "e2",
            "email_addresses": [
                {"id": "e1", "email_address": "old@example.com"},
                {"id": "e2", "email_address": "main@example.com"},
            ],
            "first_name": "Grace",
            "last_name": None,
            "username": "grace",
        },
    )
    assert profile.email == "main@example.com"
    assert profile.name == "Grace"


def test_connection_url_roundtrip(account):
    assert conversations.get_connection_url(account["id"]) is None
    conversations.update_connection_url(account["id"], "mysql://u:p@h:3306/db")
    assert conversations.get_connection_url(account["id"]) == "mysql://u:p@h:3306/db"


def test_update_connection_url_for_missing_account(database):
    with pytest.raises(NotFoundError):
        conversations.update_connection_url("nobody", "mysql://u:p@h:3306/db")


def test_save_conversation_is_idempotent(account):
    conversations.save_conversation("conv-1", account["id"], exchange(), "Books Table Design")
    conversations.save_conversation("conv-1", account["id"], exchange())

    messages = conversations.list_messages("conv-1")
    assert [(m["id"], m["role"], m["content"]) for m in messages] == [
        ("m1", "user", "Create a books table"),
        ("m2", "assistant", "Here is the SQL"),
    ]
    assert conversations.get_conversation("conv-1")["title"] == "Books Table Design"


def test_save_conversation_overwrites_message_content(account):
    conversations.save_conversation("conv-1", account["id"], exchange())
    conversations.save_conversation(
        "conv-1", account["id"], exchange(assistant="Here is the corrected SQL")
    )
    messages = conversations.list_messages("conv-1")
    assert messages[1]["content"] == "Here is the corrected SQL"


def test_new_conversation_gets_default_title(account):
    conversations.save_conversation("conv-1", account["id"], exchange())
    assert conversations.get_conversation("conv-1")["title"] == DEFAULT_TITLE


def test_messages_keep_list_order(account):
    messages = exchange() + [
        {"id": "m3", "role": "user", "content": "Add an author column"},
        {"id": "m4", "role": "assistant", "content": "Done"},
    ]
    conversations.save_conversation("conv-1", account["id"], messages)
    assert [m["id"] for m in conversations.list_messages("conv-1")] == ["m1", "m2", "m3", "m4"]


def test_save_conversation_of_another_account(account, other_account):
    conversations.save_conversation("conv-1", account["id"], exchange())
    with pytest.raises(NotFoundError):
        conversations.save_conversation("conv-1", other_account["id"], exchange("x"))
    assert len(conversations.list_messages("conv-1")) == 2


def test_list_conversations_most_recent_first(account, other_account):
    conversations.save_conversation("conv-a", account["id"], exchange("a"))
    conversations.save_conversation("conv-b", account["id"], exchange("b"))
    conversations.save_conversation("conv-c", other_account["id"], exchange("c"))
    conversations.save_conversation("conv-a", account["id"], exchange("a"))

    assert [c["id"] for c in conversations.list_conversations(account["id"])] == ["conv-a", "conv-b"]


def test_account_conversation_access(account, other_account):
    conversations.save_conversation("conv-1", account["id"], exchange())
    with pytest.raises(NotFoundError):
        conversations.get_account_conversation(other_account["id"], "conv-1")
    with pytest.raises(NotFoundError):
        conversations.load_ui_messages(other_account["id"], "conv-1")


def test_load_ui_messages(account):
    conversations.save_conversation("conv-1", account["id"], exchange())
    messages = conversations.load_ui_messages(account["id"], "conv-1")
    assert messages[0] == {
        "id": "m1",
        "role": "user",
        "parts": [{"type": "text", "text": "Create a books table"}],
    }


def test_search_falls_back_to_like_on_sqlite(account, other_account):
    conversations.save_conversation("conv-1", account["id"], exchange("a", user="Design a Library schema"))
    conversations.save_conversation("conv-2", account["id"], exchange("b", user="Show my tables"))
    conversations.save_conversation("conv-3", other_account["id"], exchange("c", user="library of mine"))

    with get_database().session() as session:
        results = search_conversations(session, account["id"], "  library ")
        assert [r["conversation_id"] for r in results] == ["conv-1"]
        assert results[0]["matches"][0]["message_id"] == "a1"
        assert search_conversations(session, account["id"], "   ") == []


def test_message_id_of_another_conversation_is_rejected(account, other_account):
    conversations.save_conversation(
        "conv-a", account["id"], [{"id": "m1", "role": "user", "content": "secret of A"}]
    )
    with pytest.raises(NotFoundError):
        conversations.save_conversation(
            "conv-b", other_account["id"], [{"id": "m1", "role": "user", "content": "written by B"}]
        )

    assert [m["content"] for m in conversations.list_messages("conv-a")] == ["secret of A"]
    assert conversations.get_conversation("conv-b") is None


def test_duplicate_email_is_not_swallowed(database):
    make_account("user_a", email="shared@example.com")
    calls = []

    def loader(external_id):
        calls.append(external_id)
        return UserProfile(external_id, "shared@example.com", "B")

    with pytest.raises(IntegrityError):
        conversations.get_or_create_account("user_b", profile_loader=loader)
    assert calls == ["user_b"]
    assert conversations.get_connection_url("user_b") is None
