import copy

import pytest

from sql_chatbot.client.session import ChatSession


class FakeClient:
    """Replays scripted event batches, one per chat request."""

    def __init__(self, *batches):
        self.batches = list(batches)
        self.payloads = []

    def stream_chat(self, payload):
        self.payloads.append(copy.deepcopy(payload))
        return iter(self.batches.pop(0) if self.batches else [])


def reply(message_id, text="Hello", reason="stop"):
    return [
        {"type": "start", "conversation_id": "conv-1", "message_id": message_id},
        {"type": "text-delta", "delta": text[:2]},
        {"type": "text-delta", "delta": text[2:]},
        {"type": "finish", "reason": reason, "conversation_id": "conv-1"},
    ]


def confirmation_request(message_id="a1", call_id="call_1"):
    return [
        {"type": "start", "conversation_id": "conv-1", "message_id": message_id},
        {"type": "text-delta", "delta": "I need approval."},
        {
            "type": "tool-call",
            "tool_call_id": call_id,
            "tool_name": "ask_for_confirmation",
            "input": {"query": "DELETE FROM books", "operation_type": "execute", "message": "Delete books"},
            "requires_confirmation": True,
        },
        {"type": "finish", "reason": "awaiting-confirmation", "conversation_id": "conv-1"},
    ]


def test_send_message_streams_reply():
    client = FakeClient(reply("a1", "Hello there"))
    session = ChatSession(client, "conv-1")

    session.send_message("hi")

    assert client.payloads[0]["id"] == "conv-1"
    assert [m["role"] for m in session.messages] == ["user", "assistant"]
    assert session.messages[1]["id"] == "a1"
    assert session.messages[1]["parts"] == [{"type": "text", "text": "Hello there"}]
    assert session.status == "ready"


def test_reasoning_and_text_are_separate_parts():
    client = FakeClient(
        [
            {"type": "start", "message_id": "a1"},
            {"type": "reasoning-delta", "delta": "Thinking"},
            {"type": "text-delta", "delta": "Answer"},
            {"type": "finish", "reason": "stop"},
        ]
    )
    session = ChatSession(client)
    session.send_message("hi")
    assert [p["type"] for p in session.messages[-1]["parts"]] == ["reasoning", "text"]


def test_initial_query_is_sent_once():
    client = FakeClient(reply("a1"), reply("a2"))
    session = ChatSession(client, "conv-1")

    assert session.send_initial_query("Show my tables") is True
    assert session.send_initial_query("Show my tables") is False
    assert len(client.payloads) == 1


def test_initial_query_ignored_for_stored_conversation():
    stored = [{"id": "m1", "role": "user", "parts": [{"type": "text", "text": "earlier"}]}]
    client = FakeClient()
    session = ChatSession(client, "conv-1", stored)

    assert session.send_initial_query("Show my tables") is False
    assert client.payloads == []


def test_confirmation_round_trip():
    client = FakeClient(
        confirmation_request(),
        [
            {"type": "start", "conversation_id": "conv-1", "message_id": "a1"},
            {
                "type": "tool-result",
                "tool_call_id": "call_1",
                "output": {"approved": False, "result": {"success": False, "error": "User denied the operation."}},
            },
            {"type": "text-delta", "delta": "Okay."},
            {"type": "finish", "reason": "stop", "conversation_id": "conv-1"},
        ],
    )
    session = ChatSession(client, "conv-1")
    session.send_message("Delete all books")

    assert session.status == "awaiting-confirmation"
    pending = session.pending_confirmations()
    assert [p["tool_call_id"] for p in pending] == ["call_1"]
    assert pending[0]["state"] == "awaiting-confirmation"

    session.respond_to_confirmation("call_1", False)

    resent = client.payloads[1]["messages"][-1]
    assert resent["id"] == "a1"
    assert resent["parts"][1]["output"] == {"approved": False}

    assert len(session.messages) == 2
    parts = session.messages[-1]["parts"]
    assert [p["type"] for p in parts] == ["text", "tool", "text"]
    assert parts[1]["state"] == "output-error"
    assert session.pending_confirmations() == []
    assert session.status == "ready"


def test_waits_for_every_pending_confirmation():
    batch = confirmation_request()
    batch.insert(
        3,
        {
            "type": "tool-call",
            "tool_call_id": "call_2",
            "tool_name": "ask_for_confirmation",
            "input": {"query": "SELECT 1", "operation_type": "query", "message": "Check"},
            "requires_confirmation": True,
        },
    )
    client = FakeClient(batch, reply("a1"))
    session = ChatSession(client, "conv-1")
    session.send_message("go")

    session.respond_to_confirmation("call_1", True)
    assert len(client.payloads) == 1
    session.respond_to_confirmation("call_2", True)
    assert len(client.payloads) == 2


def test_unknown_confirmation():
    session = ChatSession(FakeClient())
    with pytest.raises(KeyError):
        session.respond_to_confirmation("nope", True)


def test_transport_failure_is_surfaced():
    class BrokenClient:
        def stream_chat(self, payload):
            raise ConnectionError("server down")

    session = ChatSession(BrokenClient())
    session.send_message("hi")
    assert session.error == "server down"
    assert session.status == "ready"


def test_error_event():
    client = FakeClient(
        [
            {"type": "start", "message_id": "a1"},
            {"type": "error", "content": "Response timed out"},
            {"type": "finish", "reason": "timeout"},
        ]
    )
    session = ChatSession(client)
    session.send_message("hi")
    assert session.error == "Response timed out"
