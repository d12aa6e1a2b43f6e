import json

import pytest
from fastapi.testclient import TestClient

from sql_chatbot.__main__ import app
from sql_chatbot.routes.chatbot.route import get_chat_service
from sql_chatbot.services import conversations
from sql_chatbot.services.chat_service import ChatService
from sql_chatbot.services.identity import get_current_user_id

from conftest import FakeChatModel, text_step, user_message

API = "/api/v1"


@pytest.fixture
def llm():
    return FakeChatModel([text_step("Here is ", "your schema")], title="Library Schema Design")


@pytest.fixture
def client(account, other_account, llm):
    app.dependency_overrides[get_current_user_id] = lambda: "user_1"
    app.dependency_overrides[get_chat_service] = lambda: ChatService(llm=llm, title_llm=llm)
    yield TestClient(app)
    app.dependency_overrides.clear()


def read_events(response):
    return [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_requests_without_token_are_rejected(database):
    response = TestClient(app).get(f"{API}/conversations")
    assert response.status_code == 401


def test_chat_streams_and_saves(client):
    response = client.post(
        f"{API}/chat", json={"id": "conv-1", "messages": [user_message("Design a library schema")]}
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = read_events(response)
    assert events[0]["type"] == "start"
    assert "".join(e["delta"] for e in events if e["type"] == "text-delta") == "Here is your schema"
    assert events[-1] == {"type": "finish", "reason": "stop", "conversation_id": "conv-1"}

    listed = client.get(f"{API}/conversations").json()
    assert [(c["id"], c["title"]) for c in listed] == [("conv-1", "Library Schema Design")]


def test_chat_rejects_empty_history(client):
    response = client.post(f"{API}/chat", json={"id": "conv-1", "messages": []})
    assert response.status_code == 422


def test_chat_on_foreign_conversation(client, other_account):
    conversations.save_conversation("conv-x", other_account["id"], [])
    response = client.post(f"{API}/chat", json={"id": "conv-x", "messages": [user_message("hi")]})
    assert response.status_code == 404


def test_save_and_load_conversation(client):
    body = {
        "title": "Books",
        "messages": [
            user_message("Create a books table"),
            {"id": "a1", "role": "assistant", "parts": [{"type": "text", "text": "Done"}]},
        ],
    }
    assert client.put(f"{API}/conversations/conv-1", json=body).status_code == 204

    loaded = client.get(f"{API}/conversations/conv-1").json()
    assert loaded["title"] == "Books"
    assert [m["parts"][0]["text"] for m in loaded["messages"]] == ["Create a books table", "Done"]

    stored = client.get(f"{API}/conversations/conv-1/messages").json()
    assert [m["content"] for m in stored] == ["Create a books table", "Done"]


def test_foreign_conversation_is_not_found(client, other_account):
    conversations.save_conversation("conv-x", other_account["id"], [])
    assert client.get(f"{API}/conversations/conv-x").status_code == 404
    assert client.get(f"{API}/conversations/conv-x/messages").status_code == 404
    response = client.put(f"{API}/conversations/conv-x", json={"messages": []})
    assert response.status_code == 404


def test_search(client, account):
    conversations.save_conversation(
        "conv-1", account["id"], [{"id": "m1", "role": "user", "content": "Design a library schema"}], "Library"
    )
    results = client.get(f"{API}/search", params={"q": "library"}).json()
    assert [r["conversation_title"] for r in results] == ["Library"]
    assert client.get(f"{API}/search").json() == []


def test_save_connection_rejects_malformed_string(client):
    response = client.put(f"{API}/connection", json={"connection_string": "postgres://x"})
    assert response.json() == {"success": False, "message": None, "error": "Invalid connection string format"}
    assert client.get(f"{API}/connection").json() == {"connection_url": None}


def test_test_connection_reports_failure(client):
    response = client.post(f"{API}/connection/test", json={"connection_string": "mysql://broken"})
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_query_tool_without_connection(client):
    response = client.post(f"{API}/tools/query", json={"query": "SELECT 1"})
    assert response.status_code == 400
    assert "No database connection configured" in response.json()["detail"]


def test_diagrams(client):
    response = client.post(
        f"{API}/diagrams", json={"title": "Library", "mermaid_code": "erDiagram\n  BOOK ||--o{ AUTHOR : writes"}
    )
    assert response.status_code == 200
    listed = client.get(f"{API}/diagrams").json()
    assert [d["id"] for d in listed] == [response.json()["id"]]
