import os

os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("DB_RETRY_BASE_DELAY", "0")

import asyncio
import json

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk
from langchain_core.messages.tool import tool_call_chunk
from sqlalchemy import create_engine, text

from sql_chatbot.db import Database, set_database
from sql_chatbot.services import conversations
from sql_chatbot.services.identity import UserProfile
from sql_chatbot.utils import external_db

CONNECTION_STRING = "mysql://app:s3cr@t@localhost:3306/shop"


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'chatbot.db'}")
    db.create_all()
    set_database(db)
    yield db
    set_database(None)
    db.dispose()


def make_account(external_id: str, email: str | None = None):
    return conversations.get_or_create_account(
        external_id,
        profile_loader=lambda ext: UserProfile(ext, email or f"{ext}@example.com", ext.title()),
    )


@pytest.fixture
def account(database):
    return make_account("user_1")


@pytest.fixture
def other_account(database):
    return make_account("user_2")


@pytest.fixture
def shop_db(tmp_path, monkeypatch):
    """A SQLite file standing in for the user's MySQL database."""
    path = tmp_path / "shop.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE books (id INTEGER PRIMARY KEY, name TEXT)"))
        conn.execute(text("INSERT INTO books (name) VALUES ('Dune'), ('Emma')"))
    engine.dispose()

    monkeypatch.setattr(
        external_db,
        "create_external_engine",
        lambda params: create_engine(f"sqlite:///{path}"),
    )
    return path


def text_step(*texts):
    return [AIMessageChunk(content=t) for t in texts]


def tool_step(name, args, call_id="call_1", preamble=None):
    chunks = []
    if preamble:
        chunks.append(AIMessageChunk(content=preamble))
    chunks.append(
        AIMessageChunk(
            content="",
            tool_call_chunks=[
                tool_call_chunk(name=name, args=json.dumps(args), id=call_id, index=0)
            ],
        )
    )
    return chunks


class FakeChatModel:
    """Scripted stand-in for the chat model; each astream call plays the next step."""

    def __init__(self, steps=None, title="Books Table Design", delay=0.0):
        self.steps = list(steps or [])
        self.title = title
        self.delay = delay
        self.calls = []
        self.bound_tools = None

    def bind_tools(self, tools):
        self.bound_tools = tools
        return self

    async def astream(self, messages):
        self.calls.append(list(messages))
        chunks = self.steps.pop(0) if self.steps else text_step("Done.")
        for chunk in chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk

    async def ainvoke(self, messages):
        return AIMessage(content=self.title)


class FailingTitleModel:
    async def ainvoke(self, messages):
        raise RuntimeError("model unavailable")


def user_message(text_value, message_id="m_user_1"):
    return {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text_value}]}
