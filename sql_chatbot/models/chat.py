from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Index,
    func,
)
from .base import Base

DEFAULT_TITLE = "New Chat"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True)  # identity provider subject id
    external_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    database_connection_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)  # generated by the client
    account_id = Column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String, nullable=False, default=DEFAULT_TITLE)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_conversation_account", "account_id", "updated_at"),)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, index=True)
    conversation_id = Column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String, nullable=False)  # user | assistant
    content = Column(Text, nullable=False)
    sequence_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_message_conversation", "conversation_id", "created_at"),)


class Diagram(Base):
    __tablename__ = "diagrams"

    id = Column(String, primary_key=True)
    account_id = Column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    conversation_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    mermaid_code = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
