import logging
from typing import Any, Dict, List

from sqlalchemy import func, literal, select
from sqlalchemy.orm import Session

from sql_chatbot.models.chat import Conversation, Message

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20


def _fulltext_statement(account_id: str, query: str, limit: int):
    document = func.to_tsvector("english", Message.content)
    ts_query = func.plainto_tsquery("english", query)
    rank = func.ts_rank(document, ts_query).label("relevance_rank")
    return (
        select(
            Conversation.id.label("conversation_id"),
            Conversation.title.label("conversation_title"),
            Message.id.label("message_id"),
            Message.content.label("message_content"),
            Message.role.label("message_role"),
            Message.created_at.label("message_created_at"),
            rank,
        )
        .join(Message, Message.conversation_id == Conversation.id)
        .where(Conversation.account_id == account_id, document.op("@@")(ts_query))
        .order_by(rank.desc(), Message.created_at.desc())
        .limit(limit)
    )


def _like_statement(account_id: str, query: str, limit: int):
    return (
        select(
            Conversation.id.label("conversation_id"),
            Conversation.title.label("conversation_title"),
            Message.id.label("message_id"),
            Message.content.label("message_content"),
            Message.role.label("message_role"),
            Message.created_at.label("message_created_at"),
            literal(0.0).label("relevance_rank"),
        )
        .join(Message, Message.conversation_id == Conversation.id)
        .where(
            Conversation.account_id == account_id,
            func.lower(Message.content).like(f"%{query.lower()}%"),
        )
        .order_by(Message.created_at.desc())
        .limit(limit)
    )


def group_by_conversation(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        match = {
            "message_id": row["message_id"],
            "message_content": row["message_content"],
            "message_role": row["message_role"],
            "message_created_at": row["message_created_at"],
            "relevance_rank": float(row["relevance_rank"] or 0),
        }
        entry = grouped.get(row["conversation_id"])
        if entry is None:
            grouped[row["conversation_id"]] = {
                "conversation_id": row["conversation_id"],
                "conversation_title": row["conversation_title"],
                "matches": [match],
            }
        else:
            entry["matches"].append(match)
    return list(grouped.values())


def search_conversations(
    session: Session, account_id: str, query: str, limit: int = DEFAULT_LIMIT
) -> List[Dict[str, Any]]:
    """Full-text search over the caller's messages, grouped per conversation."""
    query = " ".join(query.split()) if query else ""
    if not query:
        return []

    if session.get_bind().dialect.name == "postgresql":
        logger.info("🔍 Using PostgreSQL full-text search")
        stmt = _fulltext_statement(account_id, query, limit)
    else:
        logger.warning("Full-text search unavailable. Falling back to LIKE matching.")
        stmt = _like_statement(account_id, query, limit)

    rows = [dict(row._mapping) for row in session.execute(stmt)]
    return group_by_conversation(rows)
