"""
Persistence gateway for accounts, conversations and messages.

Every public operation goes through `with_retry`, so transient store
failures are retried with backoff while authorization, not-found and
validation failures surface immediately.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sql_chatbot.db import get_database
from sql_chatbot.db.crud_helper import (
    account_crud,
    conversation_crud,
    diagram_crud,
    message_crud,
)
from sql_chatbot.db.retry import with_retry
from sql_chatbot.errors import ChatbotError, NotFoundError
from sql_chatbot.models.chat import (
    DEFAULT_TITLE,
    Account,
    Conversation,
    Diagram,
    Message,
)
from sql_chatbot.services.identity import UserProfile, get_identity_provider
from sql_chatbot.settings import config

logger = logging.getLogger(__name__)

ProfileLoader = Callable[[str], UserProfile]


def _retry(operation):
    return with_retry(
        operation,
        max_retries=config.db_max_retries,
        base_delay=config.db_retry_base_delay,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Accounts ---


def _insert_account_if_absent(session: Session, values: Dict[str, Any]) -> None:
    """
    Insert the account unless a row with the same key already exists.

    Two requests racing for the same subject both end up here; the first
    insert wins and the second is a no-op, so both re-select the same row.
    Only a clash on `id` is ignored; a duplicate email still raises.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        try:
            with session.begin_nested():
                session.add(Account(**values))
        except IntegrityError:
            if session.get(Account, values["id"]) is None:
                raise
            logger.info(f"Account {values['id']} created concurrently, reusing it")
        return

    session.execute(
        insert(Account).values(**values).on_conflict_do_nothing(index_elements=[Account.id])
    )


def get_or_create_account(
    external_id: str,
    email_fallback: Optional[str] = None,
    profile_loader: Optional[ProfileLoader] = None,
) -> Dict[str, Any]:
    """
    Return the account for an identity-provider subject, creating it on first use.

    The subject id doubles as the internal primary key.
    """

    def lookup() -> Optional[Dict[str, Any]]:
        return account_crud.get_resource(
            resource_id=None, where=[Account.external_id == external_id]
        )

    account = _retry(lookup)
    if account is not None:
        return account

    loader = profile_loader or get_identity_provider().get_user
    profile = loader(external_id)
    values = {
        "id": external_id,
        "external_id": external_id,
        "email": profile.email or email_fallback or f"{external_id}@users.noreply",
        "name": profile.name,
    }

    def create() -> Dict[str, Any]:
        with get_database().transaction() as session:
            _insert_account_if_absent(session, values)
        created = lookup()
        if created is None:
            raise ChatbotError(f"Account for {external_id} could not be created")
        return created

    account = _retry(create)
    logger.info(f"Account ready for {external_id}")
    return account


def get_connection_url(account_id: str) -> Optional[str]:
    account = _retry(lambda: account_crud.get_resource(resource_id=account_id))
    if account is None:
        return None
    return account["database_connection_url"]


def update_connection_url(account_id: str, connection_url: Optional[str]) -> None:
    updated = _retry(
        lambda: account_crud.update_resource(
            {"database_connection_url": connection_url, "updated_at": _now()},
            resource_id=account_id,
        )
    )
    if updated is None:
        raise NotFoundError(f"Account {account_id} not found")


# --- Conversations ---


def save_conversation(
    conversation_id: str,
    account_id: str,
    messages: Sequence[Dict[str, Any]],
    title: Optional[str] = None,
) -> None:
    """
    Upsert a conversation and all of its messages in one transaction.

    `messages` are dicts with `id`, `role` and `content`. A message whose id
    already exists gets its role and content overwritten, which makes saving
    the same exchange twice harmless.
    """

    def save() -> None:
        with get_database().transaction() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                conversation = Conversation(
                    id=conversation_id,
                    account_id=account_id,
                    title=title or DEFAULT_TITLE,
                    updated_at=_now(),
                )
                session.add(conversation)
            elif conversation.account_id != account_id:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            else:
                if title:
                    conversation.title = title
                conversation.updated_at = _now()
            session.flush()

            for order, msg in enumerate(messages):
                existing = session.get(Message, msg["id"])
                if existing is None:
                    session.add(
                        Message(
                            id=msg["id"],
                            conversation_id=conversation_id,
                            role=msg["role"],
                            content=msg["content"],
                            sequence_order=order,
                        )
                    )
                elif existing.conversation_id != conversation_id:
                    raise NotFoundError(f"Message {msg['id']} not found")
                else:
                    existing.role = msg["role"]
                    existing.content = msg["content"]
                    existing.sequence_order = order

    _retry(save)
    logger.info(
        f"Saved conversation {conversation_id} with {len(messages)} messages"
    )


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    """Look a conversation up by id only; ownership is the caller's concern."""
    return _retry(lambda: conversation_crud.get_resource(resource_id=conversation_id))


def get_account_conversation(account_id: str, conversation_id: str) -> Dict[str, Any]:
    conversation = _retry(
        lambda: conversation_crud.get_resource(
            resource_id=conversation_id,
            where=[Conversation.account_id == account_id],
        )
    )
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def list_conversations(account_id: str) -> List[Dict[str, Any]]:
    return _retry(
        lambda: conversation_crud.list_resource(
            where=[Conversation.account_id == account_id],
            order_by=["-updated_at"],
        )
    )


def list_messages(conversation_id: str) -> List[Dict[str, Any]]:
    return _retry(
        lambda: message_crud.list_resource(
            where=[Message.conversation_id == conversation_id],
            order_by=["created_at", "sequence_order"],
        )
    )


def list_account_messages(account_id: str, conversation_id: str) -> List[Dict[str, Any]]:
    get_account_conversation(account_id, conversation_id)
    return list_messages(conversation_id)


def load_ui_messages(account_id: str, conversation_id: str) -> List[Dict[str, Any]]:
    """Stored messages in the shape the chat client renders, one text part each."""
    return [
        {
            "id": msg["id"],
            "role": msg["role"],
            "parts": [{"type": "text", "text": msg["content"]}],
        }
        for msg in list_account_messages(account_id, conversation_id)
    ]


# --- Diagrams ---


def save_diagram(
    account_id: str,
    title: str,
    mermaid_code: str,
    description: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _retry(
        lambda: diagram_crud.create_resource(
            {
                "id": uuid.uuid4().hex,
                "account_id": account_id,
                "conversation_id": conversation_id,
                "title": title,
                "mermaid_code": mermaid_code,
                "description": description,
            }
        )
    )


def list_diagrams(account_id: str) -> List[Dict[str, Any]]:
    return _retry(
        lambda: diagram_crud.list_resource(
            where=[Diagram.account_id == account_id],
            order_by=["-created_at"],
        )
    )
