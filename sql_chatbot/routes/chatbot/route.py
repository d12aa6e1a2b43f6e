from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from typing import Any, Dict, List, Optional, Set
import asyncio
import json
import logging

from sql_chatbot.db import get_database
from sql_chatbot.errors import NotFoundError
from sql_chatbot.routes.chatbot.schemas import (
    ChatRequest,
    ConversationResponse,
    ConversationSummary,
    ErrorResponse,
    SaveConversationRequest,
    SearchResult,
    StoredMessage,
)
from sql_chatbot.routes.deps import get_current_account, to_http_exception
from sql_chatbot.services import conversations
from sql_chatbot.services.chat_service import ChatService
from sql_chatbot.services.identity import get_current_user_id
from sql_chatbot.utils.search import DEFAULT_LIMIT, search_conversations

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

router = APIRouter()

chat_service = ChatService()

# Strong references to detached chat tasks so they are not garbage collected mid-stream.
_background_tasks: Set[asyncio.Task] = set()


def get_chat_service() -> ChatService:
    return chat_service


def format_event(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


# --- ROUTES ---


@router.post(
    "/chat",
    summary="Chat with the assistant",
    description="Stream the assistant's reply to a conversation as server-sent events",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Stream a chat turn.

    The turn runs in a detached task that drains the model and saves the
    conversation even if the client goes away; this response only relays
    its events.
    """
    try:
        ctx = await run_in_threadpool(service.prepare, user_id, request)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Error resolving chat context for {user_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )

    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(service.run(ctx, queue.put_nowait))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    async def streamer():
        while True:
            event = await queue.get()
            if event is None:
                break
            yield format_event(event)

    return StreamingResponse(
        streamer(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get(
    "/conversations",
    response_model=List[ConversationSummary],
    summary="List conversations",
    description="The caller's conversations, most recently updated first",
)
def list_conversations(account: dict = Depends(get_current_account)):
    try:
        return conversations.list_conversations(account["id"])
    except Exception as e:
        raise to_http_exception(e, "Failed to list conversations")


@router.get(
    "/conversations/{conversation_id}",
    response_model=ConversationResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Load a conversation",
    description="A conversation's stored messages in displayable form",
)
def get_conversation(conversation_id: str, account: dict = Depends(get_current_account)):
    try:
        conversation = conversations.get_account_conversation(account["id"], conversation_id)
        messages = conversations.load_ui_messages(account["id"], conversation_id)
        return ConversationResponse(
            conversation_id=conversation_id,
            title=conversation["title"],
            messages=messages,
        )
    except Exception as e:
        raise to_http_exception(e, "Failed to retrieve conversation")


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=List[StoredMessage],
    responses={404: {"model": ErrorResponse}},
    summary="Get stored messages",
)
def get_conversation_messages(conversation_id: str, account: dict = Depends(get_current_account)):
    try:
        return conversations.list_account_messages(account["id"], conversation_id)
    except Exception as e:
        raise to_http_exception(e, "Failed to retrieve messages")


@router.put(
    "/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Save a conversation",
    description="Upsert a conversation and all of its messages",
)
def save_conversation(
    conversation_id: str,
    request: SaveConversationRequest,
    account: dict = Depends(get_current_account),
):
    try:
        conversations.save_conversation(
            conversation_id,
            account["id"],
            [m.to_record() for m in request.messages],
            request.title,
        )
    except Exception as e:
        raise to_http_exception(e, "Failed to save conversation")


@router.get(
    "/search",
    response_model=List[SearchResult],
    summary="Search conversations",
    description="Full-text search across the caller's messages, grouped by conversation",
)
def search(
    q: Optional[str] = Query(None, max_length=500),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=100),
    account: dict = Depends(get_current_account),
):
    try:
        with get_database().session() as session:
            return search_conversations(session, account["id"], q or "", limit)
    except Exception as e:
        raise to_http_exception(e, "Search failed")
