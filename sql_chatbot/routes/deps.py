import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, status

from sql_chatbot.errors import (
    ConnectionFailedError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from sql_chatbot.services import conversations
from sql_chatbot.services.identity import get_current_user_id

logger = logging.getLogger(__name__)


def get_current_account(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """The caller's account row, created on first use."""
    try:
        return conversations.get_or_create_account(user_id)
    except Exception as e:
        logger.error(f"Error getting/creating account for {user_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )


def to_http_exception(error: Exception, fallback: str) -> HTTPException:
    """Map service errors onto HTTP errors; anything unexpected becomes a 500."""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, UnauthorizedError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, ConnectionFailedError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.user_message)
    logger.error(f"{fallback}: {error}", exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=fallback)
