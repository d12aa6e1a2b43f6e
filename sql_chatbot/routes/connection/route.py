from fastapi import APIRouter, Depends
import logging

from sql_chatbot.errors import ValidationError
from sql_chatbot.routes.connection.schemas import (
    ConnectionRequest,
    ConnectionResponse,
    ConnectionTestResponse,
    SaveConnectionResponse,
)
from sql_chatbot.routes.deps import get_current_account, to_http_exception
from sql_chatbot.services import conversations
from sql_chatbot.utils import external_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/connection/test",
    response_model=ConnectionTestResponse,
    summary="Test a database connection",
    description="Connect to a MySQL database and report its version without saving anything",
)
def test_database_connection(
    request: ConnectionRequest,
    account: dict = Depends(get_current_account),
):
    return external_db.ping_database(request.connection_string)


@router.put(
    "/connection",
    response_model=SaveConnectionResponse,
    summary="Save a database connection",
    description="Test the connection string and store it on the caller's account",
)
def save_database_connection(
    request: ConnectionRequest,
    account: dict = Depends(get_current_account),
):
    try:
        external_db.parse_connection_string(request.connection_string)
    except ValidationError:
        return SaveConnectionResponse(success=False, error="Invalid connection string format")

    result = external_db.ping_database(request.connection_string)
    if not result["success"]:
        return SaveConnectionResponse(
            success=False,
            error="Connection test failed - unable to save invalid connection",
        )

    try:
        conversations.update_connection_url(account["id"], request.connection_string)
    except Exception as e:
        raise to_http_exception(e, "Failed to save connection")
    logger.info(f"Saved database connection for account {account['id']}")
    return SaveConnectionResponse(success=True, message="Connection saved successfully")


@router.get(
    "/connection",
    response_model=ConnectionResponse,
    summary="Get the saved database connection",
)
def get_database_connection(account: dict = Depends(get_current_account)):
    try:
        return ConnectionResponse(connection_url=conversations.get_connection_url(account["id"]))
    except Exception as e:
        raise to_http_exception(e, "Failed to load connection")
