"""
Direct access to the assistant's tools.

These let the client run an operation itself, for example re-running a
query from the transcript, with the same validation the assistant gets.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from sql_chatbot.routes.deps import get_current_account, to_http_exception
from sql_chatbot.services import conversations
from sql_chatbot.utils import external_db

router = APIRouter()


class SqlRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=100000, description="One or more ;-separated statements")


class QueryResponse(BaseModel):
    results: List[Dict[str, Any]]
    row_count: int


class ExecuteResponse(BaseModel):
    affected_rows: int


class DiagramRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    mermaid_code: str = Field(..., min_length=1)
    description: Optional[str] = None
    conversation_id: Optional[str] = None


class DiagramResponse(BaseModel):
    id: str
    title: str
    mermaid_code: str
    description: Optional[str] = None
    conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None


@router.post("/tools/schema", summary="Fetch the external database schema")
def get_database_schema(account: dict = Depends(get_current_account)) -> Dict[str, Any]:
    try:
        return external_db.get_schema(account.get("database_connection_url"))
    except Exception as e:
        raise to_http_exception(e, "Failed to fetch database schema")


@router.post("/tools/query", response_model=QueryResponse, summary="Run read-only SQL")
def query_database(request: SqlRequest, account: dict = Depends(get_current_account)):
    try:
        return external_db.run_query(account.get("database_connection_url"), request.query)
    except Exception as e:
        raise to_http_exception(e, "Query failed")


@router.post("/tools/execute", response_model=ExecuteResponse, summary="Run DDL/DML")
def execute_sql(request: SqlRequest, account: dict = Depends(get_current_account)):
    try:
        return external_db.run_mutation(account.get("database_connection_url"), request.query)
    except Exception as e:
        raise to_http_exception(e, "Statement execution failed")


@router.post("/diagrams", response_model=DiagramResponse, summary="Save an ER diagram")
def save_diagram(request: DiagramRequest, account: dict = Depends(get_current_account)):
    try:
        return conversations.save_diagram(
            account["id"],
            request.title,
            request.mermaid_code,
            request.description,
            conversation_id=request.conversation_id,
        )
    except Exception as e:
        raise to_http_exception(e, "Failed to save diagram")


@router.get("/diagrams", response_model=List[DiagramResponse], summary="List saved diagrams")
def list_diagrams(account: dict = Depends(get_current_account)):
    try:
        return conversations.list_diagrams(account["id"])
    except Exception as e:
        raise to_http_exception(e, "Failed to list diagrams")
