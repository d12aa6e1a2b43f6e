"""
Tools the assistant may call.

The set is closed: every tool is a `ToolName` member with a typed input
model and an execution mode. AUTO tools run on the server as soon as the
model calls them. CONFIRM tools are shown to the user and only resolved once
the user approves or denies them.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, cast
import logging

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from sql_chatbot.errors import ConnectionFailedError, ValidationError
from sql_chatbot.services import conversations
from sql_chatbot.utils import external_db

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "User denied the operation."


class ToolName(str, Enum):
    GET_DATABASE_SCHEMA = "get_database_schema"
    QUERY_DATABASE = "query_database"
    EXECUTE_SQL = "execute_sql"
    ASK_FOR_CONFIRMATION = "ask_for_confirmation"
    SAVE_DIAGRAM = "save_diagram"


class ExecutionMode(str, Enum):
    AUTO = "auto"
    CONFIRM = "confirm"


class GetDatabaseSchemaInput(BaseModel):
    pass


class QueryDatabaseInput(BaseModel):
    query: str = Field(..., description="The SQL SELECT query to execute")


class ExecuteSqlInput(BaseModel):
    query: str = Field(
        ..., description="The SQL statements to execute (CREATE, ALTER, INSERT, UPDATE, DELETE)"
    )


class ConfirmationInput(BaseModel):
    query: str = Field(..., description="The SQL that will run once the user approves")
    operation_type: Literal["query", "execute"] = Field(
        ..., description="'query' for read-only SELECTs, 'execute' for anything that changes data or schema"
    )
    message: str = Field(..., description="Short explanation of what the SQL does, shown to the user")


class SaveDiagramInput(BaseModel):
    title: str = Field(..., description="Title of the diagram")
    mermaid_code: str = Field(..., description="Mermaid erDiagram source")
    description: Optional[str] = Field(None, description="Optional description of the diagram")


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    input_model: Type[BaseModel]
    mode: ExecutionMode


TOOL_SPECS: Dict[ToolName, ToolSpec] = {
    ToolName.GET_DATABASE_SCHEMA: ToolSpec(
        ToolName.GET_DATABASE_SCHEMA,
        "Fetch the structure of the user's database: tables, columns, data types, nullability and keys",
        GetDatabaseSchemaInput,
        ExecutionMode.AUTO,
    ),
    ToolName.QUERY_DATABASE: ToolSpec(
        ToolName.QUERY_DATABASE,
        "Execute SELECT queries (read-only) to retrieve data from the user's database",
        QueryDatabaseInput,
        ExecutionMode.AUTO,
    ),
    ToolName.EXECUTE_SQL: ToolSpec(
        ToolName.EXECUTE_SQL,
        "Execute DDL/DML statements (CREATE, ALTER, INSERT, UPDATE, DELETE) on the user's database",
        ExecuteSqlInput,
        ExecutionMode.AUTO,
    ),
    ToolName.ASK_FOR_CONFIRMATION: ToolSpec(
        ToolName.ASK_FOR_CONFIRMATION,
        "Ask the user to approve SQL before it runs against their database. "
        "Required for every query or statement; the SQL runs only if the user approves.",
        ConfirmationInput,
        ExecutionMode.CONFIRM,
    ),
    ToolName.SAVE_DIAGRAM: ToolSpec(
        ToolName.SAVE_DIAGRAM,
        "Save an ER diagram to the user's diagram history",
        SaveDiagramInput,
        ExecutionMode.AUTO,
    ),
}


@dataclass
class ToolCall:
    id: str
    name: ToolName
    input: BaseModel

    @property
    def spec(self) -> ToolSpec:
        return TOOL_SPECS[self.name]

    @property
    def requires_confirmation(self) -> bool:
        return self.spec.mode is ExecutionMode.CONFIRM


@dataclass
class ToolContext:
    account_id: str
    connection_url: Optional[str]
    conversation_id: Optional[str] = None


def available_tools(require_confirmation: bool) -> List[ToolSpec]:
    """
    Tools exposed to the model.

    With confirmation enabled, SQL only reaches the database through
    `ask_for_confirmation`; otherwise query and execute run directly.
    """
    if require_confirmation:
        names = [
            ToolName.GET_DATABASE_SCHEMA,
            ToolName.ASK_FOR_CONFIRMATION,
            ToolName.SAVE_DIAGRAM,
        ]
    else:
        names = [
            ToolName.GET_DATABASE_SCHEMA,
            ToolName.QUERY_DATABASE,
            ToolName.EXECUTE_SQL,
            ToolName.SAVE_DIAGRAM,
        ]
    return [TOOL_SPECS[name] for name in names]


def _simplify_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    properties = {}
    for name, prop in schema.get("properties", {}).items():
        prop = {k: v for k, v in prop.items() if k not in ("title", "default")}
        if "anyOf" in prop:
            options = [o for o in prop.pop("anyOf") if o.get("type") != "null"]
            if options:
                prop.update(options[0])
        properties[name] = prop
    parameters: Dict[str, Any] = {"type": "object", "properties": properties}
    if schema.get("required"):
        parameters["required"] = schema["required"]
    return parameters


def tool_definitions(specs: List[ToolSpec]) -> List[Dict[str, Any]]:
    """Tool declarations in the function-calling format chat models accept."""
    return [
        {
            "type": "function",
            "function": {
                "name": spec.name.value,
                "description": spec.description,
                "parameters": _simplify_schema(spec.input_model.model_json_schema()),
            },
        }
        for spec in specs
    ]


def parse_tool_call(call_id: str, name: str, args: Optional[Dict[str, Any]]) -> ToolCall:
    try:
        tool_name = ToolName(name)
    except ValueError:
        raise ValidationError(f"Invalid tool: {name}")
    spec = TOOL_SPECS[tool_name]
    try:
        tool_input = spec.input_model.model_validate(args or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid arguments for {name}: {e}") from e
    return ToolCall(id=call_id, name=tool_name, input=tool_input)


def _failure(error: Exception) -> Dict[str, Any]:
    if isinstance(error, ConnectionFailedError):
        return {"success": False, "error": error.user_message}
    return {"success": False, "error": str(error)}


def _run(call: ToolCall, ctx: ToolContext) -> Dict[str, Any]:
    if call.name is ToolName.GET_DATABASE_SCHEMA:
        schema = external_db.get_schema(ctx.connection_url)
        return {"success": True, "schema": schema}
    elif call.name is ToolName.QUERY_DATABASE:
        tool_input = cast(QueryDatabaseInput, call.input)
        return {"success": True, **external_db.run_query(ctx.connection_url, tool_input.query)}
    elif call.name is ToolName.EXECUTE_SQL:
        tool_input = cast(ExecuteSqlInput, call.input)
        return {"success": True, **external_db.run_mutation(ctx.connection_url, tool_input.query)}
    elif call.name is ToolName.SAVE_DIAGRAM:
        tool_input = cast(SaveDiagramInput, call.input)
        diagram = conversations.save_diagram(
            ctx.account_id,
            tool_input.title,
            tool_input.mermaid_code,
            tool_input.description,
            conversation_id=ctx.conversation_id,
        )
        return {"success": True, "diagram_id": diagram["id"], "saved": True}
    elif call.name is ToolName.ASK_FOR_CONFIRMATION:
        raise ValueError("ask_for_confirmation is resolved by the user, not executed")
    raise ValueError(f"Unhandled tool {call.name}")


def execute_tool(call: ToolCall, ctx: ToolContext) -> Dict[str, Any]:
    """Run an AUTO tool; failures become an unsuccessful result for the model."""
    if call.requires_confirmation:
        raise ValueError(f"{call.name.value} requires user confirmation")
    try:
        result = _run(call, ctx)
        logger.info(f"Tool executed: {call.name.value} (account={ctx.account_id})")
        return result
    except Exception as e:
        logger.error(f"Tool {call.name.value} failed: {e}")
        return _failure(e)


def resolve_confirmation(call: ToolCall, approved: bool, ctx: ToolContext) -> Dict[str, Any]:
    """
    Turn the user's decision on an `ask_for_confirmation` call into its output.

    Approved SQL runs as a read-only query or as a mutation depending on the
    declared operation type; denied SQL never touches the database.
    """
    if not isinstance(call.input, ConfirmationInput):
        raise ValueError(f"{call.name.value} is not a confirmation request")
    confirmation = call.input
    if not approved:
        logger.info(f"User denied {confirmation.operation_type}: {call.id}")
        return {"approved": False, "result": {"success": False, "error": DENIED_MESSAGE}}

    underlying = ToolName.QUERY_DATABASE if confirmation.operation_type == "query" else ToolName.EXECUTE_SQL
    sql_call = parse_tool_call(call.id, underlying.value, {"query": confirmation.query})
    return {"approved": True, "result": execute_tool(sql_call, ctx)}
