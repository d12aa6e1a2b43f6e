"""
Conversation orchestration for the chat endpoint.

Handles:
- resolving the caller's account and the conversation being continued
- resolving confirmation decisions sent back by the client
- streaming the model's answer, running AUTO tools between model steps
- generating a title on the first exchange and saving the conversation
"""
from dataclasses import dataclass
from functools import cache
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import asyncio
import json
import logging
import uuid

from fastapi.concurrency import run_in_threadpool
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_google_genai import ChatGoogleGenerativeAI

from sql_chatbot.errors import NotFoundError, ValidationError
from sql_chatbot.models.chat import DEFAULT_TITLE
from sql_chatbot.routes.chatbot.schemas import ChatRequest, MessagePart, UIMessage
from sql_chatbot.services import conversations
from sql_chatbot.services.title import generate_title
from sql_chatbot.settings import config
from sql_chatbot.tools.registry import (
    ToolContext,
    ToolName,
    available_tools,
    execute_tool,
    parse_tool_call,
    resolve_confirmation,
    tool_definitions,
)

logger = logging.getLogger(__name__)

Emit = Callable[[Optional[Dict[str, Any]]], None]

SYSTEM_MESSAGE = """You are an expert database architect and SQL specialist.

You help users design, analyze, and manage their databases through conversation.

Your capabilities include:
1. Converting natural language descriptions to SQL table definitions
2. Analyzing existing database schemas and generating ER diagrams in Mermaid format
3. Executing queries and database operations
4. Providing normalization and design recommendations
5. Saving ER diagrams for future reference

Guidelines:
- Always explain what you're doing before making tool calls
- Generate Mermaid ER diagrams wrapped in ```mermaid code blocks
- Provide SQL in ```sql code blocks
- Use proper SQL syntax and best practices
- Consider normalization when creating new tables
- Show data types and constraints clearly in your responses

When the user asks to:
- "Show my database" → Use get_database_schema and generate a Mermaid ER diagram
- "Create a [Table] table with..." → Generate SQL in a ```sql code fence, then run it
- "What's in [Table]" → Query the table
- "Save this diagram" → Use save_diagram
"""

CONFIRMATION_GUIDANCE = """
Before any SQL touches the user's database you MUST call ask_for_confirmation with the exact
SQL, operation_type "query" for SELECTs or "execute" for anything else, and a one-line message.
The SQL only runs if the user approves; if they deny it, acknowledge and do not retry it.
"""

DIRECT_GUIDANCE = """
Use query_database for SELECT statements and execute_sql for DDL/DML. Warn the user before
dangerous operations (DROP, TRUNCATE, DELETE without WHERE).
"""


@cache
def get_chat_model() -> ChatGoogleGenerativeAI:
    return ChatGoogleGenerativeAI(
        model=config.gemini_model,
        google_api_key=config.gemini_api_key,
        temperature=0.2,
        thinking_budget=config.thinking_budget,
        include_thoughts=config.include_thoughts,
    )


@dataclass
class ChatContext:
    """Everything resolved before streaming starts."""
    request: ChatRequest
    account: Dict[str, Any]
    is_first_exchange: bool


@dataclass
class ChatTurn:
    """Messages of one request; mutated while streaming so a timeout keeps partial output."""
    conversation_id: str
    messages: List[UIMessage]
    assistant: UIMessage
    finish_reason: str = "stop"


def iter_content(content: Any) -> Iterator[Tuple[str, str]]:
    """Yield (kind, text) pairs from a model chunk, kind being "text" or "reasoning"."""
    if isinstance(content, str):
        if content:
            yield "text", content
        return
    for block in content or []:
        if isinstance(block, str):
            if block:
                yield "text", block
        elif isinstance(block, dict):
            kind = block.get("type")
            if kind == "text" and block.get("text"):
                yield "text", block["text"]
            elif kind in ("thinking", "reasoning"):
                text = block.get(kind) or block.get("text")
                if text:
                    yield "reasoning", text


def _append_text(message: UIMessage, kind: str, text: str) -> None:
    if message.parts and message.parts[-1].type == kind:
        message.parts[-1].text = (message.parts[-1].text or "") + text
    else:
        message.parts.append(MessagePart(type=kind, text=text))


def _dump(output: Any) -> str:
    return json.dumps(output, default=str)


def to_langchain_messages(messages: List[UIMessage]) -> List[BaseMessage]:
    """
    Convert client messages into model history.

    An assistant message can hold several model steps (text, tool calls,
    more text); each step becomes an AIMessage followed by its ToolMessages.
    Tool calls without an output yet are left out.
    """
    history: List[BaseMessage] = []
    for message in messages:
        if message.role == "user":
            history.append(HumanMessage(content=message.text()))
            continue

        text_buf: List[str] = []
        calls: List[MessagePart] = []

        def flush() -> None:
            answered = [c for c in calls if c.output is not None]
            if not text_buf and not answered:
                return
            history.append(
                AIMessage(
                    content=" ".join(text_buf).strip(),
                    tool_calls=[
                        {"name": c.tool_name, "args": c.input or {}, "id": c.tool_call_id}
                        for c in answered
                    ],
                )
            )
            for c in answered:
                history.append(
                    ToolMessage(content=_dump(c.output), tool_call_id=c.tool_call_id)
                )
            text_buf.clear()
            calls.clear()

        for part in message.parts:
            if part.type == "text":
                if calls:
                    flush()
                text_buf.append(part.text or "")
            elif part.type == "tool":
                calls.append(part)
        flush()
    return history


class ChatService:
    """Service layer for chat operations."""

    def __init__(
        self,
        llm=None,
        title_llm=None,
        require_confirmation: Optional[bool] = None,
        max_duration: Optional[float] = None,
        max_tool_steps: Optional[int] = None,
    ):
        self._llm = llm
        self.title_llm = title_llm
        self.require_confirmation = (
            config.require_confirmation if require_confirmation is None else require_confirmation
        )
        self.max_duration = config.chat_max_duration if max_duration is None else max_duration
        self.max_tool_steps = config.max_tool_steps if max_tool_steps is None else max_tool_steps

    @property
    def llm(self):
        return self._llm or get_chat_model()

    def system_prompt(self) -> str:
        guidance = CONFIRMATION_GUIDANCE if self.require_confirmation else DIRECT_GUIDANCE
        return SYSTEM_MESSAGE + guidance

    # --- resolving ---

    def prepare(self, user_id: str, request: ChatRequest) -> ChatContext:
        """
        Resolve account and conversation before streaming.

        Raises NotFoundError when the conversation id belongs to someone else.
        Any persistence failure while resolving the account propagates.
        """
        account = conversations.get_or_create_account(user_id)
        existing = conversations.get_conversation(request.id)
        if existing is not None and existing["account_id"] != account["id"]:
            raise NotFoundError(f"Conversation {request.id} not found")
        return ChatContext(
            request=request,
            account=account,
            is_first_exchange=existing is None,
        )

    def start_turn(self, request: ChatRequest) -> ChatTurn:
        messages = [m.model_copy(deep=True) for m in request.messages]
        if messages and messages[-1].role == "assistant":
            # Continuation after a confirmation: keep extending the same message.
            assistant = messages[-1]
        else:
            assistant = UIMessage(id=uuid.uuid4().hex, role="assistant", parts=[])
            messages.append(assistant)
        return ChatTurn(conversation_id=request.id, messages=messages, assistant=assistant)

    # --- streaming ---

    async def run(self, ctx: ChatContext, emit: Emit) -> ChatTurn:
        """
        Stream one chat turn and then finalize it.

        Meant to run as a detached task: it always finishes, saves, and
        finally emits None to close the stream, whether or not anyone is
        still reading.
        """
        turn = self.start_turn(ctx.request)
        tool_ctx = ToolContext(
            account_id=ctx.account["id"],
            connection_url=ctx.account.get("database_connection_url"),
            conversation_id=ctx.request.id,
        )

        def send(event: Dict[str, Any]) -> None:
            emit(event)

        try:
            send(
                {
                    "type": "start",
                    "conversation_id": turn.conversation_id,
                    "message_id": turn.assistant.id,
                }
            )
            try:
                await asyncio.wait_for(
                    self._stream(turn, tool_ctx, send), timeout=self.max_duration
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Chat stream for {turn.conversation_id} exceeded {self.max_duration}s"
                )
                turn.finish_reason = "timeout"
                send({"type": "error", "content": "Response timed out"})
            except Exception as e:
                logger.error(f"Streaming error: {e}", exc_info=True)
                turn.finish_reason = "error"
                send({"type": "error", "content": "Error processing request"})
            send(
                {
                    "type": "finish",
                    "reason": turn.finish_reason,
                    "conversation_id": turn.conversation_id,
                }
            )
            await self.finalize(ctx, turn)
        finally:
            emit(None)
        return turn

    async def _resolve_confirmations(
        self, turn: ChatTurn, tool_ctx: ToolContext, send: Callable[[Dict[str, Any]], None]
    ) -> None:
        for part in turn.assistant.parts:
            if part.type != "tool" or part.tool_name != ToolName.ASK_FOR_CONFIRMATION.value:
                continue
            decision = part.output
            if not isinstance(decision, dict) or "approved" not in decision or "result" in decision:
                continue
            try:
                call = parse_tool_call(part.tool_call_id or "", part.tool_name, part.input)
                output = await run_in_threadpool(
                    resolve_confirmation, call, bool(decision["approved"]), tool_ctx
                )
                part.state = "output-available"
            except ValidationError as e:
                output = {"approved": False, "result": {"success": False, "error": str(e)}}
                part.state = "output-error"
            part.output = output
            send({"type": "tool-result", "tool_call_id": part.tool_call_id, "output": output})

    async def _stream_step(
        self, model, history: List[BaseMessage], turn: ChatTurn, send
    ) -> AIMessage:
        accumulated: Optional[AIMessageChunk] = None
        text_parts: List[str] = []
        async for chunk in model.astream(history):
            accumulated = chunk if accumulated is None else accumulated + chunk
            for kind, text in iter_content(chunk.content):
                _append_text(turn.assistant, kind, text)
                if kind == "text":
                    text_parts.append(text)
                    send({"type": "text-delta", "delta": text})
                else:
                    send({"type": "reasoning-delta", "delta": text})
        tool_calls = accumulated.tool_calls if accumulated is not None else []
        return AIMessage(content="".join(text_parts), tool_calls=tool_calls)

    async def _stream(
        self, turn: ChatTurn, tool_ctx: ToolContext, send: Callable[[Dict[str, Any]], None]
    ) -> None:
        await self._resolve_confirmations(turn, tool_ctx, send)

        history: List[BaseMessage] = [SystemMessage(content=self.system_prompt())]
        history.extend(to_langchain_messages(turn.messages))
        model = self.llm.bind_tools(
            tool_definitions(available_tools(self.require_confirmation))
        )

        for _ in range(self.max_tool_steps):
            ai_message = await self._stream_step(model, history, turn, send)
            history.append(ai_message)
            if not ai_message.tool_calls:
                turn.finish_reason = "stop"
                return

            awaiting_confirmation = False
            for tool_call in ai_message.tool_calls:
                call_id = tool_call.get("id") or uuid.uuid4().hex
                part = MessagePart(
                    type="tool",
                    tool_call_id=call_id,
                    tool_name=tool_call["name"],
                    input=tool_call.get("args") or {},
                    state="input-available",
                )
                turn.assistant.parts.append(part)
                try:
                    call = parse_tool_call(call_id, tool_call["name"], tool_call.get("args"))
                except ValidationError as e:
                    logger.error(f"Rejected tool call {tool_call['name']}: {e}")
                    send(
                        {
                            "type": "tool-call",
                            "tool_call_id": call_id,
                            "tool_name": part.tool_name,
                            "input": part.input,
                            "requires_confirmation": False,
                        }
                    )
                    output = {"success": False, "error": str(e)}
                    part.output, part.state = output, "output-error"
                    send({"type": "tool-result", "tool_call_id": call_id, "output": output})
                    history.append(ToolMessage(content=_dump(output), tool_call_id=call_id))
                    continue

                send(
                    {
                        "type": "tool-call",
                        "tool_call_id": call_id,
                        "tool_name": call.name.value,
                        "input": call.input.model_dump(),
                        "requires_confirmation": call.requires_confirmation,
                    }
                )
                if call.requires_confirmation:
                    part.state = "awaiting-confirmation"
                    awaiting_confirmation = True
                    continue

                output = await run_in_threadpool(execute_tool, call, tool_ctx)
                part.output = output
                part.state = "output-available" if output.get("success") else "output-error"
                send({"type": "tool-result", "tool_call_id": call_id, "output": output})
                history.append(ToolMessage(content=_dump(output), tool_call_id=call_id))

            if awaiting_confirmation:
                turn.finish_reason = "awaiting-confirmation"
                return

        logger.warning(f"Tool step limit reached for {turn.conversation_id}")
        turn.finish_reason = "tool-steps"

    # --- finalizing ---

    async def finalize(self, ctx: ChatContext, turn: ChatTurn) -> None:
        """
        Title the conversation on its first exchange and save it.

        A failed save is logged and swallowed; the reply has already been
        streamed by the time this runs.
        """
        to_save = [m for m in turn.messages if m.parts]
        title = None
        if ctx.is_first_exchange:
            title = DEFAULT_TITLE
            if len(to_save) >= 2:
                title = await generate_title(
                    to_save[0].text(), to_save[1].text(), llm=self.title_llm
                )
                logger.info(f"Generated title for {turn.conversation_id}: {title}")

        try:
            await run_in_threadpool(
                conversations.save_conversation,
                turn.conversation_id,
                ctx.account["id"],
                [m.to_record() for m in to_save],
                title,
            )
        except Exception as e:
            logger.error(
                f"Error saving conversation {turn.conversation_id}: {e}", exc_info=True
            )
