from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, List, Literal
from datetime import datetime

PartState = Literal[
    "input-available",
    "awaiting-confirmation",
    "output-available",
    "output-error",
]


class MessagePart(BaseModel):
    """One rendered piece of a chat message: text, reasoning or a tool call"""
    type: Literal["text", "reasoning", "tool"] = Field(..., description="Kind of part")
    text: Optional[str] = Field(None, description="Text for text and reasoning parts")
    tool_call_id: Optional[str] = Field(None, description="ID of the tool call")
    tool_name: Optional[str] = Field(None, description="Name of the tool called")
    input: Optional[Dict[str, Any]] = Field(None, description="Arguments the model passed to the tool")
    output: Optional[Any] = Field(None, description="Tool result, or the user's decision for confirmations")
    state: Optional[PartState] = Field(None, description="Lifecycle state of a tool part")


class UIMessage(BaseModel):
    """Chat message exchanged between the client and the chat endpoint"""
    id: str = Field(..., min_length=1, description="Stable message ID")
    role: Literal["user", "assistant"] = Field(..., description="Message author")
    parts: List[MessagePart] = Field(default_factory=list, description="Ordered message parts")

    def text(self) -> str:
        """Text parts joined with spaces; reasoning and tool parts are left out."""
        return " ".join(
            part.text or "" for part in self.parts if part.type == "text"
        ).strip()

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.text()}

    class Config:
        json_schema_extra = {
            "example": {
                "id": "msg_4f1c2a",
                "role": "user",
                "parts": [{"type": "text", "text": "Create a books table with an author relation"}],
            }
        }


class ChatRequest(BaseModel):
    """Request model for the streaming chat endpoint"""
    id: str = Field(..., min_length=1, description="Conversation ID generated by the client")
    messages: List[UIMessage] = Field(..., min_length=1, description="Full message history")


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StoredMessage(BaseModel):
    """A persisted message row"""
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: Optional[datetime] = None


class ConversationResponse(BaseModel):
    """A conversation loaded for display"""
    conversation_id: str = Field(..., description="Unique identifier for the conversation")
    title: str = Field(..., description="Conversation title")
    messages: List[UIMessage] = Field(..., description="Messages in display order")


class SaveConversationRequest(BaseModel):
    title: Optional[str] = Field(None, description="New title; the existing one is kept when omitted")
    messages: List[UIMessage] = Field(default_factory=list)


class SearchMatch(BaseModel):
    message_id: str
    message_content: str
    message_role: str
    message_created_at: Optional[datetime] = None
    relevance_rank: float


class SearchResult(BaseModel):
    conversation_id: str
    conversation_title: str
    matches: List[SearchMatch]


class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Additional error details")
