"""
Client-side chat session.

Keeps the live message list of one conversation, applies the server-sent
events of the chat endpoint to it and relays confirmation decisions back to
the server. Rendering is left to the UI (see streamlit/streamlit_app.py).
"""
from typing import Any, Dict, Iterator, List, Optional
import json
import logging
import uuid

import requests

logger = logging.getLogger(__name__)

CONFIRMATION_TOOL = "ask_for_confirmation"
STREAM_TIMEOUT = 60


class ApiClient:
    """Thin requests wrapper around the chatbot HTTP API."""

    def __init__(self, api_base_url: str, token: str):
        self.api_base_url = api_base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"}

    def _url(self, path: str) -> str:
        return f"{self.api_base_url}{path}"

    def stream_chat(self, payload: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        with requests.post(
            self._url("/chat"),
            json=payload,
            headers=self.headers,
            stream=True,
            timeout=STREAM_TIMEOUT,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if line and line.startswith("data: "):
                    yield json.loads(line[len("data: "):])

    def list_conversations(self) -> List[Dict[str, Any]]:
        response = requests.get(self._url("/conversations"), headers=self.headers)
        response.raise_for_status()
        return response.json()

    def load_conversation(self, conversation_id: str) -> Dict[str, Any]:
        response = requests.get(
            self._url(f"/conversations/{conversation_id}"), headers=self.headers
        )
        response.raise_for_status()
        return response.json()

    def search(self, query: str) -> List[Dict[str, Any]]:
        response = requests.get(
            self._url("/search"), params={"q": query}, headers=self.headers
        )
        response.raise_for_status()
        return response.json()

    def test_connection(self, connection_string: str) -> Dict[str, Any]:
        response = requests.post(
            self._url("/connection/test"),
            json={"connection_string": connection_string},
            headers=self.headers,
        )
        response.raise_for_status()
        return response.json()

    def save_connection(self, connection_string: str) -> Dict[str, Any]:
        response = requests.put(
            self._url("/connection"),
            json={"connection_string": connection_string},
            headers=self.headers,
        )
        response.raise_for_status()
        return response.json()

    def get_connection(self) -> Optional[str]:
        response = requests.get(self._url("/connection"), headers=self.headers)
        response.raise_for_status()
        return response.json().get("connection_url")


class ChatSession:
    def __init__(
        self,
        client,
        conversation_id: Optional[str] = None,
        initial_messages: Optional[List[Dict[str, Any]]] = None,
    ):
        self.client = client
        self.conversation_id = conversation_id or uuid.uuid4().hex
        self.messages: List[Dict[str, Any]] = list(initial_messages or [])
        self.status = "ready"  # ready | streaming | awaiting-confirmation
        self.error: Optional[str] = None
        self._initial_query_sent = False

    # --- sending ---

    def send_message(self, text: str) -> None:
        if not text or not text.strip():
            logger.warning("Empty message ignored")
            return
        self.messages.append(
            {
                "id": uuid.uuid4().hex,
                "role": "user",
                "parts": [{"type": "text", "text": text}],
            }
        )
        self._submit()

    def send_initial_query(self, query: Optional[str]) -> bool:
        """
        Send the query a page was opened with.

        Only once per session, and only for conversations with no stored
        messages, however many times the page re-renders.
        """
        if self._initial_query_sent or not query or self.messages:
            return False
        self._initial_query_sent = True
        self.send_message(query)
        return True

    def _submit(self) -> None:
        self.status = "streaming"
        self.error = None
        payload = {"id": self.conversation_id, "messages": self.messages}
        try:
            for event in self.client.stream_chat(payload):
                self.apply_event(event)
        except Exception as e:
            logger.error(f"Chat request failed: {e}")
            self.error = str(e)
        if self.status == "streaming":
            self.status = "ready"

    # --- confirmations ---

    def pending_confirmations(self) -> List[Dict[str, Any]]:
        last = self._last_assistant()
        if last is None:
            return []
        return [
            part
            for part in last["parts"]
            if part.get("type") == "tool"
            and part.get("tool_name") == CONFIRMATION_TOOL
            and part.get("output") is None
        ]

    def respond_to_confirmation(self, tool_call_id: str, approved: bool) -> None:
        """Record the user's decision; resubmit once every pending call is decided."""
        for part in self.pending_confirmations():
            if part.get("tool_call_id") == tool_call_id:
                part["output"] = {"approved": approved}
                break
        else:
            raise KeyError(f"No pending confirmation {tool_call_id}")

        if not self.pending_confirmations():
            self._submit()

    # --- stream events ---

    def _last_assistant(self) -> Optional[Dict[str, Any]]:
        if self.messages and self.messages[-1]["role"] == "assistant":
            return self.messages[-1]
        return None

    def _find_tool_part(self, tool_call_id: str) -> Optional[Dict[str, Any]]:
        last = self._last_assistant()
        for part in last["parts"] if last else []:
            if part.get("type") == "tool" and part.get("tool_call_id") == tool_call_id:
                return part
        return None

    def apply_event(self, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "start":
            last = self._last_assistant()
            if last is None or last["id"] != event.get("message_id"):
                self.messages.append(
                    {"id": event.get("message_id"), "role": "assistant", "parts": []}
                )
        elif kind in ("text-delta", "reasoning-delta"):
            part_type = "text" if kind == "text-delta" else "reasoning"
            parts = self._last_assistant()["parts"]
            if parts and parts[-1]["type"] == part_type:
                parts[-1]["text"] += event["delta"]
            else:
                parts.append({"type": part_type, "text": event["delta"]})
        elif kind == "tool-call":
            self._last_assistant()["parts"].append(
                {
                    "type": "tool",
                    "tool_call_id": event["tool_call_id"],
                    "tool_name": event["tool_name"],
                    "input": event.get("input") or {},
                    "state": "awaiting-confirmation"
                    if event.get("requires_confirmation")
                    else "input-available",
                }
            )
        elif kind == "tool-result":
            part = self._find_tool_part(event["tool_call_id"])
            if part is not None:
                output = event.get("output")
                part["output"] = output
                result = output.get("result", output) if isinstance(output, dict) else {}
                ok = not isinstance(result, dict) or result.get("success", True)
                part["state"] = "output-available" if ok else "output-error"
        elif kind == "error":
            self.error = event.get("content")
        elif kind == "finish":
            if event.get("reason") == "awaiting-confirmation":
                self.status = "awaiting-confirmation"
            else:
                self.status = "ready"
