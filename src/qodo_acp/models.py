"""
ACP Message Models

Pydantic models for the JSON-RPC envelopes and the per-operation parameters of
every supported method dialect. Parameter models accept unknown keys so that
competing client implementations can coexist; content items fall back to
``UnknownContent`` instead of failing validation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

JSONRPC_VERSION = "2.0"

RequestId = Union[str, int]


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


# ===== JSON-RPC ENVELOPE =====

class JsonRpcRequest(_Loose):
    """An inbound request or notification."""

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[RequestId] = None
    method: str
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None


def make_response(request_id: Optional[RequestId], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error_response(request_id: Optional[RequestId], error: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def make_notification(method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params}


# ===== CONTENT ITEMS =====

class TextContent(_Loose):
    type: Literal["text"] = "text"
    text: str = ""


class ImageContent(_Loose):
    type: Literal["image"] = "image"
    data: str = ""
    mimeType: Optional[str] = None


class ResourceContent(_Loose):
    type: Literal["resource"] = "resource"
    resource: Dict[str, Any] = Field(default_factory=dict)


class UnknownContent(_Loose):
    """Any content item whose shape is not recognised."""

    type: Optional[str] = None


ContentItem = Union[str, TextContent, ImageContent, ResourceContent, UnknownContent]

_CONTENT_TYPES = {
    "text": TextContent,
    "image": ImageContent,
    "resource": ResourceContent,
}


def coerce_content_item(raw: Any) -> ContentItem:
    """Map one raw content item onto its model, falling back to UnknownContent."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, dict):
        model = _CONTENT_TYPES.get(raw.get("type"))
        if model is not None:
            try:
                return model.model_validate(raw)
            except ValueError:
                pass
        kind = raw.get("type")
        return UnknownContent.model_validate(
            {**raw, "type": kind if isinstance(kind, str) else None}
        )
    return UnknownContent()


def _coerce_content_list(value: Any) -> List[ContentItem]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        return []
    return [coerce_content_item(item) for item in value]


def extract_text(items: Sequence[ContentItem]) -> str:
    """Join the text of content items with newlines.

    Non-text items keep their position and contribute an empty string, so
    ``["Hello", <image>, "World"]`` becomes ``"Hello\\n\\nWorld"``.
    """
    parts: List[str] = []
    for item in items:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, TextContent):
            parts.append(item.text)
        else:
            parts.append("")
    return "\n".join(parts)


# ===== OPERATION PARAMETERS =====

class InitializeParams(_Loose):
    protocolVersion: Optional[Union[int, str]] = None
    capabilities: Optional[Dict[str, Any]] = None
    clientCapabilities: Optional[Dict[str, Any]] = None
    clientInfo: Optional[Dict[str, Any]] = None


class CreateSessionParams(_Loose):
    metadata: Optional[Dict[str, Any]] = None
    cwd: Optional[str] = None
    mcpServers: Optional[List[Any]] = None


class PromptParams(_Loose):
    """Params of the prompt-style dialect (``session/prompt``, ``prompt``)."""

    sessionId: Optional[str] = None
    threadId: Optional[str] = None
    prompt: List[ContentItem] = Field(default_factory=list)

    @field_validator("prompt", mode="before")
    @classmethod
    def _coerce_prompt(cls, value: Any) -> List[ContentItem]:
        return _coerce_content_list(value)

    @property
    def session_id(self) -> Optional[str]:
        return self.sessionId or self.threadId

    @property
    def text(self) -> str:
        return extract_text(self.prompt)


class ChatMessage(_Loose):
    role: Optional[str] = "user"
    content: List[ContentItem] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> List[ContentItem]:
        return _coerce_content_list(value)


class SendMessageParams(_Loose):
    """Params of the message-style dialect (``sendMessage``, ``agent/sendMessage``)."""

    threadId: Optional[str] = None
    sessionId: Optional[str] = None
    message: ChatMessage = Field(default_factory=ChatMessage)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("message", mode="before")
    @classmethod
    def _coerce_message(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, ChatMessage)) else {}

    @property
    def session_id(self) -> Optional[str]:
        return self.threadId or self.sessionId

    @property
    def text(self) -> str:
        return extract_text(self.message.content)


class CancelParams(_Loose):
    sessionId: Optional[str] = None
    threadId: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.sessionId or self.threadId


class ListSessionsParams(_Loose):
    pass


# ===== PARSED FRAGMENTS =====

class ToolCallStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class TextFragment(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallFragment(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    status: ToolCallStatus = ToolCallStatus.PENDING


Fragment = Union[TextFragment, ToolCallFragment]


def create_message_id() -> str:
    return f"msg_{uuid4().hex}"
