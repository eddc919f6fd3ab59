import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

Message = Dict[str, Any]


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the dispatcher and error recovery."""

    AUTH = "auth"
    NOT_FOUND = "not_found"
    INVALID_PARAMS = "invalid_params"
    TIMEOUT = "timeout"
    OTHER = "other"


class ToolStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool call issued by the LLM, with sanitized arguments.

    ``signature`` is the deduplication / caching key derived from the tool
    name and its normalized arguments. ``parse_error`` is set when the LLM
    sent argument text that is not valid JSON.
    """

    id: str
    name: str
    arguments: Dict[str, Any]
    signature: str
    parse_error: Optional[str] = None


@dataclass
class ToolError:
    kind: ErrorKind
    message: str
    recoverable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "recoverable": self.recoverable,
        }


@dataclass
class ToolResult:
    """Outcome of a single tool call. Never raised, always returned."""

    tool_call_id: str
    tool_name: str
    status: ToolStatus
    content: Optional[str] = None
    error: Optional[ToolError] = None
    execution_time: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        if self.status == ToolStatus.TIMEOUT:
            return ErrorKind.TIMEOUT
        return self.error.kind if self.error else None

    def to_message(self) -> Message:
        """Render the result as a ``tool`` transcript message."""
        if self.ok:
            content = self.content or ""
        else:
            content = json.dumps(self.error.to_dict() if self.error else {"type": "other"})
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.tool_name,
            "content": content,
        }


class RecoveryKind(str, Enum):
    RETRY = "retry"
    CALL_HELPER_TOOL = "call_helper_tool"
    FORCE_RESPONSE = "force_response"
    INFORM_USER = "inform_user"
    NONE = "none"


@dataclass
class RecoveryAction:
    """What to do after a failed tool call.

    ``message`` is a corrective instruction appended to the transcript;
    ``modified_arguments`` is set for retries with substituted identifiers.
    """

    kind: RecoveryKind
    message: Optional[Message] = None
    helper_tool: Optional[str] = None
    modified_arguments: Optional[Dict[str, Any]] = None

    @property
    def is_recoverable(self) -> bool:
        return self.kind in (RecoveryKind.RETRY, RecoveryKind.CALL_HELPER_TOOL)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: Optional[Dict[str, Any]]) -> None:
        if not usage:
            return
        self.prompt_tokens += int(usage.get("prompt_tokens") or 0)
        self.completion_tokens += int(usage.get("completion_tokens") or 0)
        self.total_tokens += int(usage.get("total_tokens") or 0)


@dataclass
class LLMResponse:
    """A single LLM turn: free text and/or tool-call directives."""

    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    correlation_id: str = ""


class ChatRequest(BaseModel):
    """Body of ``POST /chat``."""

    messages: Optional[List[Dict[str, Any]]] = None
    prompt: Optional[str] = None
    email: Optional[str] = None
    thread_id: str = "default"
    model: Optional[str] = None
    webhook_url: Optional[str] = None
    prompt_id: Optional[str] = None

    def user_messages(self) -> List[Dict[str, Any]]:
        if self.messages:
            return list(self.messages)
        if self.prompt:
            return [{"role": "user", "content": self.prompt}]
        return []


class CacheRefreshRequest(BaseModel):
    email: Optional[str] = None
