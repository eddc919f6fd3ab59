import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..models import Message, ToolResult

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I apologize, but I was unable to complete your request. "
    "Please try rephrasing or provide more details."
)


class AgentLoopState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_LLM_RESPONSE = "awaiting_llm"
    EXECUTING_TOOLS = "executing_tools"
    VALIDATING_RESPONSE = "validating_response"
    RECOVERING_FROM_ERROR = "recovering_from_error"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (AgentLoopState.COMPLETED, AgentLoopState.FAILED)


@dataclass
class ToolExecution:
    signature: str
    result: Any
    success: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _flatten_content(message: Message) -> Message:
    content = message.get("content")
    if not isinstance(content, list):
        return message
    first = content[0] if content else None
    if isinstance(first, dict) and first.get("role") and first.get("content"):
        return {**message, "content": first["content"]}
    parts = [
        {"type": "text", "text": part["text"]}
        if isinstance(part, dict) and part.get("text") and not part.get("type")
        else part
        for part in content
    ]
    return {**message, "content": parts}


class ConversationState:
    """Transcript and loop bookkeeping for one chat request.

    Created per request and discarded when the request completes; only the
    engine and the dispatcher mutate it.
    """

    def __init__(self, max_loops: int = 6, max_errors: int = 5, max_consecutive_failures: int = 2) -> None:
        self.state = AgentLoopState.INITIALIZING
        self.max_loops = max_loops
        self.max_errors = max_errors
        self.max_consecutive_failures = max_consecutive_failures
        self.loop_count = 0
        self.productive_loops = 0
        self.messages: List[Message] = []
        self.tool_execution_history: Dict[str, ToolExecution] = {}
        self.successful_tool_calls: Set[str] = set()
        self.discovered_ids: Dict[str, str] = {}
        self.consecutive_failures = 0
        self.last_failed_tool_name = ""
        self.total_errors = 0
        self.force_final_response = False

    def initialize(
        self,
        system_prompt: str,
        user_messages: Union[str, Iterable[Message]],
        guidance: Optional[Message] = None,
    ) -> None:
        """Seed the transcript with the system prompt, optional guidance and the caller's messages."""
        self.messages = [{"role": "system", "content": system_prompt}]
        if guidance is not None:
            self.messages.append(guidance)
        if isinstance(user_messages, str):
            self.messages.append({"role": "user", "content": user_messages})
        else:
            self.messages.extend(dict(m) for m in user_messages)

    def can_continue(self) -> bool:
        """Check whether the loop may run another turn.

        Returns:
            bool: False once the loop or error budget is spent or the state is terminal.
        """
        if self.loop_count >= self.max_loops:
            logger.warning("Reached max loop count: %s", self.max_loops)
            return False
        if self.total_errors >= self.max_errors:
            logger.warning("Reached max error count: %s", self.max_errors)
            return False
        return self.state not in TERMINAL_STATES

    def increment_loop(self) -> None:
        self.loop_count += 1

    def mark_progress(self) -> None:
        """Count the current turn as productive (at least one tool succeeded)."""
        self.productive_loops += 1

    def transition_to(self, new_state: AgentLoopState) -> None:
        """Move to a new loop state.

        Args:
            new_state: State to enter. Every transition is logged.
        """
        logger.info("State %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def record_tool_execution(self, signature: str, result: Any, success: bool) -> None:
        """Store the outcome of one invocation under its signature.

        A success also resets the consecutive-failure streak.

        Args:
            signature: Canonical tool-name-plus-arguments key.
            result: Tool content on success, error text otherwise.
            success: Whether the invocation succeeded.
        """
        self.tool_execution_history[signature] = ToolExecution(
            signature=signature, result=result, success=success
        )
        if success:
            self.successful_tool_calls.add(signature)
            self.consecutive_failures = 0
            self.last_failed_tool_name = ""

    def record_tool_failure(self, tool_name: str) -> None:
        """Count a failure and extend the streak when the same tool failed last.

        Args:
            tool_name: Name of the tool that failed.
        """
        self.total_errors += 1
        if self.last_failed_tool_name == tool_name:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 1
            self.last_failed_tool_name = tool_name

    def is_duplicate_call(self, signature: str) -> bool:
        """Check whether an identical call already succeeded in this conversation.

        Args:
            signature: Canonical tool-name-plus-arguments key.

        Returns:
            bool: True if the signature is among the successful calls.
        """
        return signature in self.successful_tool_calls

    def get_previous_result(self, signature: str) -> Optional[Any]:
        """Look up the stored result of an earlier invocation.

        Args:
            signature: Canonical tool-name-plus-arguments key.

        Returns:
            Optional[Any]: The recorded result, or None if never executed.
        """
        execution = self.tool_execution_history.get(signature)
        return execution.result if execution else None

    def should_force_final_response(self) -> bool:
        """Check whether the same tool has failed often enough to stop calling tools.

        Returns:
            bool: True once the streak reaches max_consecutive_failures.
        """
        return self.consecutive_failures >= self.max_consecutive_failures

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def add_tool_results(self, results: Iterable[ToolResult]) -> None:
        """Append tool messages in the given (request) order."""
        for result in results:
            self.add_message(result.to_message())

    def sanitized_messages(self) -> List[Message]:
        """Transcript with list-form content flattened for the chat API."""
        return [_flatten_content(m) for m in self.messages]

    def get_final_answer(self) -> str:
        """Pick the answer to return to the caller.

        Returns:
            str: The last non-empty assistant text, or FALLBACK_ANSWER if there is none.
        """
        for message in reversed(self.messages):
            content = message.get("content")
            if message.get("role") == "assistant" and isinstance(content, str) and content.strip():
                return content
        return FALLBACK_ANSWER

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "loops": self.loop_count,
            "productiveLoops": self.productive_loops,
            "toolExecutions": len(self.tool_execution_history),
            "successfulCalls": len(self.successful_tool_calls),
            "failedCalls": self.total_errors,
            "finalState": self.state.value,
        }
