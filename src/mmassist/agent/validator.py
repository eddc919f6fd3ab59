import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..models import Message

logger = logging.getLogger(__name__)

LEAKED_JSON_MARKERS = ('"name":', '"parameters":', '"function":')

DESCRIBING_PATTERNS = [
    re.compile(r"the request (should|would|will) include", re.IGNORECASE),
    re.compile(r"request details are", re.IGNORECASE),
    re.compile(r"to (get|fetch|retrieve).*(the request|I need|should include)", re.IGNORECASE),
    re.compile(r"(channel|user|message):\s*[a-z]", re.IGNORECASE),
    re.compile(r"I will (call|use|execute|invoke)", re.IGNORECASE),
    re.compile(r"let me (call|use|execute|invoke)", re.IGNORECASE),
]

JARGON_PATTERNS = [
    re.compile(r"tool_[a-zA-Z0-9_]+_mattermost", re.IGNORECASE),
    re.compile(r"\bfunction\s+(call|name)", re.IGNORECASE),
    re.compile(r"\bparameter(s)?\s+(is|are|was|were)", re.IGNORECASE),
    re.compile(r"channel_id.*[a-z0-9]{26}", re.IGNORECASE),
    re.compile(r"I was unable to.*using the.*(function|tool)", re.IGNORECASE),
    re.compile(r"I have already provided.*in my previous response", re.IGNORECASE),
    re.compile(r"tool call", re.IGNORECASE),
    re.compile(r"API (endpoint|request|response)", re.IGNORECASE),
]


@dataclass
class ValidationResult:
    is_valid: bool
    issue: Optional[str] = None
    correction: Optional[Message] = None


ACCEPTED = ValidationResult(is_valid=True)


class ResponseValidator:
    """Stateless checks on free-text LLM output before it is accepted."""

    def validate(self, content: str, loop_count: int, max_loops: int) -> ValidationResult:
        if not content or not content.strip():
            return ACCEPTED
        for check in (
            self._check_leaked_json(content),
            self._check_describing_action(content, loop_count, max_loops),
            self._check_technical_jargon(content, loop_count, max_loops),
        ):
            if not check.is_valid:
                return check
        return ACCEPTED

    def _check_leaked_json(self, content: str) -> ValidationResult:
        if not content.strip().startswith("{"):
            return ACCEPTED
        if not any(marker in content for marker in LEAKED_JSON_MARKERS):
            return ACCEPTED
        logger.warning("Rejected response: tool call leaked as text")
        return ValidationResult(
            is_valid=False,
            issue="leaked_json",
            correction={
                "role": "user",
                "content": (
                    "SYSTEM ERROR: You wrote the tool call as raw JSON text.\n\n"
                    "Do not put JSON in the response text. Use the tool_calls "
                    "protocol to execute tools, and retry the call now."
                ),
            },
        )

    def _check_describing_action(self, content: str, loop_count: int, max_loops: int) -> ValidationResult:
        # Near the ceiling a narrated answer beats another rejection.
        if loop_count >= max_loops - 3:
            return ACCEPTED
        if not any(p.search(content) for p in DESCRIBING_PATTERNS):
            return ACCEPTED
        logger.warning("Rejected response: describing an action instead of calling a tool")
        return ValidationResult(
            is_valid=False,
            issue="describing_action",
            correction={
                "role": "user",
                "content": (
                    "CRITICAL ERROR: You are DESCRIBING what you would do instead of DOING it.\n\n"
                    "Do not explain which parameters you need or what the request should include. "
                    "Call the appropriate tool with those parameters now."
                ),
            },
        )

    def _check_technical_jargon(self, content: str, loop_count: int, max_loops: int) -> ValidationResult:
        if loop_count >= max_loops - 1:
            return ACCEPTED
        if not any(p.search(content) for p in JARGON_PATTERNS):
            return ACCEPTED
        logger.warning("Rejected response: technical jargon")
        return ValidationResult(
            is_valid=False,
            issue="technical_jargon",
            correction={
                "role": "user",
                "content": (
                    "CRITICAL: Your response contains implementation details users must not see.\n\n"
                    "Rewrite it following these rules:\n"
                    "1. Never mention tool names, function names or technical processes\n"
                    "2. Present only the result, in natural and friendly language\n"
                    "3. Use line breaks and formatting for readability\n"
                    "4. If something failed, explain it simply without technical details\n\n"
                    "Rewrite your response now."
                ),
            },
        )

    def initial_guidance(self) -> Message:
        return {
            "role": "system",
            "content": (
                "CRITICAL INSTRUCTION: When you need information, call the appropriate tool "
                "immediately. Do not describe what you plan to do, which parameters you need "
                "or what the request should include.\n\n"
                'Wrong: "To get channel statistics, the request should include channel: '
                'town-square and message_limit: 100"\n'
                "Right: call the tool with those parameters."
            ),
        }

    def no_response_message(self) -> Message:
        return {
            "role": "user",
            "content": (
                "Please continue. Give the user your answer based on the information "
                "gathered so far, without technical details, using line breaks for readability."
            ),
        }

    def final_response_prompt(self) -> Message:
        return {
            "role": "user",
            "content": (
                "You must now give the user a final response.\n\n"
                "Requirements:\n"
                "1. Use only information from successful tool results\n"
                "2. Organize it logically with proper formatting\n"
                "3. Do not mention tools, functions or technical processes\n"
                "4. Do not apologize excessively\n"
                "5. Do not read out raw tool arguments\n\n"
                "Provide your final formatted response now."
            ),
        }
