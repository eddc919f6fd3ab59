"""Recovery strategies for failed tool calls, dispatched by error kind."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..models import ErrorKind, Message, RecoveryAction, RecoveryKind, ToolResult
from ..services.tool_output import classify_error

logger = logging.getLogger(__name__)

__all__ = [
    "ErrorRecoveryService",
    "RecoveryContext",
    "classify_error",
    "looks_like_opaque_id",
]

# Opaque object ids on the messaging backend: 26 lowercase alphanumerics.
OPAQUE_ID_RE = re.compile(r"^[a-z0-9]{26}$", re.IGNORECASE)

# Operations that read or write inside a channel and therefore require the
# bot to be a member of it.
MEMBERSHIP_OPERATIONS = ("summarize", "messages", "post", "reply", "stats")


def looks_like_opaque_id(value: Any) -> bool:
    return isinstance(value, str) and bool(OPAQUE_ID_RE.match(value))


def _instruction(content: str) -> Message:
    return {"role": "user", "content": content}


def _resolve_helper(available_tools: Sequence[str], suffix: str) -> str:
    for name in available_tools:
        if name.lower().endswith(suffix):
            return name
    for name in available_tools:
        if suffix in name.lower():
            return name
    return suffix


@dataclass
class RecoveryContext:
    """What a strategy may consult when deciding how to recover."""

    original_arguments: Dict[str, Any] = field(default_factory=dict)
    discovered_ids: Dict[str, str] = field(default_factory=dict)
    attempt: int = 0
    user_id: str = ""
    available_tools: List[str] = field(default_factory=list)


class RecoveryStrategy:
    kinds: tuple = ()

    def can_handle(self, result: ToolResult) -> bool:
        return result.error_kind in self.kinds

    def recover(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        raise NotImplementedError


class AuthErrorStrategy(RecoveryStrategy):
    kinds = (ErrorKind.AUTH,)

    def recover(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        logger.warning("Auth error for tool %s; will not retry", result.tool_name)
        who = f' ("{context.user_id}")' if context.user_id else ""
        return RecoveryAction(
            kind=RecoveryKind.INFORM_USER,
            message=_instruction(
                "CRITICAL: the workspace rejected this request for authorization reasons.\n\n"
                "Stop calling tools. Do not retry. Tell the user that their account"
                f"{who} is either not registered in the workspace or lacks permission "
                "for this action, and that an administrator has to add them to the "
                "workspace or to the relevant channels before you can help with it."
            ),
        )


class NotFoundStrategy(RecoveryStrategy):
    kinds = (ErrorKind.NOT_FOUND,)

    def recover(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        args = context.original_arguments
        channel = args.get("channel") or ""
        tool_name = result.tool_name

        channel_ref = args.get("channel_id") or channel
        if looks_like_opaque_id(channel_ref) and any(
            op in tool_name.lower() for op in MEMBERSHIP_OPERATIONS
        ):
            logger.warning("Valid channel id %s failed on %s; bot is not a member", channel_ref, tool_name)
            return RecoveryAction(
                kind=RecoveryKind.INFORM_USER,
                message=_instruction(
                    f'The channel id "{channel_ref}" is valid but the request returned not found. '
                    "This means the bot is not a member of that channel.\n\n"
                    "Stop searching and stop retrying. Tell the user the channel exists "
                    "but the assistant has to be added to it before it can read or post there."
                ),
            )

        if isinstance(channel, str) and channel:
            for key in (channel.lower().replace(" ", "-"), channel.lower()):
                channel_id = context.discovered_ids.get(key)
                if channel_id:
                    logger.info("Retrying %s with discovered channel id %s", tool_name, channel_id)
                    return RecoveryAction(
                        kind=RecoveryKind.RETRY,
                        modified_arguments={**args, "channel": channel_id},
                        message=_instruction(
                            f'The channel "{channel}" has the id {channel_id}. '
                            f'Use channel "{channel_id}" when calling {tool_name}; do not search again.'
                        ),
                    )

        if channel and not args.get("channel_id"):
            helper = _resolve_helper(context.available_tools, "search_channels")
            return RecoveryAction(
                kind=RecoveryKind.CALL_HELPER_TOOL,
                helper_tool=helper,
                message=_instruction(
                    f'The channel "{channel}" was not found.\n\n'
                    f'Step 1: call {helper} with search_term "{channel}".\n'
                    f"Step 2: retry {tool_name} with the id from the results."
                ),
            )

        username = args.get("username")
        if username and not args.get("user_id"):
            helper = _resolve_helper(context.available_tools, "get_users")
            return RecoveryAction(
                kind=RecoveryKind.CALL_HELPER_TOOL,
                helper_tool=helper,
                message=_instruction(
                    f'The user "{username}" was not found.\n\n'
                    f"Step 1: call {helper} to list the members.\n"
                    f'Step 2: pick the username closest to "{username}".\n'
                    f"Step 3: retry {tool_name} with that username."
                ),
            )

        if args.get("post_id") or args.get("thread_id"):
            helper = _resolve_helper(context.available_tools, "search_messages")
            return RecoveryAction(
                kind=RecoveryKind.CALL_HELPER_TOOL,
                helper_tool=helper,
                message=_instruction(
                    f"The post or thread was not found. Call {helper} to find the "
                    f"conversation, take its post_id and retry {tool_name}."
                ),
            )

        return RecoveryAction(
            kind=RecoveryKind.INFORM_USER,
            message=_instruction(
                "The requested resource was not found. Give the best answer you can "
                "from the information already gathered."
            ),
        )


class InvalidParamsStrategy(RecoveryStrategy):
    kinds = (ErrorKind.INVALID_PARAMS,)

    def recover(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        logger.warning("Invalid params for tool %s", result.tool_name)
        detail = result.error.message if result.error else "unknown validation error"
        return RecoveryAction(
            kind=RecoveryKind.INFORM_USER,
            message=_instruction(
                f"{result.tool_name} rejected its parameters.\n\n"
                f"Error: {detail}\n\n"
                "Correct the parameters if the error makes the fix obvious, "
                "otherwise explain the problem to the user."
            ),
        )


class TimeoutStrategy(RecoveryStrategy):
    kinds = (ErrorKind.TIMEOUT,)

    def recover(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        if context.attempt < 1:
            logger.warning("Timeout for tool %s; retrying once", result.tool_name)
            return RecoveryAction(kind=RecoveryKind.RETRY)
        logger.warning("Timeout for tool %s after retry", result.tool_name)
        return RecoveryAction(
            kind=RecoveryKind.INFORM_USER,
            message=_instruction(
                f"{result.tool_name} timed out twice. Tell the user the operation is "
                "taking too long and that they should try again later."
            ),
        )


class ErrorRecoveryService:
    """Picks a recovery strategy by error kind."""

    def __init__(self, strategies: Optional[List[RecoveryStrategy]] = None) -> None:
        self._strategies = strategies or [
            AuthErrorStrategy(),
            NotFoundStrategy(),
            InvalidParamsStrategy(),
            TimeoutStrategy(),
        ]

    def get_recovery_action(self, result: ToolResult, context: RecoveryContext) -> RecoveryAction:
        if result.ok:
            return RecoveryAction(kind=RecoveryKind.NONE)
        for strategy in self._strategies:
            if strategy.can_handle(result):
                return strategy.recover(result, context)
        detail = result.error.message if result.error else "unknown error"
        return RecoveryAction(
            kind=RecoveryKind.INFORM_USER,
            message=_instruction(
                f"The tool reported an error: {detail}\n\n"
                "Give the best answer you can from the information already gathered."
            ),
        )

    def is_critical_error(self, result: ToolResult) -> bool:
        return result.error_kind == ErrorKind.AUTH

    def repeated_failure_action(self, tool_name: str, failure_count: int) -> RecoveryAction:
        return RecoveryAction(
            kind=RecoveryKind.FORCE_RESPONSE,
            message=_instruction(
                f"{tool_name} has failed {failure_count} times in a row. Do not use it again.\n\n"
                "Using only what earlier results already showed, tell the user what you "
                "tried, what you found and what the problem seems to be. Do not read out "
                "tool arguments."
            ),
        )

    def duplicate_call_message(self) -> Message:
        return _instruction(
            "You are repeating an action that already completed successfully. "
            "Stop calling tools and answer the user now: confirm what was done, "
            "briefly, in friendly plain language with line breaks."
        )
