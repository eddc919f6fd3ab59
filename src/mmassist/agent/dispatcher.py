"""Execution of one LLM turn's tool calls.

Calls that share a resource identifier with an earlier call of the batch, or
that follow a discovery call, run one after another in request order;
everything else runs concurrently. The overlap test is a heuristic on
argument names and can miss two calls that reach the same resource through
different parameters.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..models import ErrorKind, ToolCallRequest, ToolError, ToolResult, ToolStatus
from ..services.cache import ReferenceDataCache
from ..services.tool_output import classify_error, extract_error_message, parse_tool_output
from .state import ConversationState
from .tools import IDENTIFIER_KEYS, extract_discovered_ids, sanitize_tool_args, tool_signature

logger = logging.getLogger(__name__)

DISCOVERY_MARKERS = ("search", "list_", "get_users")
DUPLICATE_PLACEHOLDER = "Action completed successfully."


def is_discovery_tool(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in DISCOVERY_MARKERS)


def _has_resource_overlap(later: ToolCallRequest, earlier: ToolCallRequest) -> bool:
    if later.signature == earlier.signature:
        return True
    for key in IDENTIFIER_KEYS:
        value = later.arguments.get(key)
        if value and value == earlier.arguments.get(key):
            return True
    return is_discovery_tool(earlier.name) and not is_discovery_tool(later.name)


class ToolDispatcher:
    """Turns tool-call directives into ToolResults. Never raises per call."""

    def __init__(
        self,
        tools: Mapping[str, Any],
        cache: Optional[ReferenceDataCache] = None,
        timeout_seconds: float = 30.0,
        user_id: Optional[str] = None,
        identity_argument: str = "userEmail",
    ) -> None:
        self._tools = tools
        self._cache = cache
        self._timeout = timeout_seconds
        self._user_id = user_id
        self._identity_argument = identity_argument

    def prepare(self, raw_tool_calls: Sequence[Dict[str, Any]]) -> List[ToolCallRequest]:
        """Parse and sanitize raw directives into ToolCallRequests.

        Malformed argument strings do not raise; the request carries a
        parse_error and a signature unique to the call.

        Args:
            raw_tool_calls: Tool calls as returned by the chat API.

        Returns:
            List[ToolCallRequest]: One request per directive, in order.
        """
        requests: List[ToolCallRequest] = []
        for index, call in enumerate(raw_tool_calls):
            function = call.get("function") or {}
            name = function.get("name") or call.get("name") or ""
            raw_args = function.get("arguments", call.get("arguments"))
            call_id = call.get("id") or f"call_{index}_{int(time.time() * 1000)}"

            parse_error = None
            if isinstance(raw_args, dict):
                parsed: Any = raw_args
            elif not raw_args:
                parsed = {}
            else:
                try:
                    parsed = json.loads(raw_args)
                except (json.JSONDecodeError, TypeError) as e:
                    parsed, parse_error = None, str(e)
                if parse_error is None and not isinstance(parsed, dict):
                    parse_error = "arguments must be a JSON object"

            if parse_error is not None:
                logger.warning("Malformed arguments for %s: %s", name, parse_error)
                requests.append(
                    ToolCallRequest(
                        id=call_id,
                        name=name,
                        arguments={},
                        signature=tool_signature(name, {"__raw__": str(raw_args), "__id__": call_id}),
                        parse_error=parse_error,
                    )
                )
                continue

            args = sanitize_tool_args(name, parsed, self._user_id, self._identity_argument)
            requests.append(
                ToolCallRequest(id=call_id, name=name, arguments=args, signature=tool_signature(name, args))
            )
        return requests

    def analyze_dependencies(self, requests: Sequence[ToolCallRequest]) -> Tuple[List[int], List[int]]:
        """Split request indices into (independent, dependent).

        A request is dependent when an earlier request in the batch shares its
        signature or a resource identifier, or when it is an action that
        follows a discovery call.

        Args:
            requests: Prepared requests for one turn.

        Returns:
            Tuple[List[int], List[int]]: Independent and dependent indices.
        """
        independent: List[int] = []
        dependent: List[int] = []
        for i, request in enumerate(requests):
            if any(_has_resource_overlap(request, requests[j]) for j in range(i)):
                dependent.append(i)
            else:
                independent.append(i)
        return independent, dependent

    async def dispatch(
        self, requests: Sequence[ToolCallRequest], state: ConversationState
    ) -> List[ToolResult]:
        """Execute a batch; the result list is index-aligned to ``requests``.

        Independent calls run concurrently, dependent ones afterwards in order.

        Args:
            requests: Prepared requests for one turn.
            state: Conversation state that records each execution.

        Returns:
            List[ToolResult]: One result per request, never an exception.
        """
        if not requests:
            return []
        independent, dependent = self.analyze_dependencies(requests)
        logger.info(
            "Dispatching %d tool call(s): %d independent, %d dependent",
            len(requests),
            len(independent),
            len(dependent),
        )

        results: List[Optional[ToolResult]] = [None] * len(requests)

        if independent:
            outcomes = await asyncio.gather(
                *(self.dispatch_one(requests[i], state) for i in independent),
                return_exceptions=True,
            )
            for i, outcome in zip(independent, outcomes):
                if isinstance(outcome, ToolResult):
                    results[i] = outcome
                else:
                    results[i] = self._failure(requests[i], outcome, 0.0)

        for i in dependent:
            try:
                results[i] = await self.dispatch_one(requests[i], state)
            except Exception as e:
                results[i] = self._failure(requests[i], e, 0.0)

        return [r for r in results if r is not None]

    async def dispatch_one(self, request: ToolCallRequest, state: ConversationState) -> ToolResult:
        """Execute a single call under the per-call timeout.

        Lookups the reference cache can answer and repeats of an earlier
        successful call never reach the tool.

        Args:
            request: Prepared request.
            state: Conversation state that records the execution.

        Returns:
            ToolResult: Success or a classified error.
        """
        started = time.monotonic()

        if request.parse_error is not None:
            return ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                status=ToolStatus.ERROR,
                error=ToolError(
                    kind=ErrorKind.INVALID_PARAMS,
                    message=f"Invalid arguments for {request.name}: {request.parse_error}",
                ),
            )

        if state.is_duplicate_call(request.signature):
            logger.warning("Skipping duplicate call: %s", request.name)
            previous = state.get_previous_result(request.signature)
            return ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                status=ToolStatus.SUCCESS,
                content=previous if previous is not None else DUPLICATE_PLACEHOLDER,
            )

        cached = self._resolve_from_cache(request)
        if cached is not None:
            logger.info("Resolved %s from cache", request.name)
            self._record_success(request, cached.content or "", state)
            return cached

        tool = self._tools.get(request.name)
        if tool is None:
            logger.error("Tool %s is not available", request.name)
            return ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                status=ToolStatus.ERROR,
                error=ToolError(kind=ErrorKind.OTHER, message=f"Tool {request.name} is not available"),
                execution_time=time.monotonic() - started,
            )

        logger.info("Calling tool %s", request.name)
        logger.debug("Arguments for %s: %s", request.name, request.arguments)
        try:
            raw = await asyncio.wait_for(tool.invoke(request.arguments), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", request.name, self._timeout)
            state.record_tool_execution(request.signature, "timeout", False)
            return ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                status=ToolStatus.TIMEOUT,
                error=ToolError(
                    kind=ErrorKind.TIMEOUT,
                    message=f"Tool execution timed out after {self._timeout:g} seconds",
                    recoverable=True,
                ),
                execution_time=time.monotonic() - started,
            )
        except Exception as e:
            logger.error("Tool %s raised: %s", request.name, e)
            result = self._failure(request, e, time.monotonic() - started)
            state.record_tool_execution(request.signature, result.error.message, False)
            return result

        parsed = parse_tool_output(raw)
        elapsed = time.monotonic() - started
        if parsed.is_error:
            kind = parsed.error_kind or ErrorKind.OTHER
            logger.warning("Tool %s reported %s error", request.name, kind.value)
            state.record_tool_execution(request.signature, parsed.content, False)
            return ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                status=ToolStatus.ERROR,
                error=ToolError(kind=kind, message=parsed.content, recoverable=kind == ErrorKind.NOT_FOUND),
                execution_time=elapsed,
            )

        self._record_success(request, parsed.content, state)
        return ToolResult(
            tool_call_id=request.id,
            tool_name=request.name,
            status=ToolStatus.SUCCESS,
            content=parsed.content,
            execution_time=elapsed,
        )

    def _record_success(self, request: ToolCallRequest, content: str, state: ConversationState) -> None:
        state.record_tool_execution(request.signature, content, True)
        found = extract_discovered_ids(request.name, content, state.discovered_ids)
        if found:
            logger.info("Discovered %d identifier(s) from %s", found, request.name)

    def _failure(self, request: ToolCallRequest, error: BaseException, elapsed: float) -> ToolResult:
        message = extract_error_message(error)
        kind = classify_error(message)
        return ToolResult(
            tool_call_id=request.id,
            tool_name=request.name,
            status=ToolStatus.ERROR,
            error=ToolError(kind=kind, message=message, recoverable=kind == ErrorKind.NOT_FOUND),
            execution_time=elapsed,
        )

    def _resolve_from_cache(self, request: ToolCallRequest) -> Optional[ToolResult]:
        cache = self._cache
        if cache is None or cache.is_empty() or not cache.is_valid():
            return None
        name = request.name.lower()
        args = request.arguments

        if "search_channel" in name or "get_channel" in name:
            term = args.get("search_term") or args.get("channel") or args.get("name")
            channel = cache.get_channel(term) if isinstance(term, str) else None
            if channel is not None:
                return self._cache_hit(request, {"channels": [channel.to_dict()]})

        if "get_user" in name or "search_user" in name:
            query = args.get("username") or args.get("email") or args.get("search_term")
            user = cache.get_user(query) if isinstance(query, str) else None
            if user is not None:
                return self._cache_hit(request, {"users": [user.to_dict()]})

        return None

    @staticmethod
    def _cache_hit(request: ToolCallRequest, payload: Dict[str, Any]) -> ToolResult:
        return ToolResult(
            tool_call_id=request.id,
            tool_name=request.name,
            status=ToolStatus.SUCCESS,
            content=json.dumps({**payload, "found": True, "source": "cache"}),
        )
