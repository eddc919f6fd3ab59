import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..models import (
    ChatRequest,
    LLMResponse,
    Message,
    RecoveryKind,
    TokenUsage,
    ToolCallRequest,
    ToolResult,
)
from ..services.cache import ReferenceDataCache, get_reference_cache
from ..services.fetcher import DataFetcher
from ..services.llm import LLMGateway
from ..services.mcp_registry import (
    STATE_CONNECTED,
    ToolRegistry,
    get_tool_registry,
    initialize_connection,
    wait_for_tools,
)
from ..services.notifications import (
    RESULT_EVENT,
    NotificationChannel,
    channel_key,
    get_notification_channel,
    start_event,
)
from ..settings import get_settings
from .dispatcher import ToolDispatcher
from .recovery import ErrorRecoveryService, RecoveryContext
from .state import AgentLoopState, ConversationState
from .streaming import StreamRelay
from .tools import tool_signature
from .validator import ResponseValidator

logger = logging.getLogger(__name__)


@dataclass
class ChatOutcome:
    """What a finished conversation hands back to the HTTP layer."""

    answer: str
    metrics: Dict[str, Any]
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    correlation_id: str = ""

    def response_body(self) -> Dict[str, Any]:
        return {"status": "success", "answer": self.answer, "debug": self.metrics}

    def webhook_payload(self, prompt_id: Optional[str]) -> Dict[str, Any]:
        return {
            "logid": self.correlation_id,
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "total_tokens": self.usage.total_tokens,
            "model_used": self.model,
            "uuid": prompt_id or "",
            "response": self.answer,
            "type": RESULT_EVENT,
            "debug": self.metrics,
        }


class ChatAgentService:
    """Drives one conversation: LLM turns, tool dispatch, recovery and validation."""

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        llm: Optional[LLMGateway] = None,
        cache: Optional[ReferenceDataCache] = None,
        notifier: Optional[NotificationChannel] = None,
        fetcher: Optional[DataFetcher] = None,
    ) -> None:
        self._registry = registry or get_tool_registry()
        self._llm = llm
        self._cache = cache
        self._notifier = notifier
        self._fetcher = fetcher
        self._recovery = ErrorRecoveryService()
        self._validator = ResponseValidator()

    @property
    def llm(self) -> LLMGateway:
        if self._llm is None:
            self._llm = LLMGateway()
        return self._llm

    @property
    def cache(self) -> ReferenceDataCache:
        return self._cache or get_reference_cache()

    @property
    def fetcher(self) -> DataFetcher:
        if self._fetcher is None:
            self._fetcher = DataFetcher()
        return self._fetcher

    async def _get_notifier(self) -> NotificationChannel:
        if self._notifier is None:
            self._notifier = await get_notification_channel()
        return self._notifier

    async def ensure_tools(self) -> Dict[str, Any]:
        """Connect to the tool portal when it is not registered yet, then return its tools."""
        settings = get_settings()
        servers = await self._registry.list_servers()
        if not any(s["name"] == settings.mcp_portal_name for s in servers):
            await initialize_connection(self._registry, settings)
            return await wait_for_tools(
                self._registry,
                settings.tool_discovery_attempts,
                settings.tool_discovery_delay_seconds,
            )
        return self._registry.get_tools()

    def build_system_prompt(self) -> str:
        prompt = get_settings().agent_system_prompt
        cache = self.cache
        if cache.is_empty():
            return prompt
        return (
            f"{prompt}\n\n## AVAILABLE RESOURCES\n"
            f"{cache.format_compact_channels()}\n{cache.format_compact_users()}"
        )

    async def run_chat(self, request: ChatRequest) -> ChatOutcome:
        """Run the tool loop for one chat request.

        Raises:
            LLMProviderError: When the LLM provider call fails.
        """
        settings = get_settings()
        model = request.model or self.llm.model
        key = channel_key(request.thread_id)
        notifier = await self._get_notifier()
        await notifier.publish_batch([start_event(model)], key)

        tools = await self.ensure_tools()
        await self.fetcher.refresh_if_needed(tools, self.cache, request.email)

        state = ConversationState(
            max_loops=settings.max_loops,
            max_errors=settings.max_errors,
            max_consecutive_failures=settings.max_consecutive_tool_failures,
        )
        state.initialize(
            self.build_system_prompt(),
            request.user_messages(),
            guidance=self._validator.initial_guidance(),
        )
        state.transition_to(AgentLoopState.AWAITING_LLM_RESPONSE)

        dispatcher = ToolDispatcher(
            tools,
            cache=self.cache,
            timeout_seconds=settings.tool_timeout_seconds,
            user_id=request.email,
            identity_argument=settings.user_identity_argument,
        )
        schemas = [tool.to_openai_schema() for tool in tools.values()]
        relay = StreamRelay(notifier, key, model, settings.notification_batch_size)
        usage = TokenUsage()
        correlation_id = ""

        logger.info("Starting chat on thread %s with %d tools", request.thread_id, len(tools))

        try:
            while state.can_continue():
                state.increment_loop()
                force_answer = state.loop_count >= state.max_loops
                response = await self._call_llm(
                    state,
                    relay,
                    [] if force_answer else schemas,
                    "none" if force_answer else "auto",
                    model,
                    settings.stream_turns,
                )
                usage.add(response.usage)
                correlation_id = response.correlation_id or correlation_id

                if response.tool_calls:
                    state.transition_to(AgentLoopState.EXECUTING_TOOLS)
                    if not await self._execute_turn(state, dispatcher, response, tools, request.email or ""):
                        break
                    continue

                if response.text:
                    state.transition_to(AgentLoopState.VALIDATING_RESPONSE)
                    verdict = self._validator.validate(response.text, state.loop_count, state.max_loops)
                    state.add_message({"role": "assistant", "content": response.text})
                    if verdict.is_valid:
                        state.transition_to(AgentLoopState.COMPLETED)
                        break
                    state.add_message(verdict.correction)
                    state.transition_to(AgentLoopState.AWAITING_LLM_RESPONSE)
                    continue

                logger.warning("Empty LLM turn %d", state.loop_count)
                state.add_message(self._validator.no_response_message())

            if state.state != AgentLoopState.COMPLETED:
                logger.info("Synthesizing final response (state=%s)", state.state.value)
                state.add_message(self._validator.final_response_prompt())
                final = await self.llm.stream(state.sanitized_messages(), relay, model=model)
                usage.add(final.usage)
                correlation_id = final.correlation_id or correlation_id
                if final.text:
                    state.add_message({"role": "assistant", "content": final.text})
                if state.state != AgentLoopState.FAILED:
                    state.transition_to(AgentLoopState.COMPLETED)
        finally:
            await relay.wait_pending()

        metrics = state.get_metrics()
        logger.info("Chat finished: %s", metrics)
        return ChatOutcome(
            answer=state.get_final_answer(),
            metrics=metrics,
            model=model,
            usage=usage,
            correlation_id=correlation_id,
        )

    async def _call_llm(
        self,
        state: ConversationState,
        relay: StreamRelay,
        tools: List[Dict[str, Any]],
        tool_choice: str,
        model: str,
        stream: bool,
    ) -> LLMResponse:
        messages = state.sanitized_messages()
        if stream:
            return await self.llm.stream(messages, relay, tools=tools, tool_choice=tool_choice, model=model)
        return await self.llm.complete(messages, tools=tools, tool_choice=tool_choice, model=model)

    async def _execute_turn(
        self,
        state: ConversationState,
        dispatcher: ToolDispatcher,
        response: LLMResponse,
        tools: Mapping[str, Any],
        user_id: str,
    ) -> bool:
        """Run one batch of tool calls. Returns False when the loop must stop."""
        state.add_message(
            {"role": "assistant", "content": response.text or "", "tool_calls": response.tool_calls}
        )
        requests = dispatcher.prepare(response.tool_calls)
        duplicates = sum(1 for r in requests if state.is_duplicate_call(r.signature))
        results = await dispatcher.dispatch(requests, state)

        follow_ups, critical, force = await self._recover(state, dispatcher, requests, results, tools, user_id)

        state.add_tool_results(results)
        for message in follow_ups:
            state.add_message(message)
        if duplicates and duplicates == len(requests):
            logger.warning("Every call in turn %d was a duplicate", state.loop_count)
            state.add_message(self._recovery.duplicate_call_message())
        if any(r.ok for r in results):
            state.mark_progress()

        if critical:
            state.transition_to(AgentLoopState.FAILED)
            return False
        state.transition_to(AgentLoopState.AWAITING_LLM_RESPONSE)
        if force:
            state.force_final_response = True
            return False
        return True

    async def _recover(
        self,
        state: ConversationState,
        dispatcher: ToolDispatcher,
        requests: List[ToolCallRequest],
        results: List[ToolResult],
        tools: Mapping[str, Any],
        user_id: str,
    ) -> Tuple[List[Message], bool, bool]:
        """Apply recovery to failed results in place.

        Returns:
            Tuple[List[Message], bool, bool]: corrective messages, whether a
            critical error occurred, whether a final response must be forced.
        """
        follow_ups: List[Message] = []
        critical = False
        force = False

        for i, (request, result) in enumerate(zip(requests, results)):
            if result.ok:
                continue
            if state.state != AgentLoopState.RECOVERING_FROM_ERROR:
                state.transition_to(AgentLoopState.RECOVERING_FROM_ERROR)
            state.record_tool_failure(result.tool_name)
            context = RecoveryContext(
                original_arguments=dict(request.arguments),
                discovered_ids=state.discovered_ids,
                user_id=user_id,
                available_tools=list(tools),
            )

            if self._recovery.is_critical_error(result):
                action = self._recovery.get_recovery_action(result, context)
                if action.message:
                    follow_ups.append(action.message)
                critical = True
                break

            if state.should_force_final_response():
                logger.warning("%s failed %d times in a row; forcing a final response",
                               result.tool_name, state.consecutive_failures)
                action = self._recovery.repeated_failure_action(result.tool_name, state.consecutive_failures)
                if action.message:
                    follow_ups.append(action.message)
                force = True
                continue

            action = self._recovery.get_recovery_action(result, context)
            logger.info("Recovery for %s (%s): %s", result.tool_name,
                        result.error_kind.value if result.error_kind else "unknown", action.kind.value)

            if action.kind != RecoveryKind.RETRY:
                if action.message:
                    follow_ups.append(action.message)
                continue

            retry = request
            if action.modified_arguments:
                retry = ToolCallRequest(
                    id=request.id,
                    name=request.name,
                    arguments=action.modified_arguments,
                    signature=tool_signature(request.name, action.modified_arguments),
                )
            retried = await dispatcher.dispatch_one(retry, state)
            results[i] = retried
            if retried.ok:
                continue

            state.record_tool_failure(retried.tool_name)
            if state.should_force_final_response():
                logger.warning("%s failed again on retry; forcing a final response", retried.tool_name)
                second = self._recovery.repeated_failure_action(retried.tool_name, state.consecutive_failures)
                force = True
            else:
                context.attempt = 1
                context.original_arguments = dict(retry.arguments)
                second = self._recovery.get_recovery_action(retried, context)
                if second.kind == RecoveryKind.RETRY:
                    second = self._recovery.repeated_failure_action(retried.tool_name, state.consecutive_failures)
            if second.message:
                follow_ups.append(second.message)

        return follow_ups, critical, force

    async def health(self) -> Tuple[int, Dict[str, Any]]:
        servers = await self._registry.list_servers()
        connected = [s for s in servers if s["state"] == STATE_CONNECTED]
        tool_count = len(self._registry.get_tools()) if connected else 0
        body = {
            "status": "healthy" if tool_count > 0 else "initializing",
            "tools_discovered": tool_count,
            "servers": [{"name": s["name"], "state": s["state"]} for s in servers],
            "connected_servers": len(connected),
            "total_servers": len(servers),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return (200 if tool_count > 0 else 503), body

    def list_tools(self) -> Dict[str, Any]:
        return {
            name: {"description": tool.description, "inputSchema": tool.input_schema}
            for name, tool in self._registry.get_tools().items()
        }

    async def refresh_cache(self, email: Optional[str] = None) -> bool:
        tools = await self.ensure_tools()
        async with self.cache.refresh_lock:
            return await self.fetcher.populate(tools, self.cache, email)

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()


_SERVICE: ChatAgentService | None = None


def get_agent_service() -> ChatAgentService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ChatAgentService()
    return _SERVICE


async def run_chat(request: ChatRequest) -> ChatOutcome:
    return await get_agent_service().run_chat(request)


__all__ = [
    "ChatAgentService",
    "ChatOutcome",
    "get_agent_service",
    "run_chat",
]
