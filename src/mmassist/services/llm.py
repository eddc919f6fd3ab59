import logging
from typing import Any, Dict, List, Optional

from openai import APIStatusError, AsyncOpenAI, OpenAIError

from ..models import LLMResponse, Message
from ..settings import get_settings

logger = logging.getLogger(__name__)


class LLMProviderError(Exception):
    """The LLM call failed. ``detail`` carries the provider's message."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"OpenAI Provider Error: {detail}")
        self.detail = detail
        self.status_code = status_code


def _provider_error(e: OpenAIError) -> LLMProviderError:
    if isinstance(e, APIStatusError):
        return LLMProviderError(e.message, e.status_code)
    return LLMProviderError(str(e))


class LLMGateway:
    """Chat-completions calls, buffered or streamed through a StreamRelay."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )
        self.model = model or settings.model
        self._temperature = settings.temperature if temperature is None else temperature

    def _params(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: str,
        model: Optional[str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self._temperature,
        }
        # An empty tool list is rejected by the API; leave both fields out.
        if tools:
            params["tools"] = tools
            params["tool_choice"] = tool_choice
        return params

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto",
        model: Optional[str] = None,
    ) -> LLMResponse:
        params = self._params(messages, tools, tool_choice, model)
        logger.debug("LLM request: model=%s messages=%d tools=%d", params["model"], len(messages), len(tools or []))
        try:
            response = await self._client.chat.completions.create(**params)
        except OpenAIError as e:
            logger.error("LLM call failed: %s", e)
            raise _provider_error(e) from e

        if not response.choices:
            return LLMResponse(correlation_id=response.id or "")
        message = response.choices[0].message
        return LLMResponse(
            text=message.content or "",
            tool_calls=[tc.model_dump() for tc in message.tool_calls or []],
            usage=response.usage.model_dump() if response.usage else None,
            correlation_id=response.id or "",
        )

    async def stream(
        self,
        messages: List[Message],
        relay: Any,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto",
        model: Optional[str] = None,
    ) -> LLMResponse:
        """Stream a completion; the raw SSE body is consumed by ``relay``."""
        params = self._params(messages, tools, tool_choice, model)
        try:
            async with self._client.chat.completions.with_streaming_response.create(
                **params,
                stream=True,
                stream_options={"include_usage": True},
            ) as response:
                request_id = response.headers.get("x-request-id", "")
                result = await relay.consume(response.iter_bytes(), request_id)
        except OpenAIError as e:
            logger.error("LLM stream failed: %s", e)
            raise _provider_error(e) from e

        return LLMResponse(
            text=result.text,
            tool_calls=result.tool_calls,
            usage=result.usage,
            correlation_id=result.correlation_id,
        )
