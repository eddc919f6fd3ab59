import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletion

from conftest import FakeNotifier
from mmassist.agent.streaming import StreamRelay
from mmassist.services.llm import LLMGateway, LLMProviderError

TOOLS = [{"type": "function", "function": {"name": "list_channels", "parameters": {}}}]


def completion(message: dict) -> ChatCompletion:
    return ChatCompletion.model_validate(
        {
            "id": "chatcmpl-42",
            "object": "chat.completion",
            "created": 0,
            "model": "gpt-test",
            "choices": [{"index": 0, "finish_reason": "stop", "message": {"role": "assistant", **message}}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        }
    )


@pytest.fixture
def client() -> MagicMock:
    m = MagicMock()
    m.chat.completions.create = AsyncMock(return_value=completion({"content": "hi"}))
    return m


@pytest.mark.asyncio
async def test_complete_returns_text_usage_and_id(client: MagicMock) -> None:
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)
    response = await gateway.complete([{"role": "user", "content": "hello"}], tools=TOOLS)

    assert response.text == "hi"
    assert response.usage["total_tokens"] == 7
    assert response.correlation_id == "chatcmpl-42"
    params = client.chat.completions.create.call_args.kwargs
    assert params["tools"] == TOOLS
    assert params["tool_choice"] == "auto"
    assert params["model"] == "gpt-test"


@pytest.mark.asyncio
async def test_complete_omits_tool_fields_when_no_tools(client: MagicMock) -> None:
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)
    await gateway.complete([{"role": "user", "content": "hello"}], tools=[], tool_choice="none")
    params = client.chat.completions.create.call_args.kwargs
    assert "tools" not in params
    assert "tool_choice" not in params


@pytest.mark.asyncio
async def test_complete_returns_tool_calls_as_dicts(client: MagicMock) -> None:
    client.chat.completions.create.return_value = completion(
        {
            "content": None,
            "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "list_channels", "arguments": "{}"}}
            ],
        }
    )
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)
    response = await gateway.complete([{"role": "user", "content": "channels?"}], tools=TOOLS)

    assert response.text == ""
    assert response.tool_calls[0]["id"] == "call_1"
    assert response.tool_calls[0]["function"]["name"] == "list_channels"


@pytest.mark.asyncio
async def test_status_error_becomes_provider_error(client: MagicMock) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client.chat.completions.create.side_effect = openai.RateLimitError(
        "rate limited", response=httpx.Response(429, request=request), body=None
    )
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)

    with pytest.raises(LLMProviderError) as exc_info:
        await gateway.complete([{"role": "user", "content": "hello"}])

    assert exc_info.value.status_code == 429
    assert str(exc_info.value) == "OpenAI Provider Error: rate limited"


@pytest.mark.asyncio
async def test_connection_error_becomes_provider_error(client: MagicMock) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)

    with pytest.raises(LLMProviderError) as exc_info:
        await gateway.complete([{"role": "user", "content": "hello"}])
    assert exc_info.value.status_code is None


class FakeStreamResponse:
    def __init__(self, body: str, request_id: str) -> None:
        self.headers = {"x-request-id": request_id}
        self._body = body.encode("utf-8")

    async def iter_bytes(self):
        for i in range(0, len(self._body), 9):
            yield self._body[i : i + 9]


@pytest.mark.asyncio
async def test_stream_feeds_relay_and_uses_request_id(client: MagicMock, notifier: FakeNotifier) -> None:
    frames = [
        {"id": "chatcmpl-9", "choices": [{"delta": {"content": "Hello "}}]},
        {"id": "chatcmpl-9", "choices": [{"delta": {"content": "team"}}]},
        {"id": "chatcmpl-9", "choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}},
    ]
    body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames) + "data: [DONE]\n\n"
    seen = {}

    @asynccontextmanager
    async def create(**params):
        seen.update(params)
        yield FakeStreamResponse(body, "req-abc")

    client.chat.completions.with_streaming_response.create = create
    gateway = LLMGateway(client=client, model="gpt-test", temperature=0)
    relay = StreamRelay(notifier, "chat.t1", "gpt-test")

    response = await gateway.stream([{"role": "user", "content": "hi"}], relay)
    await relay.wait_pending()

    assert response.text == "Hello team"
    assert response.usage["total_tokens"] == 6
    assert response.correlation_id == "req-abc"
    assert seen["stream"] is True
    assert seen["stream_options"] == {"include_usage": True}
    assert "tools" not in seen
    assert sum(len(events) for _, events in notifier.batches) == 2
