import json
from typing import Iterator
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import CHANNELS, USERS, FakeLLM, FakeNotifier, FakeRegistry, make_tool
from mmassist.agent import ChatAgentService, get_agent_service
from mmassist.main import app
from mmassist.models import LLMResponse
from mmassist.services.cache import ReferenceDataCache
from mmassist.services.fetcher import DataFetcher
from mmassist.services.llm import LLMProviderError
from mmassist.settings import get_settings

SECRET = "s3cret"
AUTH = {"X-Agent-Auth": SECRET}


@pytest.fixture
def listing_tools():
    return {
        "mattermost_list_channels": make_tool("mattermost_list_channels", json.dumps({"channels": CHANNELS})),
        "mattermost_get_users": make_tool("mattermost_get_users", json.dumps({"users": USERS})),
    }


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM([LLMResponse(text="Hello from the assistant.")])


@pytest.fixture
def service(listing_tools, llm, populated_cache: ReferenceDataCache) -> ChatAgentService:
    return ChatAgentService(
        registry=FakeRegistry(listing_tools),
        llm=llm,
        cache=populated_cache,
        notifier=FakeNotifier(),
        fetcher=DataFetcher(timeout_seconds=5),
    )


@pytest.fixture
def client(service: ChatAgentService, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setattr(get_settings(), "agent_auth_secret", SECRET)
    app.dependency_overrides[get_agent_service] = lambda: service
    # No context manager: the startup lifespan would dial the real tool portal.
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_needs_no_auth(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["tools_discovered"] == 2
    assert body["servers"] == [{"name": "SystemMCPportal", "state": "connected"}]


def test_health_is_503_without_tools(client: TestClient, service: ChatAgentService) -> None:
    service._registry = FakeRegistry({})
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "initializing"


def test_missing_auth_header_is_401(client: TestClient) -> None:
    response = client.get("/tools")
    assert response.status_code == 401
    assert response.json()["error"] == "Missing authentication header"


def test_wrong_secret_is_403(client: TestClient) -> None:
    response = client.get("/tools", headers={"X-Agent-Auth": "nope"})
    assert response.status_code == 403
    assert response.json()["error"] == "Invalid authentication credentials"


def test_unconfigured_secret_is_500(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(get_settings(), "agent_auth_secret", None)
    response = client.get("/tools", headers=AUTH)
    assert response.status_code == 500
    assert response.json()["error"] == "Authentication not properly configured"


def test_tools_listing(client: TestClient) -> None:
    response = client.get("/tools", headers=AUTH)
    assert response.status_code == 200
    tools = response.json()["tools"]
    assert set(tools) == {"mattermost_list_channels", "mattermost_get_users"}
    assert "inputSchema" in tools["mattermost_get_users"]


def test_chat_returns_answer_and_metrics(client: TestClient) -> None:
    response = client.post("/chat", headers=AUTH, json={"prompt": "hi", "email": "alice@example.com"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["answer"] == "Hello from the assistant."
    assert body["debug"]["finalState"] == "completed"


def test_chat_without_messages_is_400(client: TestClient) -> None:
    response = client.post("/chat", headers=AUTH, json={"messages": []})
    assert response.status_code == 400
    assert response.json()["error"] == "No messages provided"


def test_chat_provider_error_is_500(client: TestClient, llm: FakeLLM) -> None:
    llm.complete = AsyncMock(side_effect=LLMProviderError("rate limited", 429))
    response = client.post("/chat", headers=AUTH, json={"prompt": "hi"})
    assert response.status_code == 500
    assert response.json()["error"] == "OpenAI Provider Error: rate limited"


def test_chat_schedules_result_webhook(client: TestClient) -> None:
    with patch("mmassist.main.send_result_webhook", new=AsyncMock(return_value=True)) as webhook:
        response = client.post(
            "/chat",
            headers=AUTH,
            json={"prompt": "hi", "webhook_url": "http://hooks.local/result", "prompt_id": "p-1"},
        )
    assert response.status_code == 200
    webhook.assert_called_once()
    url, payload = webhook.call_args.args
    assert url == "http://hooks.local/result"
    assert payload["uuid"] == "p-1"
    assert payload["response"] == "Hello from the assistant."


def test_cache_stats_and_clear(client: TestClient) -> None:
    stats = client.get("/cache/stats", headers=AUTH).json()["cache"]
    assert stats["channels"] == 2 and stats["isValid"] is True

    cleared = client.post("/cache/clear", headers=AUTH).json()
    assert cleared["message"] == "Cache cleared successfully"
    assert client.get("/cache/stats", headers=AUTH).json()["cache"]["isEmpty"] is True


def test_cache_refresh_uses_listing_tools(client: TestClient, listing_tools) -> None:
    response = client.post("/cache/refresh", headers=AUTH, json={"email": "bob@example.com"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["cache"]["users"] == 2
    listing_tools["mattermost_list_channels"].invoke.assert_awaited_once_with({"userEmail": "bob@example.com"})


def test_cache_refresh_reports_partial(client: TestClient, listing_tools) -> None:
    listing_tools["mattermost_get_users"].invoke.side_effect = ConnectionError("down")
    body = client.post("/cache/refresh", headers=AUTH).json()
    assert body["status"] == "partial"
    assert body["message"] == "Cache partially refreshed"
