import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from mmassist.models import LLMResponse  # noqa: E402
from mmassist.services.cache import CachedChannel, CachedUser, ReferenceDataCache  # noqa: E402
from mmassist.services.mcp_registry import RemoteTool  # noqa: E402

CHANNELS = [
    {"id": "4xp9fdt7pbgium38k2ngpowt1r", "name": "general", "display_name": "General", "type": "O"},
    {"id": "k8mzq3w1c7f9ybx4t2hdrn6pae", "name": "dev-team", "display_name": "Dev Team", "type": "O"},
]
USERS = [
    {"id": "q1w2e3r4t5y6u7i8o9p0a1s2d3", "username": "alice", "email": "alice@example.com"},
    {"id": "z9x8c7v6b5n4m3l2k1j0h9g8f7", "username": "bob", "email": "bob@example.com"},
]


def make_tool(name: str, result: Any = None, side_effect: Any = None, description: str = "") -> RemoteTool:
    """RemoteTool whose invoke is an AsyncMock."""
    invoke = AsyncMock(return_value=result, side_effect=side_effect)
    return RemoteTool(
        name=name,
        description=description or f"{name} tool",
        input_schema={"type": "object", "properties": {}},
        invoke=invoke,
    )


def tool_call(name: str, args: Optional[Dict[str, Any]] = None, call_id: str = "call_1") -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(args or {})},
    }


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRegistry:
    """Registry with one connected portal exposing the given tools."""

    def __init__(self, tools: Dict[str, RemoteTool], name: str = "SystemMCPportal") -> None:
        self.tools = tools
        self.name = name

    async def list_servers(self) -> List[Dict[str, Any]]:
        return [{"id": "srv-1", "name": self.name, "state": "connected"}]

    def get_tools(self) -> Dict[str, RemoteTool]:
        return dict(self.tools)


class FakeLLM:
    """Scripted LLM: complete() pops the next response, stream() returns final."""

    def __init__(self, responses: List[LLMResponse], final: Optional[LLMResponse] = None) -> None:
        self.model = "test-model"
        self._responses = list(responses)
        self.final = final or LLMResponse(text="Here is what I found.")
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    async def complete(self, messages, tools=None, tool_choice="auto", model=None) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "tool_choice": tool_choice})
        if not self._responses:
            return LLMResponse()
        return self._responses.pop(0)

    async def stream(self, messages, relay, tools=None, tool_choice="auto", model=None) -> LLMResponse:
        self.stream_calls.append({"messages": list(messages), "tools": tools})
        return self.final


class FakeNotifier:
    def __init__(self) -> None:
        self.batches: List[tuple] = []

    async def publish_batch(self, events: List[Dict[str, Any]], channel_key: str) -> None:
        self.batches.append((channel_key, list(events)))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def populated_cache(fake_clock: FakeClock) -> ReferenceDataCache:
    cache = ReferenceDataCache(ttl_seconds=300, clock=fake_clock)
    cache.replace((CachedChannel(**c) for c in CHANNELS), (CachedUser(**u) for u in USERS))
    return cache


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
