import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from ..settings import Settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]

STATE_CONNECTED = "connected"
STATE_FAILED = "failed"
AUDIENCE_HEADER = "X-MCP-Audience"


class ToolRegistryError(Exception):
    """Raised when a tool provider cannot be reached or used."""


@dataclass
class RemoteTool:
    """A late-bound tool capability: description, schema and an invoker."""

    name: str
    description: str
    input_schema: Dict[str, Any]
    invoke: Callable[[Dict[str, Any]], Awaitable[Any]]

    def to_openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ServerInfo:
    id: str
    name: str
    url: Optional[str]
    audience: Optional[str]
    transport: Dict[str, Any]
    state: str = "connecting"
    tools: List[RemoteTool] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "state": self.state}


class ToolRegistry:
    """Registry of MCP servers and the tools they expose.

    Each operation (listing, calling) opens its own short-lived client
    session against the server's transport.
    """

    def __init__(self) -> None:
        self._servers: Dict[str, ServerInfo] = {}

    @asynccontextmanager
    async def _open_session(self, server: ServerInfo) -> AsyncIterator[ClientSession]:
        transport = server.transport
        kind = transport.get("type", "streamable-http")
        if kind == "stdio":
            params = StdioServerParameters(
                command=transport["command"],
                args=list(transport.get("args") or []),
                env={"PYTHONPATH": str(PROJECT_ROOT), **os.environ},
            )
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    yield session
        elif kind == "streamable-http":
            if not server.url:
                raise ToolRegistryError(f"Server {server.name} has no URL")
            headers = dict(transport.get("headers") or {})
            if server.audience:
                headers.setdefault(AUDIENCE_HEADER, server.audience)
            async with streamablehttp_client(server.url, headers=headers) as (read, write, _):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    yield session
        else:
            raise ToolRegistryError(f"Unsupported transport type: {kind}")

    def _make_invoker(self, server_id: str, tool_name: str) -> Callable[[Dict[str, Any]], Awaitable[Any]]:
        async def invoke(arguments: Dict[str, Any]) -> Any:
            return await self.call_tool(server_id, tool_name, arguments)

        return invoke

    async def _load_tools(self, server: ServerInfo) -> None:
        try:
            async with self._open_session(server) as session:
                tools_result = await session.list_tools()
        except Exception as e:
            logger.warning("Failed to list tools on MCP server '%s': %s", server.name, e)
            server.state = STATE_FAILED
            server.tools = []
            return
        server.tools = [
            RemoteTool(
                name=tool_info.name,
                description=tool_info.description or "",
                input_schema=tool_info.inputSchema or {},
                invoke=self._make_invoker(server.id, tool_info.name),
            )
            for tool_info in tools_result.tools
        ]
        server.state = STATE_CONNECTED
        logger.info("MCP server '%s' exposes %d tools", server.name, len(server.tools))

    async def list_servers(self) -> List[Dict[str, Any]]:
        return [server.to_dict() for server in self._servers.values()]

    async def add_server(
        self,
        name: str,
        url: Optional[str],
        audience: Optional[str] = None,
        transport_config: Optional[Dict[str, Any]] = None,
    ) -> ServerInfo:
        """Register a server and try to connect to it. The returned state tells how it went."""
        server = ServerInfo(
            id=uuid.uuid4().hex,
            name=name,
            url=url,
            audience=audience,
            transport=dict(transport_config or {}),
        )
        self._servers[server.id] = server
        logger.info("Connecting to MCP server '%s' (%s)", name, url or server.transport.get("command"))
        await self._load_tools(server)
        return server

    async def remove_server(self, server_id: str) -> None:
        server = self._servers.pop(server_id, None)
        if server is None:
            raise ToolRegistryError(f"Unknown server id: {server_id}")
        logger.info("Removed MCP server '%s' (%s)", server.name, server_id)

    async def refresh_tools(self) -> None:
        await asyncio.gather(*(self._load_tools(s) for s in list(self._servers.values())))

    def get_tools(self) -> Dict[str, RemoteTool]:
        tools: Dict[str, RemoteTool] = {}
        for server in self._servers.values():
            if server.state != STATE_CONNECTED:
                continue
            for tool in server.tools:
                tools.setdefault(tool.name, tool)
        return tools

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_openai_schema() for tool in self.get_tools().values()]

    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> Any:
        server = self._servers.get(server_id)
        if server is None:
            raise ToolRegistryError(f"Server for tool {tool_name} is no longer registered")
        async with self._open_session(server) as session:
            return await session.call_tool(tool_name, arguments)


def _transport_config(settings: Settings) -> Optional[Dict[str, Any]]:
    if settings.mcp_portal_url:
        headers: Dict[str, str] = {}
        if settings.mcp_portal_client_id:
            headers["CF-Access-Client-Id"] = settings.mcp_portal_client_id
        if settings.mcp_portal_client_secret:
            headers["CF-Access-Client-Secret"] = settings.mcp_portal_client_secret
        return {"type": "streamable-http", "headers": headers}
    if settings.mcp_local_cmd:
        cmd_parts = settings.mcp_local_cmd.split()
        if len(cmd_parts) < 2:
            logger.warning("Invalid MCP command format: %s", settings.mcp_local_cmd)
            return None
        return {"type": "stdio", "command": cmd_parts[0], "args": cmd_parts[1:]}
    return None


async def initialize_connection(registry: ToolRegistry, settings: Settings) -> None:
    """Make sure the portal server is connected, reusing a working connection."""
    transport = _transport_config(settings)
    if transport is None:
        logger.warning("No MCP portal URL or local command configured; running without tools")
        return

    servers = await registry.list_servers()
    working = next(
        (s for s in servers if s["name"] == settings.mcp_portal_name and s["state"] == STATE_CONNECTED),
        None,
    )
    if working and registry.get_tools():
        logger.info("Already connected to portal: %s", working["id"])
        return

    cleaned = 0
    for server in servers:
        if server["state"] != STATE_CONNECTED:
            logger.info("Cleaning up %s connection: %s (%s)", server["state"], server["name"], server["id"])
            await registry.remove_server(server["id"])
            cleaned += 1
    if cleaned:
        logger.info("Cleaned up %d stale connections", cleaned)

    server = await registry.add_server(
        settings.mcp_portal_name,
        settings.mcp_portal_url,
        settings.mcp_audience,
        transport,
    )
    if server.state != STATE_CONNECTED:
        logger.error("Connection to '%s' failed with state: %s", server.name, server.state)
        await registry.remove_server(server.id)
        return
    logger.info("Connected! id=%s tools=%d", server.id, len(server.tools))


async def wait_for_tools(registry: ToolRegistry, attempts: int = 3, delay: float = 1.5) -> Dict[str, RemoteTool]:
    """Poll for discovered tools, refreshing between attempts."""
    tools = registry.get_tools()
    for attempt in range(1, attempts + 1):
        if tools:
            break
        logger.info("No tools yet (attempt %d/%d); retrying in %ss", attempt, attempts, delay)
        await asyncio.sleep(delay)
        await registry.refresh_tools()
        tools = registry.get_tools()
    return tools


# Process-wide registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry
