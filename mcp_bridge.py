"""External tool provider: MCP servers spoken to over stdio.

Tools are keyed ``client:tool``. ``call_tool`` accepts the qualified key or a
bare tool name and returns an MCP-style ``{"content": [...], "isError": bool}``
dict.
"""
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from shim_errors import ToolNotFoundError

logger = logging.getLogger("lm_shim.mcp")


def _result_to_dict(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        return result
    content = []
    for item in getattr(result, "content", None) or []:
        kind = getattr(item, "type", None)
        if kind == "text":
            content.append({"type": "text", "text": getattr(item, "text", "")})
        else:
            content.append({"type": kind or "unknown"})
    return {"content": content, "isError": bool(getattr(result, "isError", False))}


class MCPManager:
    def __init__(self):
        self._stack = AsyncExitStack()
        self._sessions: Dict[str, ClientSession] = {}
        self._tools: Dict[str, Dict[str, Any]] = {}

    @property
    def client_names(self) -> List[str]:
        return list(self._sessions.keys())

    async def add_client(self, name: str, config: Dict[str, Any]) -> None:
        params = StdioServerParameters(
            command=config["command"],
            args=list(config.get("args") or []),
            env=config.get("env") or None,
        )
        try:
            read_stream, write_stream = await self._stack.enter_async_context(stdio_client(params))
            session = await self._stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except Exception as e:
            logger.error(f"[mcp] failed to connect client '{name}': {e}")
            raise
        self._sessions[name] = session
        await self._load_tools(name, session)
        logger.info(f"[mcp] client '{name}' connected")

    async def _load_tools(self, client_name: str, session: ClientSession) -> None:
        try:
            response = await session.list_tools()
        except Exception as e:
            logger.error(f"[mcp] failed to load tools from client '{client_name}': {e}")
            return
        for tool in response.tools:
            key = f"{client_name}:{tool.name}"
            self._tools[key] = {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": tool.inputSchema or {"type": "object", "properties": {}},
                "qualifiedName": key,
            }
            logger.debug(f"[mcp] loaded tool: {key}")

    def list_tools(self) -> List[Dict[str, Any]]:
        return [dict(t) for t in self._tools.values()]

    def _resolve(self, tool_name: str):
        if ":" in tool_name:
            client_name, actual = tool_name.split(":", 1)
            return client_name, actual
        for key, tool in self._tools.items():
            if tool["name"] == tool_name:
                return key.split(":", 1)[0], tool_name
        return None, tool_name

    async def call_tool(self, tool_name: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client_name, actual = self._resolve(tool_name)
        if client_name is None:
            raise ToolNotFoundError(f"Tool '{tool_name}' not found", tool_name=tool_name)
        session = self._sessions.get(client_name)
        if session is None:
            raise ToolNotFoundError(f"MCP client '{client_name}' not found", tool_name=tool_name)
        try:
            result = await session.call_tool(actual, params or {})
        except Exception as e:
            logger.error(f"[mcp] tool call failed for '{tool_name}': {e}")
            raise
        return _result_to_dict(result)

    async def disconnect(self) -> None:
        try:
            await self._stack.aclose()
        except Exception as e:
            logger.error(f"[mcp] error disconnecting clients: {e}")
        for name in self._sessions:
            logger.info(f"[mcp] client '{name}' disconnected")
        self._sessions.clear()
        self._tools.clear()
        self._stack = AsyncExitStack()


async def connect_configured_clients(manager: MCPManager, clients: Dict[str, Dict[str, Any]]) -> List[str]:
    """Connect every configured client; failures are logged and skipped."""
    connected = []
    for name, cfg in (clients or {}).items():
        try:
            await manager.add_client(name, cfg)
        except Exception as e:
            logger.warning(f"[mcp] skipping client '{name}': {e}")
            continue
        connected.append(name)
    return connected
