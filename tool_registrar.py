"""Capability Registrar: binds catalog entries to the tool execution environment.

A name is registered at most once for the life of the process; repeated
``ensure_*`` calls for the same name are cheap no-ops that return True.
"""
import asyncio
import json
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from shim_errors import ToolNotFoundError, ToolRegistrationError
from shim_types import ChatMessage, ToolResult, TextPart
from tool_catalog import BUILTIN_TOOL_NAMES, SOURCE_PROVIDER, ToolCatalog, ToolSignature
from tool_host import ToolHost

logger = logging.getLogger("lm_shim.tools")

# Built-in tools are executed by the calling client, never by the shim.
BUILTIN_PLACEHOLDER_RESULT = "(executed by client)"

ProviderInvokeFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def provider_result_to_tool_result(result: Any) -> ToolResult:
    """Map an MCP-style ``{content: [{type, text}], isError}`` payload to a ToolResult."""
    if isinstance(result, ToolResult):
        return result
    if isinstance(result, str):
        return ToolResult.from_text(result)
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            c.get("text") or ""
            for c in result["content"]
            if isinstance(c, dict) and c.get("type") == "text"
        ]
        return ToolResult(content=tuple(TextPart(t) for t in texts), is_error=bool(result.get("isError")))
    try:
        return ToolResult.from_text(json.dumps(result, ensure_ascii=False))
    except (TypeError, ValueError):
        return ToolResult.from_text(str(result))


class CapabilityRegistrar:
    def __init__(self, catalog: ToolCatalog, host: Optional[ToolHost]):
        self.catalog = catalog
        self.host = host
        self._lock = threading.Lock()
        self._registered: set = set()
        self._stats = {"builtin": 0, "provider": 0, "failed": 0}

    @property
    def can_register(self) -> bool:
        return self.host is not None

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._registered

    def registered_names(self) -> List[str]:
        with self._lock:
            return sorted(self._registered)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats, total=len(self._registered))

    def _register(self, name: str, handler, kind: str) -> bool:
        if self.host is None:
            logger.warning(f"[tools] no execution environment available to register {name}")
            return False
        with self._lock:
            if name in self._registered:
                logger.debug(f"[tools] {name} already registered")
                return True
            try:
                self.host.register_tool(name, handler)
            except ToolRegistrationError as e:
                self._stats["failed"] += 1
                logger.error(f"[tools] registration failed: {e.to_log()}")
                return False
            except Exception as e:
                self._stats["failed"] += 1
                err = ToolRegistrationError(f"failed to register {kind} tool '{name}'", tool_name=name, original_error=e)
                logger.error(f"[tools] {err.to_log()}: {e}")
                return False
            self._registered.add(name)
            self._stats[kind] += 1
        logger.info(f"[tools] registered {kind} tool: {name}")
        return True

    def ensure_builtin_registered(self, name: str) -> bool:
        """Register a catalog entry with a stub handler.

        Raises ToolNotFoundError when the catalog has no entry for ``name``.
        Returns False when the execution environment refuses the name.
        """
        if self.catalog.find(name) is None:
            raise ToolNotFoundError(f"tool signature not found: {name}", tool_name=name)
        if self.is_registered(name):
            return True

        def invoke(tool_name: str, params: Dict[str, Any]) -> ToolResult:
            logger.debug(f"[tools] {tool_name} invoked; returning placeholder result")
            return ToolResult.from_text(BUILTIN_PLACEHOLDER_RESULT)

        return self._register(name, invoke, "builtin")

    def ensure_provider_tool_registered(self, name: str, schema: Any, invoke_fn: ProviderInvokeFn) -> bool:
        """Register a tool whose handler delegates to an external provider."""
        if self.is_registered(name):
            return True
        sig = schema if isinstance(schema, ToolSignature) else ToolSignature.from_dict(schema)
        if sig is None:
            sig = ToolSignature(name=name, description=f"MCP tool: {name}")
        self.catalog.upsert(ToolSignature(name, sig.description, sig.parameters), source=SOURCE_PROVIDER)

        async def invoke(tool_name: str, params: Dict[str, Any]) -> ToolResult:
            try:
                result = await invoke_fn(tool_name, params)
            except Exception as e:
                logger.error(f"[mcp] tool {tool_name} execution failed: {e}")
                return ToolResult.from_text(f"Error executing MCP tool {tool_name}: {e}", is_error=True)
            logger.info(f"[mcp] tool {tool_name} executed")
            return provider_result_to_tool_result(result)

        return self._register(name, invoke, "provider")

    def register_all_builtins(self) -> Dict[str, int]:
        ok = 0
        for name in BUILTIN_TOOL_NAMES:
            try:
                if self.ensure_builtin_registered(name):
                    ok += 1
            except ToolNotFoundError as e:
                logger.warning(f"[tools] {e.to_log()}")
        missing = [n for n in BUILTIN_TOOL_NAMES if not self.is_registered(n)]
        if missing:
            logger.warning(f"[tools] registered {ok}/{len(BUILTIN_TOOL_NAMES)} built-in tools; missing: {missing}")
        else:
            logger.info(f"[tools] all {ok} built-in tools registered")
        return self.stats()

    def clear(self) -> None:
        with self._lock:
            self._registered.clear()
            self._stats = {"builtin": 0, "provider": 0, "failed": 0}


# ---------------- Request-time reconciliation ----------------

def extract_tool_names(
    tools: Optional[Iterable[Any]],
    messages: Iterable[ChatMessage],
    catalog: Optional[ToolCatalog] = None,
) -> List[str]:
    """Names declared in ``tools`` plus built-in names mentioned in message text."""
    builtins = catalog.builtin_names() if catalog is not None else list(BUILTIN_TOOL_NAMES)
    names: List[str] = []
    for tool in tools or []:
        if not isinstance(tool, dict):
            continue
        fn = tool.get("function")
        name = fn.get("name") if isinstance(fn, dict) else tool.get("name")
        if isinstance(name, str) and name.strip():
            names.append(name)
    for msg in messages:
        if not isinstance(msg.content, str):
            continue
        lowered = msg.content.lower()
        for builtin in builtins:
            if builtin.lower() in lowered:
                names.append(builtin)
    return list(dict.fromkeys(names))


def _match_provider_tool(name: str, provider_tools: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for tool in provider_tools:
        if tool.get("qualifiedName") == name or tool.get("name") == name:
            return tool
    for tool in provider_tools:
        if tool.get("name") and tool["name"] in name:
            return tool
    return None


async def ensure_tools_registered(
    names: Iterable[str],
    registrar: CapabilityRegistrar,
    discovery,
    provider=None,
    settle_delay: float = 0.1,
) -> Dict[str, bool]:
    """Make every name callable: catalog entry, provider tool, or discovered signature."""
    outcome: Dict[str, bool] = {}
    names = list(names)
    if not names:
        return outcome
    if not registrar.can_register:
        logger.warning("[tools] execution environment not available for dynamic registration")
        return {n: False for n in names}
    provider_tools = provider.list_tools() if provider is not None else []
    for name in names:
        if registrar.catalog.find(name) is not None:
            outcome[name] = registrar.ensure_builtin_registered(name)
            continue
        match = _match_provider_tool(name, provider_tools)
        if match is not None:
            target = match.get("qualifiedName") or match.get("name")
            schema = {
                "name": name,
                "description": match.get("description") or f"MCP tool: {match.get('name')}",
                "parameters": match.get("inputSchema") or {"type": "object", "properties": {}, "required": []},
            }

            async def call(tool_name: str, params: Dict[str, Any], _target=target) -> Any:
                return await provider.call_tool(_target, params)

            outcome[name] = registrar.ensure_provider_tool_registered(name, schema, call)
            continue
        signature = await discovery.discover(name)
        registrar.catalog.upsert(signature)
        try:
            outcome[name] = registrar.ensure_builtin_registered(name)
        except ToolNotFoundError as e:
            logger.warning(f"[tools] {e.to_log()}")
            outcome[name] = False
        logger.info(f"[discovery] registered discovered tool {name}: {outcome[name]}")
    if settle_delay > 0:
        await asyncio.sleep(settle_delay)
    return outcome
