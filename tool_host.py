"""In-process tool execution environment.

Plays the part an editor's language-model tool API plays: tools are bound to
a name once, and the orchestrator invokes them by name during a turn.
"""
import asyncio
import inspect
import logging
import re
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from shim_errors import ToolInvocationError, ToolNotFoundError, ToolRegistrationError
from shim_types import ToolResult

logger = logging.getLogger("lm_shim.host")

ToolHandler = Callable[[str, Dict[str, Any]], Union[ToolResult, Awaitable[ToolResult]]]

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")


class ToolHost:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, ToolHandler] = {}

    def register_tool(self, name: str, handler: ToolHandler) -> None:
        """Bind a handler to a name. Duplicate or malformed names are rejected."""
        if not isinstance(name, str) or not _TOOL_NAME_RE.match(name):
            raise ToolRegistrationError(f"invalid tool name: {name!r}", tool_name=name, operation="register_tool")
        if not callable(handler):
            raise ToolRegistrationError(f"handler for '{name}' is not callable", tool_name=name, operation="register_tool")
        with self._lock:
            if name in self._handlers:
                raise ToolRegistrationError(f"tool '{name}' is already registered", tool_name=name, operation="register_tool")
            self._handlers[name] = handler

    def has_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._handlers

    def tool_names(self) -> List[str]:
        with self._lock:
            return list(self._handlers.keys())

    async def invoke_tool(
        self,
        name: str,
        input: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ToolResult:
        """Run the handler bound to ``name``.

        Raises ToolNotFoundError when nothing is bound; any failure inside the
        handler comes out as ToolInvocationError.
        """
        with self._lock:
            handler = self._handlers.get(name)
        if handler is None:
            raise ToolNotFoundError(f"tool '{name}' not found: it is not registered", tool_name=name)
        if cancel_event is not None and cancel_event.is_set():
            raise ToolInvocationError(f"tool '{name}' invocation cancelled", tool_name=name)
        try:
            result = handler(name, dict(input or {}))
            if inspect.isawaitable(result):
                result = await result
        except ToolInvocationError:
            raise
        except Exception as e:
            raise ToolInvocationError(f"tool '{name}' raised: {e}", tool_name=name, original_error=e) from e
        if isinstance(result, str):
            return ToolResult.from_text(result)
        if not isinstance(result, ToolResult):
            raise ToolInvocationError(f"tool '{name}' returned {type(result).__name__}, expected ToolResult", tool_name=name)
        return result

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
