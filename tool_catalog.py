"""Tool Catalog: name -> JSON-schema signature for every tool the shim knows about.

Entries are never removed. Built-ins come first, then discovered tools, then
tools sourced from MCP providers, in insertion order.
"""
import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("lm_shim.tools")

SOURCE_BUILTIN = "builtin"
SOURCE_DISCOVERED = "discovered"
SOURCE_PROVIDER = "provider"


def empty_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


@dataclass
class ToolSignature:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=empty_schema)

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ToolSignature"]:
        """Accept {name, description, parameters|inputSchema|input_schema} or the OpenAI function wrapper."""
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("function"), dict):
            data = data["function"]
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        params = data.get("parameters") or data.get("inputSchema") or data.get("input_schema")
        return cls(
            name=name,
            description=data.get("description") or "",
            parameters=params if isinstance(params, dict) else empty_schema(),
        )


def _schema_with_valid_required(name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    """Drop `required` entries that are not keys of `properties`."""
    required = schema.get("required")
    if not isinstance(required, list):
        return schema
    props = schema.get("properties") if isinstance(schema.get("properties"), dict) else {}
    kept = [r for r in required if r in props]
    if len(kept) != len(required):
        logger.warning(f"[tools] {name}: dropping required keys not in properties: {[r for r in required if r not in props]}")
        schema = dict(schema)
        schema["required"] = kept
    return schema


# Built-in coding-assistant tools. These are declarative signatures only: the
# shim never executes them, the calling client does.
BUILTIN_TOOL_SIGNATURES: List[Dict[str, Any]] = [
    {
        "name": "Task",
        "description": "Launch a new agent that has access to tools for complex task execution",
        "parameters": {
            "type": "object",
            "properties": {
                "description": {"type": "string", "description": "A short (3-5 word) description of the task"},
                "prompt": {"type": "string", "description": "The task for the agent to perform"},
            },
            "required": ["description", "prompt"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Bash",
        "description": "Executes a given bash command in a persistent shell session",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to execute"},
                "description": {
                    "type": "string",
                    "description": "Clear, concise description of what this command does in 5-10 words",
                },
                "timeout": {"type": "number", "description": "Optional timeout in milliseconds (max 600000)"},
            },
            "required": ["command"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Glob",
        "description": "Fast file pattern matching tool that works with any codebase size",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "The glob pattern to match files against"},
                "path": {
                    "type": "string",
                    "description": "The directory to search in. If not specified, the current working directory will be used",
                },
            },
            "required": ["pattern"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Grep",
        "description": "Fast content search tool that works with any codebase size",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "The regular expression pattern to search for in file contents"},
                "path": {"type": "string", "description": "The directory to search in. Defaults to the current working directory"},
                "include": {"type": "string", "description": "File pattern to include in the search (e.g. \"*.js\", \"*.{ts,tsx}\")"},
            },
            "required": ["pattern"],
            "additionalProperties": False,
        },
    },
    {
        "name": "LS",
        "description": "Lists files and directories in a given path",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The absolute path to the directory to list (must be absolute, not relative)"},
                "ignore": {"type": "array", "description": "List of glob patterns to ignore", "items": {"type": "string"}},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    },
    {
        "name": "exit_plan_mode",
        "description": "Use this tool when you are in plan mode and have finished presenting your plan and are ready to code",
        "parameters": {
            "type": "object",
            "properties": {
                "plan": {
                    "type": "string",
                    "description": "The plan you came up with, that you want to run by the user for approval. Supports markdown",
                },
            },
            "required": ["plan"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Read",
        "description": "Reads a file from the local filesystem",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to read"},
                "offset": {"type": "number", "description": "The line number to start reading from"},
                "limit": {"type": "number", "description": "The number of lines to read"},
            },
            "required": ["file_path"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Edit",
        "description": "Performs exact string replacements in files",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to modify"},
                "old_string": {"type": "string", "description": "The text to replace"},
                "new_string": {"type": "string", "description": "The text to replace it with (must be different from old_string)"},
                "replace_all": {"type": "boolean", "description": "Replace all occurrences of old_string (default false)", "default": False},
            },
            "required": ["file_path", "old_string", "new_string"],
            "additionalProperties": False,
        },
    },
    {
        "name": "MultiEdit",
        "description": "Multiple edits to a single file in one operation",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to modify"},
                "edits": {
                    "type": "array",
                    "description": "Array of edit operations to perform sequentially on the file",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "old_string": {"type": "string", "description": "The text to replace"},
                            "new_string": {"type": "string", "description": "The text to replace it with"},
                            "replace_all": {
                                "type": "boolean",
                                "description": "Replace all occurrences of old_string (default false)",
                                "default": False,
                            },
                        },
                        "required": ["old_string", "new_string"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["file_path", "edits"],
            "additionalProperties": False,
        },
    },
    {
        "name": "Write",
        "description": "Writes a file to the local filesystem",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "The absolute path to the file to write"},
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["file_path", "content"],
            "additionalProperties": False,
        },
    },
    {
        "name": "NotebookRead",
        "description": "Reads a Jupyter notebook (.ipynb file) and returns all of the cells",
        "parameters": {
            "type": "object",
            "properties": {
                "notebook_path": {"type": "string", "description": "The absolute path to the Jupyter notebook file to read"},
                "cell_id": {"type": "string", "description": "The ID of a specific cell to read. If not provided, all cells will be read"},
            },
            "required": ["notebook_path"],
            "additionalProperties": False,
        },
    },
    {
        "name": "NotebookEdit",
        "description": "Completely replaces the contents of a specific cell in a Jupyter notebook",
        "parameters": {
            "type": "object",
            "properties": {
                "notebook_path": {"type": "string", "description": "The absolute path to the Jupyter notebook file to edit"},
                "new_source": {"type": "string", "description": "The new source for the cell"},
                "cell_id": {"type": "string", "description": "The ID of the cell to edit"},
                "cell_type": {"type": "string", "enum": ["code", "markdown"], "description": "The type of the cell (code or markdown)"},
                "edit_mode": {
                    "type": "string",
                    "enum": ["replace", "insert", "delete"],
                    "description": "The type of edit to make (replace, insert, delete). Defaults to replace",
                },
            },
            "required": ["notebook_path", "new_source"],
            "additionalProperties": False,
        },
    },
    {
        "name": "WebFetch",
        "description": "Fetches content from a specified URL and processes it using an AI model",
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "format": "uri", "description": "The URL to fetch content from"},
                "prompt": {"type": "string", "description": "The prompt to run on the fetched content"},
            },
            "required": ["url", "prompt"],
            "additionalProperties": False,
        },
    },
    {
        "name": "TodoRead",
        "description": "Use this tool to read the current to-do list for the session",
        "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    {
        "name": "TodoWrite",
        "description": "Use this tool to create and manage a structured task list for your current coding session",
        "parameters": {
            "type": "object",
            "properties": {
                "todos": {
                    "type": "array",
                    "description": "The updated todo list",
                    "items": {
                        "type": "object",
                        "properties": {
                            "content": {"type": "string", "minLength": 1, "description": "The content of the todo item"},
                            "status": {
                                "type": "string",
                                "enum": ["pending", "in_progress", "completed"],
                                "description": "The status of the todo item",
                            },
                            "priority": {
                                "type": "string",
                                "enum": ["high", "medium", "low"],
                                "description": "The priority level of the todo item",
                            },
                            "id": {"type": "string", "description": "Unique identifier for the todo item"},
                        },
                        "required": ["content", "status", "priority", "id"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["todos"],
            "additionalProperties": False,
        },
    },
    {
        "name": "WebSearch",
        "description": "Search the web and use the results to inform responses",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 2, "description": "The search query to use"},
                "allowed_domains": {
                    "type": "array",
                    "description": "Only include search results from these domains",
                    "items": {"type": "string"},
                },
                "blocked_domains": {
                    "type": "array",
                    "description": "Never include search results from these domains",
                    "items": {"type": "string"},
                },
            },
            "required": ["query"],
            "additionalProperties": False,
        },
    },
]

BUILTIN_TOOL_NAMES = tuple(t["name"] for t in BUILTIN_TOOL_SIGNATURES)


class ToolCatalog:
    """Process-lifetime registry of tool signatures, keyed by name."""

    def __init__(self, seed: bool = True):
        self._lock = threading.Lock()
        self._entries: Dict[str, ToolSignature] = {}
        self._sources: Dict[str, str] = {}
        if seed:
            self.seed_builtins()

    def seed_builtins(self) -> int:
        """Insert the built-in table. Returns how many entries were new."""
        added = 0
        with self._lock:
            for raw in BUILTIN_TOOL_SIGNATURES:
                if raw["name"] in self._entries:
                    continue
                self._entries[raw["name"]] = ToolSignature(
                    name=raw["name"],
                    description=raw["description"],
                    parameters=copy.deepcopy(raw["parameters"]),
                )
                self._sources[raw["name"]] = SOURCE_BUILTIN
                added += 1
        if added:
            logger.info(f"[tools] seeded {added} built-in tool signatures")
        return added

    def upsert(self, signature: Any, source: str = SOURCE_DISCOVERED) -> bool:
        """Insert a signature or replace an existing one in place.

        Returns False for a missing or malformed signature instead of raising.
        """
        if not isinstance(signature, ToolSignature):
            signature = ToolSignature.from_dict(signature)
        if signature is None or not isinstance(signature.name, str) or not signature.name.strip():
            logger.warning("[tools] rejected malformed tool signature (missing name)")
            return False
        params = signature.parameters if isinstance(signature.parameters, dict) else empty_schema()
        params = _schema_with_valid_required(signature.name, params)
        with self._lock:
            existing = self._entries.get(signature.name)
            if existing is not None:
                # dicts keep insertion order on value replacement
                existing.description = signature.description
                existing.parameters = params
                logger.info(f"[tools] updated existing tool signature: {signature.name}")
            else:
                self._entries[signature.name] = ToolSignature(signature.name, signature.description, params)
                self._sources[signature.name] = source
                logger.info(f"[tools] added new tool signature: {signature.name} ({source})")
        return True

    def find(self, name: str) -> Optional[ToolSignature]:
        with self._lock:
            return self._entries.get(name)

    def all(self) -> List[ToolSignature]:
        with self._lock:
            entries = list(self._entries.values())
            sources = dict(self._sources)
        order = {SOURCE_BUILTIN: 0, SOURCE_DISCOVERED: 1, SOURCE_PROVIDER: 2}
        # sorted() is stable, so insertion order holds inside each group
        return sorted(entries, key=lambda sig: order.get(sources.get(sig.name), 1))

    def names(self) -> List[str]:
        return [sig.name for sig in self.all()]

    def builtin_names(self) -> List[str]:
        return [sig.name for sig in self.all() if self.source_of(sig.name) == SOURCE_BUILTIN]

    def source_of(self, name: str) -> Optional[str]:
        with self._lock:
            return self._sources.get(name)

    def clear(self, reseed: bool = True) -> None:
        with self._lock:
            self._entries.clear()
            self._sources.clear()
        if reseed:
            self.seed_builtins()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
