"""Tool Discovery Engine.

Given a tool name nothing has registered, produce a plausible signature:
pattern table first, then any configured probes, then a generic fallback.
``discover`` never returns None.
"""
import asyncio
import copy
import logging
import shlex
from typing import Iterable, List, Optional, Sequence

from tool_catalog import ToolSignature

logger = logging.getLogger("lm_shim.discovery")


def _obj(properties: dict, required: Optional[list] = None) -> dict:
    schema = {"type": "object", "properties": properties}
    if required is not None:
        schema["required"] = required
    return schema


# Hand-authored signatures for common shell and dev tools. Exact name match only.
COMMON_TOOL_PATTERNS = {
    "cat": ToolSignature("cat", "Display file contents", _obj({"file": {"type": "string"}}, ["file"])),
    "ls": ToolSignature("ls", "List directory contents", _obj({"path": {"type": "string"}})),
    "cp": ToolSignature(
        "cp", "Copy files", _obj({"source": {"type": "string"}, "dest": {"type": "string"}}, ["source", "dest"])
    ),
    "mv": ToolSignature(
        "mv", "Move files", _obj({"source": {"type": "string"}, "dest": {"type": "string"}}, ["source", "dest"])
    ),
    "rm": ToolSignature("rm", "Remove files", _obj({"path": {"type": "string"}}, ["path"])),
    "git": ToolSignature("git", "Git version control", _obj({"command": {"type": "string"}}, ["command"])),
    "npm": ToolSignature("npm", "Node package manager", _obj({"command": {"type": "string"}}, ["command"])),
    "python": ToolSignature("python", "Python interpreter", _obj({"code": {"type": "string"}}, ["code"])),
}


def discovered_description(name: str) -> str:
    return f"Dynamically discovered tool: {name}"


def probed_signature(name: str) -> ToolSignature:
    return ToolSignature(
        name=name,
        description=discovered_description(name),
        parameters=_obj({"input": {"type": "string", "description": "Tool input"}}, ["input"]),
    )


def generic_signature(name: str) -> ToolSignature:
    return ToolSignature(
        name=name,
        description=discovered_description(name),
        parameters=_obj(
            {
                "args": {"type": "array", "description": "Arguments for the tool", "items": {"type": "string"}},
                "input": {"type": "string", "description": "Input data for the tool"},
            },
            [],
        ),
    )


def match_common_pattern(name: str) -> Optional[ToolSignature]:
    sig = COMMON_TOOL_PATTERNS.get(name)
    if sig is None:
        return None
    # hand out a copy so catalog updates never touch the table
    return ToolSignature(sig.name, sig.description, copy.deepcopy(sig.parameters))


class DiscoveryProbe:
    """Something that can look a tool up outside the process."""

    name = "probe"

    async def probe(self, tool_name: str) -> Optional[ToolSignature]:
        raise NotImplementedError


class CommandProbe(DiscoveryProbe):
    """Runs introspection commands in a shell; the first non-empty stdout wins."""

    name = "command"

    def __init__(self, cli: str = "claude-code", timeout: float = 5.0, commands: Optional[Sequence[str]] = None):
        self.cli = cli
        self.timeout = timeout
        self._commands = list(commands) if commands is not None else None

    def commands_for(self, tool_name: str) -> List[str]:
        q = shlex.quote(tool_name)
        if self._commands is not None:
            return [c.format(cli=self.cli, name=q) for c in self._commands]
        return [
            f"{self.cli} --help {q}",
            f"{self.cli} tools list | grep -i {q}",
            f"which {q}",
        ]

    async def _run(self, command: str) -> str:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            return ""
        return stdout.decode("utf-8", "ignore")

    async def probe(self, tool_name: str) -> Optional[ToolSignature]:
        for command in self.commands_for(tool_name):
            try:
                out = await self._run(command)
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"[discovery] probe '{command}' failed: {e}")
                continue
            if out.strip():
                logger.info(f"[discovery] discovered tool definition for {tool_name} using: {command}")
                return parse_help_output(tool_name, out)
        return None


def parse_help_output(tool_name: str, help_text: str) -> ToolSignature:
    """Help text is only used as evidence that the tool exists."""
    return probed_signature(tool_name)


class DiscoveryEngine:
    def __init__(self, probes: Optional[Iterable[DiscoveryProbe]] = None):
        self.probes: List[DiscoveryProbe] = list(probes or [])

    async def discover(self, name: str) -> ToolSignature:
        common = match_common_pattern(name)
        if common is not None:
            logger.info(f"[discovery] matched common tool pattern for {name}")
            return common
        for probe in self.probes:
            try:
                sig = await probe.probe(name)
            except Exception as e:
                logger.warning(f"[discovery] {probe.name} probe raised for {name}: {e}")
                continue
            if sig is not None:
                return sig
        logger.info(f"[discovery] no definition found for {name}; using generic signature")
        return generic_signature(name)


def build_discovery_engine(probes_enabled: bool, cli: str = "claude-code") -> DiscoveryEngine:
    return DiscoveryEngine([CommandProbe(cli=cli)] if probes_enabled else [])


async def discover_tool_definition(name: str) -> ToolSignature:
    """Discovery with no probes configured: pattern table or generic fallback."""
    return await DiscoveryEngine().discover(name)
