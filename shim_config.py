import os
import json
import time
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from shim_errors import ConfigurationError

logger = logging.getLogger("lm_shim.config")

SYSTEM_PROMPT_FORMATS = ("merge", "assistant_acknowledgment", "simple_prepend")

DEFAULT_PORT = 59603
DEFAULT_MODEL = "gpt-4.1"
DEFAULT_UPSTREAM = "http://127.0.0.1:1234/v1"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "on", "yes")


@dataclass(frozen=True)
class SystemPromptConfig:
    default_text: str = ""
    format: str = "merge"
    enabled: bool = True


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    upstream_base: str = DEFAULT_UPSTREAM
    default_model: str = DEFAULT_MODEL
    system_prompt: str = ""
    system_prompt_format: str = "merge"
    enable_system_prompt_processing: bool = True
    enable_tool_calling: bool = True
    max_retries: int = 2
    retry_delay: float = 0.2
    registration_settle_delay: float = 0.1
    discovery_probes: bool = False
    discovery_cli: str = "claude-code"
    connect_timeout: float = 10.0
    read_timeout: float = 600.0
    mcp_clients: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def system_prompt_config(self) -> SystemPromptConfig:
        return SystemPromptConfig(
            default_text=self.system_prompt,
            format=self.system_prompt_format,
            enabled=self.enable_system_prompt_processing,
        )


# ---------------- Validation ----------------

def require_enum(value: Any, valid: tuple, name: str) -> str:
    if value not in valid:
        raise ConfigurationError(f"{name} must be one of: {', '.join(valid)}", setting=name, value=value)
    return value


def require_number(value: Any, name: str, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigurationError(f"{name} must be a number >= {minimum}", setting=name, value=value)
    return value


def require_port(value: Any, name: str = "port") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not (0 < value < 65536):
        raise ConfigurationError(f"{name} must be an integer in 1..65535", setting=name, value=value)
    return value


def normalize_upstream_base(base_url: str) -> str:
    """Accept values with or without scheme, trailing slash or /v1; always end in /v1."""
    if not base_url or not base_url.strip():
        raise ConfigurationError("upstream_base must be non-empty", setting="upstream_base", value=base_url)
    b = base_url.strip()
    if not (b.startswith("http://") or b.startswith("https://")):
        b = "http://" + b
    b = b.rstrip("/")
    if not b.endswith("/v1"):
        b = b + "/v1"
    return b


def _validate_mcp_clients(raw: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(raw, dict):
        raise ConfigurationError("mcp_clients must be an object", setting="mcp_clients", value=raw)
    out: Dict[str, Dict[str, Any]] = {}
    for name, spec in raw.items():
        if not isinstance(spec, dict) or not isinstance(spec.get("command"), str) or not spec["command"]:
            logger.warning(f"[cfg] ignoring MCP client '{name}': 'command' is required")
            continue
        args = spec.get("args") or []
        env = spec.get("env") or None
        out[str(name)] = {
            "command": spec["command"],
            "args": [str(a) for a in args] if isinstance(args, list) else [],
            "env": {str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else None,
        }
    return out


# Validators for each key: (check, default-from-Settings)
_VALIDATORS = {
    "host": lambda v: v if isinstance(v, str) and v.strip() else _bad("host", v),
    "port": require_port,
    "upstream_base": normalize_upstream_base,
    "default_model": lambda v: v if isinstance(v, str) and v.strip() else _bad("default_model", v),
    "system_prompt": lambda v: v if isinstance(v, str) else _bad("system_prompt", v),
    "system_prompt_format": lambda v: require_enum(v, SYSTEM_PROMPT_FORMATS, "system_prompt_format"),
    "enable_system_prompt_processing": lambda v: v if isinstance(v, bool) else _bad("enable_system_prompt_processing", v),
    "enable_tool_calling": lambda v: v if isinstance(v, bool) else _bad("enable_tool_calling", v),
    "max_retries": lambda v: int(require_number(v, "max_retries")) if isinstance(v, int) else _bad("max_retries", v),
    "retry_delay": lambda v: float(require_number(v, "retry_delay")),
    "registration_settle_delay": lambda v: float(require_number(v, "registration_settle_delay")),
    "discovery_probes": lambda v: v if isinstance(v, bool) else _bad("discovery_probes", v),
    "discovery_cli": lambda v: v if isinstance(v, str) and v.strip() else _bad("discovery_cli", v),
    "connect_timeout": lambda v: float(require_number(v, "connect_timeout")),
    "read_timeout": lambda v: float(require_number(v, "read_timeout")),
    "mcp_clients": _validate_mcp_clients,
}

# Aliases accepted in shim_config.json (camelCase names used by editor settings)
_ALIASES = {
    "defaultModel": "default_model",
    "systemPrompt": "system_prompt",
    "systemPromptFormat": "system_prompt_format",
    "enableSystemPromptProcessing": "enable_system_prompt_processing",
    "enableToolCalling": "enable_tool_calling",
    "mcpClients": "mcp_clients",
    "lmstudio_base": "upstream_base",
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay",
}


def _bad(name: str, value: Any):
    raise ConfigurationError(f"invalid value for {name}", setting=name, value=value)


def apply_overrides(base: Settings, raw: Dict[str, Any]) -> Settings:
    """Validate each override; invalid ones keep the current value and log a warning."""
    changes: Dict[str, Any] = {}
    for key, value in raw.items():
        key = _ALIASES.get(key, key)
        check = _VALIDATORS.get(key)
        if check is None:
            continue
        try:
            changes[key] = check(value)
        except ConfigurationError as e:
            logger.warning(f"[cfg] {e.to_log()}; keeping {getattr(base, key)!r}")
    return replace(base, **changes) if changes else base


def _env_overrides() -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    str_keys = {
        "SHIM_HOST": "host",
        "LMSTUDIO_BASE": "upstream_base",
        "SHIM_DEFAULT_MODEL": "default_model",
        "SHIM_SYSTEM_PROMPT": "system_prompt",
        "SHIM_SYSTEM_PROMPT_FORMAT": "system_prompt_format",
        "SHIM_DISCOVERY_CLI": "discovery_cli",
    }
    for env, key in str_keys.items():
        if os.getenv(env) is not None:
            raw[key] = os.getenv(env)
    for env, key in (("SHIM_PORT", "port"), ("SHIM_MAX_RETRIES", "max_retries")):
        v = os.getenv(env)
        if v is not None:
            try:
                raw[key] = int(v)
            except ValueError:
                logger.warning(f"[cfg] {env}={v!r} is not an integer; ignoring")
    for env, key in (
        ("SHIM_RETRY_DELAY", "retry_delay"),
        ("SHIM_REGISTRATION_SETTLE_DELAY", "registration_settle_delay"),
        ("SHIM_CONNECT_TIMEOUT", "connect_timeout"),
        ("SHIM_READ_TIMEOUT", "read_timeout"),
    ):
        v = os.getenv(env)
        if v is not None:
            try:
                raw[key] = float(v)
            except ValueError:
                logger.warning(f"[cfg] {env}={v!r} is not a number; ignoring")
    for env, key, default in (
        ("SHIM_SYSTEM_PROMPT_PROCESSING", "enable_system_prompt_processing", True),
        ("SHIM_TOOL_CALLING", "enable_tool_calling", True),
        ("SHIM_DISCOVERY_PROBES", "discovery_probes", False),
    ):
        if os.getenv(env) is not None:
            raw[key] = _env_flag(env, default)
    return raw


def shim_config_path() -> str:
    return os.getenv("SHIM_CONFIG_PATH") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "shim_config.json")


_FILE_CACHE: Dict[str, Any] = {"path": None, "mtime": 0.0, "last": 0.0, "data": {}}
CONFIG_FILE_TTL: float = 2.0


def _read_config_file(path: str) -> Dict[str, Any]:
    """Read shim_config.json with TTL + mtime caching. Missing file means no overrides."""
    try:
        mtime = os.stat(path).st_mtime
    except OSError:
        return {}
    now = time.time()
    if (
        _FILE_CACHE["path"] == path
        and _FILE_CACHE["mtime"] == mtime
        and (now - _FILE_CACHE["last"]) < CONFIG_FILE_TTL
    ):
        return _FILE_CACHE["data"]
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"[cfg] failed to load {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"[cfg] {path} must contain a JSON object; ignoring")
        return {}
    _FILE_CACHE.update({"path": path, "mtime": mtime, "last": now, "data": data})
    logger.info("[cfg] settings loaded from %s: %s", path, sorted(data.keys())[:8])
    return data


def load_settings(path: Optional[str] = None) -> Settings:
    """Defaults, then environment, then shim_config.json."""
    settings = apply_overrides(Settings(), _env_overrides())
    return apply_overrides(settings, _read_config_file(path or shim_config_path()))


# ---------------- Mutable process settings ----------------

_CURRENT: Optional[Settings] = None


def get_settings() -> Settings:
    global _CURRENT
    if _CURRENT is None:
        _CURRENT = load_settings()
    return _CURRENT


def update_settings(**changes: Any) -> Settings:
    global _CURRENT
    _CURRENT = apply_overrides(get_settings(), changes)
    return _CURRENT


def set_upstream_base(base_url: str) -> str:
    """Update the upstream base URL; returns the normalized URL actually stored."""
    stored = update_settings(upstream_base=base_url).upstream_base
    logger.info(f"[cfg] upstream base set to {stored}")
    return stored


def set_system_prompt(text: str, fmt: Optional[str] = None) -> SystemPromptConfig:
    changes: Dict[str, Any] = {"system_prompt": text}
    if fmt is not None:
        changes["system_prompt_format"] = fmt
    cfg = update_settings(**changes).system_prompt_config
    logger.info(f"[cfg] system prompt set ({len(cfg.default_text)} chars, format={cfg.format})")
    return cfg


def set_discovery_probes(enabled: bool) -> bool:
    enabled = update_settings(discovery_probes=bool(enabled)).discovery_probes
    logger.info(f"[cfg] discovery probes set to {'ON' if enabled else 'OFF'}")
    return enabled


def reset_settings() -> None:
    global _CURRENT
    _CURRENT = None
    _FILE_CACHE.update({"path": None, "mtime": 0.0, "last": 0.0, "data": {}})
