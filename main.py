import argparse

from shim_config import (
    SYSTEM_PROMPT_FORMATS,
    get_settings,
    set_discovery_probes,
    set_system_prompt,
    set_upstream_base,
    update_settings,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LM tool shim launcher")
    parser.add_argument('--host', type=str, default=None, help='Shim server host (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=None, help='Shim server port (default: 59603)')
    parser.add_argument('--upstream-base', type=str, default=None, help='Upstream base URL (e.g. http://127.0.0.1:1234)')
    parser.add_argument('--default-model', type=str, default=None, help='Fallback model id when the requested one is unavailable')
    parser.add_argument('--system-prompt', type=str, default=None, help='Default system prompt merged into every request')
    parser.add_argument('--system-prompt-format', type=str, choices=list(SYSTEM_PROMPT_FORMATS), default=None,
                        help='How system content is folded into the conversation')
    parser.add_argument('--system-prompt-processing', type=str, choices=['on', 'off'], default=None,
                        help='Fold system messages into user content (off: system roles are sent as user)')
    parser.add_argument('--tool-calling', type=str, choices=['on', 'off'], default=None, help='Offer tools to the model')
    parser.add_argument('--discovery-probes', type=str, choices=['on', 'off'], default=None,
                        help='Shell out to introspect unknown tools during discovery')
    parser.add_argument('--max-retries', type=int, default=None, help='Re-dispatches allowed after a mid-turn tool registration')
    return parser


def apply_args(args: argparse.Namespace):
    if args.upstream_base:
        set_upstream_base(args.upstream_base)
    if args.system_prompt is not None or args.system_prompt_format is not None:
        set_system_prompt(args.system_prompt if args.system_prompt is not None else get_settings().system_prompt,
                          args.system_prompt_format)
    if args.discovery_probes is not None:
        set_discovery_probes(args.discovery_probes == 'on')
    changes = {}
    if args.host:
        changes["host"] = args.host
    if args.port is not None:
        changes["port"] = args.port
    if args.default_model:
        changes["default_model"] = args.default_model
    if args.system_prompt_processing is not None:
        changes["enable_system_prompt_processing"] = args.system_prompt_processing == 'on'
    if args.tool_calling is not None:
        changes["enable_tool_calling"] = args.tool_calling == 'on'
    if args.max_retries is not None:
        changes["max_retries"] = args.max_retries
    if changes:
        update_settings(**changes)
    return get_settings()


def main():
    args = build_parser().parse_args()
    settings = apply_args(args)

    import shim_server
    import uvicorn
    print(f"Starting shim server at http://{settings.host}:{settings.port} (upstream: {settings.upstream_base})")
    # uvicorn's default colorized logging config would replace the shim's basicConfig
    uvicorn.run(shim_server.app, host=settings.host, port=settings.port, log_config=None, log_level="info")


if __name__ == "__main__":
    main()
