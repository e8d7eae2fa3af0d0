"""Command-line client for the RunAgents platform API."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

from . import __version__
from .client import APIClient, ApiError, ClientError, Result
from .config import (
    ClientConfig,
    ConfigError,
    load_config,
    mask_api_key,
    resolve_settings,
    save_config,
    update_config,
)
from .logging import LOG_FORMATS, LOG_LEVELS, configure_logging, get_logger
from .output import (
    AGENTS_TABLE,
    APPROVALS_TABLE,
    EVENTS_TABLE,
    MODEL_USAGES_TABLE,
    MODELS_TABLE,
    OUTPUT_FORMATS,
    RUNS_TABLE,
    TOOLS_TABLE,
    RenderError,
    decode_object,
    display_value,
    format_list,
    print_records,
    render_detail,
    render_list_section,
    render_raw,
    render_table,
    render_yaml,
    report_field,
    string_field,
)


_logger = get_logger("runagents.cli")

Handler = Callable[[ClientConfig, APIClient, argparse.Namespace], None]


class CommandError(Exception):
    """Raised when the CLI encounters an expected error condition."""


def _add_global_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    # Leaf parsers repeat the options with suppressed defaults so they can
    # follow the subcommand without clobbering values given before it.
    def default(value: Any) -> Any:
        return argparse.SUPPRESS if suppress else value

    parser.add_argument(
        "--endpoint",
        default=default(None),
        help="API endpoint URL (overrides the stored config)",
    )
    parser.add_argument(
        "--api-key",
        default=default(None),
        help="API key sent as 'Authorization: Bearer <key>' (overrides the stored config)",
    )
    parser.add_argument(
        "-o",
        "--output",
        choices=OUTPUT_FORMATS,
        default=default("table"),
        help="Output format: table (default), json for the raw response body, or yaml",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=default("WARNING"),
        help="Diagnostic log level written to stderr (default: WARNING)",
    )
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=default("plain"),
        help="Diagnostic log format (default: plain)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runagents",
        description=(
            "RunAgents CLI -- manage AI agents, tools, and runs from the terminal. "
            "Interacts with the RunAgents platform API to deploy agents, register tools, "
            "manage model providers, monitor runs, and handle approvals."
        ),
    )
    _add_global_options(parser)

    common = argparse.ArgumentParser(add_help=False)
    _add_global_options(common, suppress=True)

    subparsers = parser.add_subparsers(dest="command", required=False)

    version = subparsers.add_parser("version", parents=[common], help="Print the CLI version")
    version.set_defaults(func=_cmd_version, needs_client=False)

    _add_config_commands(subparsers, common)
    _add_agent_commands(subparsers, common)
    _add_tool_commands(subparsers, common)
    _add_model_commands(subparsers, common)
    _add_run_commands(subparsers, common)
    _add_approval_commands(subparsers, common)
    _add_deploy_command(subparsers, common)
    _add_analyze_command(subparsers, common)

    starter_kit = subparsers.add_parser(
        "starter-kit",
        parents=[common],
        help="Seed the platform with starter resources (POST /api/starter-kit)",
        description="Creates the echo-tool and playground-llm starter resources.",
    )
    starter_kit.set_defaults(func=_cmd_starter_kit)

    return parser


def _add_config_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    config = subparsers.add_parser(
        "config",
        help="Manage CLI configuration (~/.runagents/config.json)",
    )
    config_sub = config.add_subparsers(dest="config_command", required=True)

    set_cmd = config_sub.add_parser(
        "set",
        parents=[common],
        help="Set a configuration value",
        description="Set a configuration value. Valid keys: endpoint, api-key.",
    )
    set_cmd.add_argument("key", help="Configuration key (endpoint or api-key)")
    set_cmd.add_argument("value", help="New value")
    set_cmd.set_defaults(func=_cmd_config_set, needs_client=False)

    get_cmd = config_sub.add_parser(
        "get",
        parents=[common],
        help="Show current configuration",
        description="Prints the endpoint and a masked API key.",
    )
    get_cmd.set_defaults(func=_cmd_config_get, needs_client=False)


def _add_agent_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    agents = subparsers.add_parser("agents", help="Manage agents (list/get/delete)")
    agent_sub = agents.add_subparsers(dest="agent_command", required=True)

    list_cmd = agent_sub.add_parser(
        "list",
        parents=[common],
        help="List all agents (GET /api/agents)",
    )
    list_cmd.set_defaults(func=_cmd_agents_list)

    get = agent_sub.add_parser(
        "get",
        parents=[common],
        help="Get details of an agent (GET /api/agents/{namespace}/{name})",
    )
    get.add_argument("namespace", help="Agent namespace")
    get.add_argument("name", help="Agent name")
    get.set_defaults(func=_cmd_agents_get)

    delete = agent_sub.add_parser(
        "delete",
        parents=[common],
        help="Delete an agent (DELETE /api/agents/{namespace}/{name})",
    )
    delete.add_argument("namespace", help="Agent namespace")
    delete.add_argument("name", help="Agent name")
    delete.set_defaults(func=_cmd_agents_delete)


def _add_tool_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    tools = subparsers.add_parser("tools", help="Manage tools (list/get/create/delete)")
    tool_sub = tools.add_subparsers(dest="tool_command", required=True)

    list_cmd = tool_sub.add_parser("list", parents=[common], help="List all tools (GET /api/tools)")
    list_cmd.set_defaults(func=_cmd_tools_list)

    get = tool_sub.add_parser(
        "get",
        parents=[common],
        help="Get details of a tool (GET /api/tools/{name})",
    )
    get.add_argument("name", help="Tool name")
    get.set_defaults(func=_cmd_tools_get)

    create = tool_sub.add_parser(
        "create",
        parents=[common],
        help="Create a tool from a JSON file (POST /api/tools)",
        description="Posts the contents of a JSON tool definition file unchanged.",
    )
    create.add_argument("--file", required=True, help="Path to JSON file with tool definition")
    create.set_defaults(func=_cmd_tools_create)

    delete = tool_sub.add_parser(
        "delete",
        parents=[common],
        help="Delete a tool (DELETE /api/tools/{name})",
    )
    delete.add_argument("name", help="Tool name")
    delete.set_defaults(func=_cmd_tools_delete)


def _add_model_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    models = subparsers.add_parser("models", help="Manage model providers (list/get/create/delete)")
    model_sub = models.add_subparsers(dest="model_command", required=True)

    list_cmd = model_sub.add_parser(
        "list",
        parents=[common],
        help="List all model providers (GET /api/model-providers)",
    )
    list_cmd.set_defaults(func=_cmd_models_list)

    get = model_sub.add_parser(
        "get",
        parents=[common],
        help="Get details of a model provider (GET /api/model-providers/{name})",
    )
    get.add_argument("name", help="Model provider name")
    get.set_defaults(func=_cmd_models_get)

    create = model_sub.add_parser(
        "create",
        parents=[common],
        help="Create a model provider from a JSON file (POST /api/model-providers)",
    )
    create.add_argument(
        "--file",
        required=True,
        help="Path to JSON file with model provider definition",
    )
    create.set_defaults(func=_cmd_models_create)

    delete = model_sub.add_parser(
        "delete",
        parents=[common],
        help="Delete a model provider (DELETE /api/model-providers/{name})",
    )
    delete.add_argument("name", help="Model provider name")
    delete.set_defaults(func=_cmd_models_delete)


def _add_run_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    runs = subparsers.add_parser("runs", help="Inspect runs (list/get/events)")
    run_sub = runs.add_subparsers(dest="run_command", required=True)

    list_cmd = run_sub.add_parser("list", parents=[common], help="List runs (GET /runs)")
    list_cmd.add_argument("--agent", help="Filter runs by agent name")
    list_cmd.set_defaults(func=_cmd_runs_list)

    get = run_sub.add_parser("get", parents=[common], help="Get details of a run (GET /runs/{id})")
    get.add_argument("run_id", help="Run identifier")
    get.set_defaults(func=_cmd_runs_get)

    events = run_sub.add_parser(
        "events",
        parents=[common],
        help="Show events for a run (GET /runs/{id}/events)",
    )
    events.add_argument("run_id", help="Run identifier")
    events.set_defaults(func=_cmd_runs_events)


def _add_approval_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    approvals = subparsers.add_parser(
        "approvals",
        help="Manage access request approvals (list/approve/reject)",
    )
    approval_sub = approvals.add_subparsers(dest="approval_command", required=True)

    list_cmd = approval_sub.add_parser(
        "list",
        parents=[common],
        help="List access requests (GET /governance/requests)",
    )
    list_cmd.set_defaults(func=_cmd_approvals_list)

    approve = approval_sub.add_parser(
        "approve",
        parents=[common],
        help="Approve an access request (POST /governance/requests/{id}/approve)",
    )
    approve.add_argument("request_id", help="Access request identifier")
    approve.set_defaults(func=_cmd_approvals_approve)

    reject = approval_sub.add_parser(
        "reject",
        parents=[common],
        help="Reject an access request (POST /governance/requests/{id}/reject)",
    )
    reject.add_argument("request_id", help="Access request identifier")
    reject.set_defaults(func=_cmd_approvals_reject)


def _add_deploy_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    deploy = subparsers.add_parser(
        "deploy",
        parents=[common],
        help="Deploy an agent (POST /api/deploy)",
        description=(
            "Deploy an agent by uploading source files and specifying tools and model. "
            "Example: `runagents deploy --name my-agent --file agent.py --tool echo-tool "
            "--model openai/gpt-4o-mini`."
        ),
    )
    deploy.add_argument("--name", required=True, help="Agent name")
    deploy.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Source file to deploy (repeatable)",
    )
    deploy.add_argument(
        "--tool",
        dest="tools",
        action="append",
        default=[],
        help="Required tool name (repeatable)",
    )
    deploy.add_argument(
        "--model",
        help="Model in provider/model format (e.g., openai/gpt-4o-mini)",
    )
    deploy.set_defaults(func=_cmd_deploy)


def _add_analyze_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
) -> None:
    analyze = subparsers.add_parser(
        "analyze",
        parents=[common],
        help="Analyze source files for tools, models, and secrets (POST /ingestion/analyze)",
        description=(
            "Analyze source files using the RunAgents ingestion service. Detects tools, "
            "model usages, secrets, outbound destinations, and requirements. "
            "Example: `runagents analyze --file agent.py`."
        ),
    )
    analyze.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Source file to analyze (repeatable)",
    )
    analyze.set_defaults(func=_cmd_analyze)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    record = load_config()
    return resolve_settings(
        record,
        endpoint_override=args.endpoint,
        api_key_override=args.api_key,
        output=args.output,
    )


def _unwrap(result: Result) -> bytes:
    if isinstance(result, ApiError):
        raise CommandError(str(result))
    return result.body


def _emit_machine(config: ClientConfig, data: bytes) -> bool:
    """Print ``data`` for json/yaml output; return False for table output."""
    if config.output == "json":
        render_raw(data)
        return True
    if config.output == "yaml":
        render_yaml(data)
        return True
    return False


def _segment(value: str) -> str:
    return quote(value, safe="")


def _read_source_files(paths: Sequence[str]) -> Dict[str, str]:
    files: Dict[str, str] = {}
    for raw_path in paths:
        path = Path(raw_path)
        try:
            files[path.name] = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise CommandError(f'failed to read file "{raw_path}": {exc}') from exc
    return files


def _read_json_file(raw_path: str) -> Any:
    try:
        content = Path(raw_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CommandError(f'failed to read file "{raw_path}": {exc}') from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise CommandError(f'invalid JSON in "{raw_path}": {exc}') from exc


def _cmd_version(args: argparse.Namespace) -> None:
    print(f"runagents version {__version__}")


def _cmd_config_set(args: argparse.Namespace) -> None:
    record = update_config(load_config(), args.key, args.value)
    save_config(record)
    print(f'Config "{args.key}" set successfully.')


def _cmd_config_get(args: argparse.Namespace) -> None:
    record = load_config()
    print(f"Endpoint: {record.endpoint}")
    if record.api_key:
        print(f"API Key:  {mask_api_key(record.api_key)}")
    else:
        print("API Key:  (not set)")


def _cmd_agents_list(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get("/api/agents"))
    if not _emit_machine(config, data):
        render_table(data, AGENTS_TABLE)


def _cmd_agents_get(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get(f"/api/agents/{_segment(args.namespace)}/{_segment(args.name)}"))
    if _emit_machine(config, data):
        return
    render_detail(
        decode_object(data),
        [("Name", "name"), ("Namespace", "namespace"), ("Status", "status"), ("Image", "image")],
        optional=[("Tools", "required_tools"), ("LLM", "llm_config")],
    )


def _cmd_agents_delete(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    _unwrap(client.delete(f"/api/agents/{_segment(args.namespace)}/{_segment(args.name)}"))
    print(f"Agent {args.namespace}/{args.name} deleted.")


def _cmd_tools_list(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get("/api/tools"))
    if not _emit_machine(config, data):
        render_table(data, TOOLS_TABLE)


def _cmd_tools_get(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get(f"/api/tools/{_segment(args.name)}"))
    if _emit_machine(config, data):
        return
    render_detail(
        decode_object(data),
        [
            ("Name", "name"),
            ("Topology", "topology"),
            ("Base URL", "base_url"),
            ("Access", "access_mode"),
            ("Status", "status"),
        ],
        optional=[("Auth", "auth")],
    )


def _cmd_tools_create(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    payload = _read_json_file(args.file)
    data = _unwrap(client.post("/api/tools", payload))
    if not _emit_machine(config, data):
        print("Tool created successfully.")


def _cmd_tools_delete(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    _unwrap(client.delete(f"/api/tools/{_segment(args.name)}"))
    print(f'Tool "{args.name}" deleted.')


def _cmd_models_list(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get("/api/model-providers"))
    if not _emit_machine(config, data):
        render_table(data, MODELS_TABLE)


def _cmd_models_get(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get(f"/api/model-providers/{_segment(args.name)}"))
    if _emit_machine(config, data):
        return
    render_detail(
        decode_object(data),
        [
            ("Name", "name"),
            ("Provider", "provider"),
            ("Models", "models"),
            ("Status", "status"),
            ("Endpoint", "endpoint"),
        ],
        formatters={"models": format_list},
    )


def _cmd_models_create(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    payload = _read_json_file(args.file)
    data = _unwrap(client.post("/api/model-providers", payload))
    if not _emit_machine(config, data):
        print("Model provider created successfully.")


def _cmd_models_delete(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    _unwrap(client.delete(f"/api/model-providers/{_segment(args.name)}"))
    print(f'Model provider "{args.name}" deleted.')


def _cmd_runs_list(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    params = {"agent": args.agent} if args.agent else None
    data = _unwrap(client.get("/runs", params=params))
    if not _emit_machine(config, data):
        render_table(data, RUNS_TABLE)


def _cmd_runs_get(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get(f"/runs/{_segment(args.run_id)}"))
    if _emit_machine(config, data):
        return
    render_detail(
        decode_object(data),
        [("ID", "id"), ("Agent", "agent"), ("Status", "status"), ("Created", "created_at")],
        optional=[("Blocked", "blocked_actions")],
    )


def _cmd_runs_events(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get(f"/runs/{_segment(args.run_id)}/events"))
    if not _emit_machine(config, data):
        render_table(data, EVENTS_TABLE)


def _cmd_approvals_list(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.get("/governance/requests"))
    if not _emit_machine(config, data):
        render_table(data, APPROVALS_TABLE)


def _cmd_approvals_approve(
    config: ClientConfig, client: APIClient, args: argparse.Namespace
) -> None:
    _unwrap(client.post(f"/governance/requests/{_segment(args.request_id)}/approve"))
    print(f'Access request "{args.request_id}" approved.')


def _cmd_approvals_reject(
    config: ClientConfig, client: APIClient, args: argparse.Namespace
) -> None:
    _unwrap(client.post(f"/governance/requests/{_segment(args.request_id)}/reject"))
    print(f'Access request "{args.request_id}" rejected.')


def _build_deploy_payload(
    name: str,
    source_files: Dict[str, str],
    tools: Sequence[str],
    model: Optional[str],
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "name": name,
        "source_files": source_files,
    }
    if tools:
        payload["required_tools"] = list(tools)
    if model:
        provider, sep, model_name = model.partition("/")
        if not sep:
            raise CommandError(
                "--model must be in provider/model format (e.g., openai/gpt-4o-mini)"
            )
        payload["llm_configs"] = [{"provider": provider, "model": model_name}]
    return payload


def _cmd_deploy(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    if not args.files:
        raise CommandError("at least one --file is required")
    payload = _build_deploy_payload(
        args.name,
        _read_source_files(args.files),
        args.tools,
        args.model,
    )
    data = _unwrap(client.post("/api/deploy", payload))
    if _emit_machine(config, data):
        return

    try:
        result = decode_object(data)
    except RenderError:
        print("Deploy request submitted.")
        return

    print(f'Agent "{args.name}" deployed successfully.')
    report_field(result, "Agent: ", "agent")
    report_field(result, "Tools created: ", "tools_created")


def _print_secrets(value: Any) -> None:
    print("\nSecrets Detected:")
    if not isinstance(value, list) or not value:
        print("  (none)")
        return
    lines: List[str] = []
    for item in value:
        if isinstance(item, dict):
            lines.append(
                f"  - {string_field(item, 'file')}:{string_field(item, 'line')} "
                f"{string_field(item, 'description')}"
            )
        else:
            lines.append(f"  - {display_value(item)}")
    print("\n".join(lines))


def _print_model_usages(value: Any) -> None:
    print("\nModel Usages:")
    items = value if isinstance(value, list) else []
    print_records([item for item in items if isinstance(item, dict)], MODEL_USAGES_TABLE)


def _cmd_analyze(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    if not args.files:
        raise CommandError("at least one --file is required")
    payload = {"files": _read_source_files(args.files)}
    data = _unwrap(client.post("/ingestion/analyze", payload))
    if _emit_machine(config, data):
        return

    result = decode_object(data)
    if "tools" in result:
        render_list_section("Detected Tools", result["tools"])
    if "model_usages" in result:
        _print_model_usages(result["model_usages"])
    if "secrets" in result:
        _print_secrets(result["secrets"])
    if "detected_requirements" in result:
        render_list_section("Detected Requirements", result["detected_requirements"])
    if "outbound_destinations" in result:
        render_list_section("Outbound Destinations", result["outbound_destinations"])
    if "entry_point" in result:
        print(f"\nEntry Point: {display_value(result['entry_point'])}")


def _cmd_starter_kit(config: ClientConfig, client: APIClient, args: argparse.Namespace) -> None:
    data = _unwrap(client.post("/api/starter-kit"))
    if _emit_machine(config, data):
        return

    print("Starter kit seeded successfully.")
    try:
        result = decode_object(data)
    except RenderError:
        return
    report_field(result, "Tools created:           ", "tools_created")
    report_field(result, "Model providers created:  ", "model_providers_created")
    report_field(result, "Message: ", "message")


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)
    configure_logging(args.log_level, args.log_format)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if not getattr(args, "needs_client", True):
            args.func(args)
            return

        config = _load_config(args)
        _logger.debug(
            "Resolved settings",
            extra={"endpoint": config.endpoint, "output": config.output, "command": args.command},
        )
        with APIClient(config.endpoint, config.api_key, timeout=config.timeout) as client:
            func: Handler = args.func
            func(config, client, args)
    except (CommandError, ConfigError, ClientError, RenderError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
