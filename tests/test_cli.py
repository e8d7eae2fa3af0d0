import functools
import json
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from runagents_cli import __version__, cli
from runagents_cli.cli import (
    CommandError,
    _build_deploy_payload,
    _cmd_agents_delete,
    _cmd_agents_get,
    _cmd_agents_list,
    _cmd_analyze,
    _cmd_approvals_approve,
    _cmd_deploy,
    _cmd_models_get,
    _cmd_runs_events,
    _cmd_runs_list,
    _cmd_starter_kit,
    _cmd_tools_create,
)
from runagents_cli.client import APIClient
from runagents_cli.config import ClientConfig, ConfigRecord, load_config, save_config


def _config(output: str = "table") -> ClientConfig:
    return ClientConfig(endpoint="http://test", api_key="", output=output)


def _client_with_capture(
    captured: List[httpx.Request],
    status: int = 200,
    response_json: Any = None,
    content: Optional[bytes] = None,
) -> APIClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        if content is not None:
            return httpx.Response(status, content=content)
        return httpx.Response(status, json=response_json if response_json is not None else [])

    return APIClient("http://test", transport=httpx.MockTransport(_handler))


@pytest.fixture
def home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setattr("runagents_cli.config.Path.home", lambda: tmp_path)
    return tmp_path


def test_agents_list_table(capsys: pytest.CaptureFixture[str]) -> None:
    captured: List[httpx.Request] = []
    agents = [
        {"name": "support-bot", "status": "Running", "image": "registry/support:1"},
        {"name": "triage", "status": "Pending"},
    ]

    with _client_with_capture(captured, response_json=agents) as client:
        _cmd_agents_list(_config(), client, Namespace())

    assert captured[0].method == "GET"
    assert captured[0].url.path == "/api/agents"
    lines = [line.rstrip() for line in capsys.readouterr().out.splitlines()]
    assert lines[0].split() == ["NAME", "STATUS", "IMAGE"]
    assert lines[1].split() == ["support-bot", "Running", "registry/support:1"]
    assert lines[2].split() == ["triage", "Pending"]


def test_agents_list_json_passthrough(capsys: pytest.CaptureFixture[str]) -> None:
    body = b'[ {"name": "support-bot",  "extra": 1} ]'

    with _client_with_capture([], content=body) as client:
        _cmd_agents_list(_config("json"), client, Namespace())

    assert capsys.readouterr().out == '[ {"name": "support-bot",  "extra": 1} ]\n'


def test_agents_list_yaml(capsys: pytest.CaptureFixture[str]) -> None:
    with _client_with_capture([], response_json=[{"name": "a"}]) as client:
        _cmd_agents_list(_config("yaml"), client, Namespace())

    assert capsys.readouterr().out == "- name: a\n"


def test_agents_list_empty(capsys: pytest.CaptureFixture[str]) -> None:
    with _client_with_capture([], response_json=[]) as client:
        _cmd_agents_list(_config(), client, Namespace())

    assert capsys.readouterr().out == "No agents found.\n"


def test_agents_get_detail(capsys: pytest.CaptureFixture[str]) -> None:
    captured: List[httpx.Request] = []
    agent = {
        "name": "support-bot",
        "namespace": "default",
        "status": "Running",
        "image": "registry/support:1",
        "required_tools": ["echo-tool"],
    }

    with _client_with_capture(captured, response_json=agent) as client:
        _cmd_agents_get(_config(), client, Namespace(namespace="default", name="support-bot"))

    assert captured[0].url.path == "/api/agents/default/support-bot"
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "Name:      support-bot",
        "Namespace: default",
        "Status:    Running",
        "Image:     registry/support:1",
        'Tools:     ["echo-tool"]',
    ]


def test_agents_get_not_found() -> None:
    with _client_with_capture([], status=404, content=b'{"error":"not found"}') as client:
        with pytest.raises(CommandError) as excinfo:
            _cmd_agents_get(_config(), client, Namespace(namespace="default", name="ghost"))

    assert "404" in str(excinfo.value)
    assert "not found" in str(excinfo.value)


def test_agents_get_malformed_body() -> None:
    with _client_with_capture([], content=b"<html>") as client:
        with pytest.raises(cli.RenderError, match="failed to parse response"):
            _cmd_agents_get(_config(), client, Namespace(namespace="default", name="x"))


def test_agents_get_null_body_shows_blank_fields(capsys: pytest.CaptureFixture[str]) -> None:
    with _client_with_capture([], content=b"null") as client:
        _cmd_agents_get(_config(), client, Namespace(namespace="default", name="x"))

    out = [line.rstrip() for line in capsys.readouterr().out.splitlines()]
    assert out == ["Name:", "Namespace:", "Status:", "Image:"]


def test_run_events_null_body_is_empty(capsys: pytest.CaptureFixture[str]) -> None:
    with _client_with_capture([], content=b"null") as client:
        _cmd_runs_events(_config(), client, Namespace(run_id="run-1"))

    assert capsys.readouterr().out == "No events found.\n"


def test_path_segments_are_escaped() -> None:
    captured: List[httpx.Request] = []

    with _client_with_capture(captured, status=204, content=b"") as client:
        _cmd_agents_delete(_config(), client, Namespace(namespace="team a", name="x/y"))

    assert captured[0].method == "DELETE"
    assert captured[0].url.raw_path == b"/api/agents/team%20a/x%2Fy"


def test_delete_confirms_in_json_mode(capsys: pytest.CaptureFixture[str]) -> None:
    with _client_with_capture([], status=204, content=b"") as client:
        _cmd_agents_delete(_config("json"), client, Namespace(namespace="default", name="bot"))

    assert capsys.readouterr().out == "Agent default/bot deleted.\n"


def test_models_get_joins_models(capsys: pytest.CaptureFixture[str]) -> None:
    provider = {"name": "openai", "provider": "openai", "models": ["gpt-4o", "gpt-4o-mini"]}

    with _client_with_capture([], response_json=provider) as client:
        _cmd_models_get(_config(), client, Namespace(name="openai"))

    out = capsys.readouterr().out.splitlines()
    assert "Models:   gpt-4o, gpt-4o-mini" in out
    assert "Endpoint:" in [line.rstrip() for line in out]


def test_runs_list_agent_filter() -> None:
    captured: List[httpx.Request] = []

    with _client_with_capture(captured, response_json=[]) as client:
        _cmd_runs_list(_config(), client, Namespace(agent="support-bot"))

    assert captured[0].url.path == "/runs"
    assert captured[0].url.params["agent"] == "support-bot"


def test_runs_list_without_filter() -> None:
    captured: List[httpx.Request] = []

    with _client_with_capture(captured, response_json=[]) as client:
        _cmd_runs_list(_config(), client, Namespace(agent=None))

    assert str(captured[0].url) == "http://test/runs"


def test_run_events_table(capsys: pytest.CaptureFixture[str]) -> None:
    events = [{"sequence": 1, "type": "tool_call", "message": "called echo", "timestamp": "t0"}]

    with _client_with_capture([], response_json=events) as client:
        _cmd_runs_events(_config(), client, Namespace(run_id="run-1"))

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["SEQ", "TYPE", "MESSAGE", "TIMESTAMP"]
    assert lines[1].split() == ["1", "tool_call", "called", "echo", "t0"]


def test_approve_posts_without_body(capsys: pytest.CaptureFixture[str]) -> None:
    captured: List[httpx.Request] = []

    with _client_with_capture(captured, response_json={"status": "approved"}) as client:
        _cmd_approvals_approve(_config(), client, Namespace(request_id="req-7"))

    request = captured[0]
    assert request.method == "POST"
    assert request.url.path == "/governance/requests/req-7/approve"
    assert request.content == b""
    assert "content-type" not in request.headers
    assert capsys.readouterr().out == 'Access request "req-7" approved.\n'


def test_tools_create_posts_file_contents(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    definition = {"name": "echo-tool", "base_url": "http://echo", "access_mode": "open"}
    path = tmp_path / "tool.json"
    path.write_text(json.dumps(definition), encoding="utf-8")
    captured: List[httpx.Request] = []

    with _client_with_capture(captured, status=201, response_json=definition) as client:
        _cmd_tools_create(_config(), client, Namespace(file=str(path)))

    assert captured[0].url.path == "/api/tools"
    assert json.loads(captured[0].content) == definition
    assert capsys.readouterr().out == "Tool created successfully.\n"


def test_tools_create_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "tool.json"
    path.write_text("{broken", encoding="utf-8")
    captured: List[httpx.Request] = []

    with _client_with_capture(captured) as client:
        with pytest.raises(CommandError, match="invalid JSON"):
            _cmd_tools_create(_config(), client, Namespace(file=str(path)))

    assert captured == []


def test_deploy_payload(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "agent.py"
    source.write_text("print('hello')\n", encoding="utf-8")
    captured: List[httpx.Request] = []
    args = Namespace(
        name="my-agent",
        files=[str(source)],
        tools=["echo-tool"],
        model="openai/gpt-4o-mini",
    )

    with _client_with_capture(captured, response_json={"agent": "my-agent", "tools_created": []}) as client:
        _cmd_deploy(_config(), client, args)

    assert captured[0].url.path == "/api/deploy"
    assert json.loads(captured[0].content) == {
        "name": "my-agent",
        "source_files": {"agent.py": "print('hello')\n"},
        "required_tools": ["echo-tool"],
        "llm_configs": [{"provider": "openai", "model": "gpt-4o-mini"}],
    }
    assert capsys.readouterr().out.splitlines() == [
        'Agent "my-agent" deployed successfully.',
        "Agent: my-agent",
        "Tools created: []",
    ]


def test_deploy_payload_omits_optional_fields() -> None:
    payload = _build_deploy_payload("bot", {"a.py": ""}, [], None)
    assert payload == {"name": "bot", "source_files": {"a.py": ""}}


def test_deploy_model_keeps_nested_slashes() -> None:
    payload = _build_deploy_payload("bot", {}, [], "bedrock/anthropic/claude")
    assert payload["llm_configs"] == [{"provider": "bedrock", "model": "anthropic/claude"}]


def test_deploy_rejects_bad_model_before_request(tmp_path: Path) -> None:
    source = tmp_path / "agent.py"
    source.write_text("", encoding="utf-8")
    captured: List[httpx.Request] = []
    args = Namespace(name="bot", files=[str(source)], tools=[], model="gpt-4o")

    with _client_with_capture(captured) as client:
        with pytest.raises(CommandError, match="provider/model"):
            _cmd_deploy(_config(), client, args)

    assert captured == []


def test_deploy_requires_files() -> None:
    with _client_with_capture([]) as client:
        with pytest.raises(CommandError, match="at least one --file"):
            _cmd_deploy(_config(), client, Namespace(name="bot", files=[], tools=[], model=None))


def test_deploy_missing_file(tmp_path: Path) -> None:
    args = Namespace(name="bot", files=[str(tmp_path / "nope.py")], tools=[], model=None)
    with _client_with_capture([]) as client:
        with pytest.raises(CommandError, match="failed to read file"):
            _cmd_deploy(_config(), client, args)


def test_deploy_non_json_response(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "agent.py"
    source.write_text("", encoding="utf-8")
    args = Namespace(name="bot", files=[str(source)], tools=[], model=None)

    with _client_with_capture([], status=202, content=b"accepted") as client:
        _cmd_deploy(_config(), client, args)

    assert capsys.readouterr().out == "Deploy request submitted.\n"


def test_analyze_sends_files_by_basename(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    nested = tmp_path / "src"
    nested.mkdir()
    source = nested / "agent.py"
    source.write_text("import openai\n", encoding="utf-8")
    captured: List[httpx.Request] = []
    analysis: Dict[str, Any] = {
        "tools": ["http_get"],
        "model_usages": [{"role": "chat", "variable_name": "gpt-4o", "file": "agent.py", "line": 3}],
        "secrets": [{"file": "agent.py", "line": 9, "description": "OpenAI key"}],
        "detected_requirements": [],
        "entry_point": "agent.py",
    }

    with _client_with_capture(captured, response_json=analysis) as client:
        _cmd_analyze(_config(), client, Namespace(files=[str(source)]))

    assert captured[0].url.path == "/ingestion/analyze"
    assert json.loads(captured[0].content) == {"files": {"agent.py": "import openai\n"}}

    lines = [line.rstrip() for line in capsys.readouterr().out.splitlines()]
    assert "Detected Tools:" in lines
    assert "  - http_get" in lines
    assert "Model Usages:" in lines
    usage_header = lines.index("Model Usages:") + 1
    assert lines[usage_header].split() == ["ROLE", "MODEL", "FILE", "LINE"]
    assert lines[usage_header + 1].split() == ["chat", "gpt-4o", "agent.py", "3"]
    assert "  - agent.py:9 OpenAI key" in lines
    assert lines[lines.index("Detected Requirements:") + 1] == "  (none)"
    assert "Outbound Destinations:" not in lines
    assert lines[-1] == "Entry Point: agent.py"


def test_starter_kit(capsys: pytest.CaptureFixture[str]) -> None:
    captured: List[httpx.Request] = []
    result = {"tools_created": ["echo-tool"], "model_providers_created": ["playground-llm"]}

    with _client_with_capture(captured, response_json=result) as client:
        _cmd_starter_kit(_config(), client, Namespace())

    assert captured[0].content == b""
    assert capsys.readouterr().out.splitlines() == [
        "Starter kit seeded successfully.",
        'Tools created:           ["echo-tool"]',
        'Model providers created:  ["playground-llm"]',
    ]


def test_main_config_set_and_get(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["config", "set", "endpoint", "https://x.test"])
    cli.main(["config", "set", "api-key", "abcd1234efgh"])

    assert load_config() == ConfigRecord(endpoint="https://x.test", api_key="abcd1234efgh")

    cli.main(["config", "get"])
    out = capsys.readouterr().out.splitlines()
    assert out[-2:] == ["Endpoint: https://x.test", "API Key:  abcd****efgh"]


def test_main_config_get_without_key(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["config", "get"])
    assert capsys.readouterr().out.splitlines() == [
        "Endpoint: http://localhost:8092",
        "API Key:  (not set)",
    ]


def test_main_config_set_unknown_key(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["config", "set", "colour", "blue"])

    assert excinfo.value.code == 1
    assert "unknown config key" in capsys.readouterr().err


def test_main_version(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["version"])
    assert capsys.readouterr().out == f"runagents version {__version__}\n"


def test_main_without_command_exits_nonzero(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 1


def _patch_transport(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    monkeypatch.setattr(
        cli,
        "APIClient",
        functools.partial(APIClient, transport=httpx.MockTransport(handler)),
    )


def test_main_uses_stored_config(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    save_config(ConfigRecord(endpoint="https://stored.test", api_key="stored-key"))
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json=[])

    _patch_transport(monkeypatch, _handler)
    cli.main(["tools", "list"])

    assert str(captured[0].url) == "https://stored.test/api/tools"
    assert captured[0].headers["authorization"] == "Bearer stored-key"
    assert capsys.readouterr().out == "No tools found.\n"


def test_main_flags_after_subcommand_override_config(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    save_config(ConfigRecord(endpoint="https://stored.test", api_key="stored-key"))
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b'[{"id":"req-1"}]')

    _patch_transport(monkeypatch, _handler)
    cli.main(["approvals", "list", "-o", "json", "--endpoint", "https://flag.test", "--api-key", "k2"])

    assert str(captured[0].url) == "https://flag.test/governance/requests"
    assert captured[0].headers["authorization"] == "Bearer k2"
    assert capsys.readouterr().out == '[{"id":"req-1"}]\n'


def test_main_global_flags_before_subcommand(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"[]")

    _patch_transport(monkeypatch, _handler)
    cli.main(["--output", "json", "models", "list"])

    assert str(captured[0].url) == "http://localhost:8092/api/model-providers"
    assert "authorization" not in captured[0].headers
    assert capsys.readouterr().out == "[]\n"


def test_main_reports_api_errors(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_transport(monkeypatch, lambda request: httpx.Response(500, content=b"internal"))

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["runs", "get", "run-1"])

    assert excinfo.value.code == 1
    assert capsys.readouterr().err == "Error: API error (HTTP 500): internal\n"


def test_main_reports_network_errors(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    _patch_transport(monkeypatch, _handler)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["agents", "list"])

    assert excinfo.value.code == 1
    assert "request failed: Connection refused" in capsys.readouterr().err


def test_main_reports_missing_endpoint_before_request(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    save_config(ConfigRecord(endpoint=""))
    captured: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"[]")

    _patch_transport(monkeypatch, _handler)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["agents", "list"])

    assert excinfo.value.code == 1
    assert "no endpoint configured" in capsys.readouterr().err
    assert captured == []


def test_main_reports_corrupt_config(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = home / ".runagents" / "config.json"
    path.parent.mkdir()
    path.write_text("{", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["agents", "list"])

    assert excinfo.value.code == 1
    assert "failed to parse config file" in capsys.readouterr().err
