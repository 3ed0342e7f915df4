import asyncio
import io
import json

import httpx
import pytest
from click.testing import CliRunner
from rich.console import Console

import dispatch_cli
import reporting
import request_dispatcher
from request_dispatcher import RequestConfig, RequestDispatcher, init_defaults


@pytest.fixture
def sent(monkeypatch):
    calls = []
    clients = []

    def handler(request):
        calls.append(request)
        if request.url.path == "/fail":
            return httpx.Response(500)
        body = json.loads(request.content) if request.content else None
        return httpx.Response(200, json={"method": request.method, "body": body})

    def make_dispatcher():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return RequestDispatcher(client, defaults=RequestConfig(endpoint="https://api.example/items"))

    monkeypatch.setattr(dispatch_cli, "RequestDispatcher", make_dispatcher)
    yield calls
    for client in clients:
        asyncio.run(client.aclose())


@pytest.mark.parametrize("count", ["0", "-3", "abc"])
def test_invalid_count_halts_before_dispatch(sent, count):
    result = CliRunner().invoke(dispatch_cli.cli, ["run", "--", count])
    assert result.exit_code == 2
    assert sent == []


def test_run_both_policies(sent):
    result = CliRunner().invoke(dispatch_cli.cli, ["run", "3"])
    assert result.exit_code == 0, result.output
    assert len(sent) == 6
    assert "Results (all)" in result.output
    assert "Results (settled)" in result.output
    assert "All 3 requests completed!" in result.output


def test_run_single_policy_with_overrides(sent):
    result = CliRunner().invoke(dispatch_cli.cli, [
        "run", "2", "--policy", "all", "--method", "post", "--body", '{"n": 7}', "--token", "abc",
    ])
    assert result.exit_code == 0, result.output
    assert [r.method for r in sent] == ["POST", "POST"]
    assert all(json.loads(r.content) == {"n": 7} for r in sent)
    assert all(r.headers["authorization"] == "Bearer abc" for r in sent)


def test_run_with_payloads_file_and_save(sent, tmp_path):
    payloads = tmp_path / "payloads.json"
    payloads.write_text(json.dumps([
        {"method": "PUT", "body": {"n": 1}},
        {"endpoint": "https://api.example/fail"},
    ]))
    out = tmp_path / "results.json"
    result = CliRunner().invoke(dispatch_cli.cli, [
        "run", "3", "--policy", "all", "--payloads", str(payloads), "--save", str(out), "--pretty",
    ])
    assert result.exit_code == 0, result.output
    saved = json.loads(out.read_text())
    assert saved["metadata"]["totalRequests"] == 3
    assert saved["metadata"]["successfulRequests"] == 1
    assert [r["success"] for r in saved["results"]] == [True, False, False]
    assert '"requestId": 3' in result.output


def test_bad_payloads_file_is_a_config_error(sent, tmp_path):
    payloads = tmp_path / "payloads.json"
    payloads.write_text(json.dumps({"method": "PUT"}))
    result = CliRunner().invoke(dispatch_cli.cli, ["run", "2", "--payloads", str(payloads)])
    assert result.exit_code == 1
    assert "Configuration error" in result.output
    assert sent == []


def test_defaults_command():
    result = CliRunner().invoke(dispatch_cli.cli, ["defaults"])
    assert result.exit_code == 0
    assert "Endpoint:" in result.output


def test_failed_save_exits_with_error(sent, tmp_path):
    target = tmp_path / "missing" / "results.json"
    result = CliRunner().invoke(dispatch_cli.cli, ["run", "2", "--policy", "all", "--save", str(target)])
    assert result.exit_code == 1
    assert "Failed to save results" in result.output
    assert not target.exists()


def test_pretty_preview_truncates_data(sent, monkeypatch):
    wide = Console(file=io.StringIO(), width=1000, theme=reporting.custom_theme)
    monkeypatch.setattr(reporting, "console", wide)
    blob = "z" * 300
    result = CliRunner().invoke(dispatch_cli.cli, [
        "run", "1", "--policy", "all", "--method", "POST", "--body", json.dumps({"blob": blob}),
        "--pretty", "--preview",
    ])
    assert result.exit_code == 0, result.output
    text = wide.file.getvalue()
    assert '"dataPreview"' in text
    assert '..."' in text
    assert blob not in text


def test_defaults_command_masks_token(monkeypatch):
    token = "abcdefghijklmnopqrstuvwxyz0123456789ABCD"
    monkeypatch.setattr(request_dispatcher, "DEFAULT_TOKEN", token)
    init_defaults()
    try:
        result = CliRunner().invoke(dispatch_cli.cli, ["defaults"])
    finally:
        monkeypatch.undo()
        init_defaults()
    assert result.exit_code == 0
    assert "abcdefghijklmnopqrst..." in result.output
    assert token not in result.output
