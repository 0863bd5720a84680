from __future__ import annotations

import json

from tern.engine.mcp.config import expand_vars, load_config_file, load_mcp_configs, parse_server_config
from tern.engine.mcp.transport import stdio_parameters
from tern.engine.models import TransportKind


def test_expand_vars_with_defaults():
    env = {"HOME": "/home/dev", "EMPTY": ""}
    assert expand_vars("${HOME}/src", env) == "/home/dev/src"
    assert expand_vars("${MISSING:-fallback}", env) == "fallback"
    assert expand_vars("${EMPTY:-fallback}", env) == "fallback"
    assert expand_vars("x${MISSING}y", env) == "xy"
    assert expand_vars("$HOME stays literal", env) == "$HOME stays literal"


def test_command_entry_is_local_process():
    cfg = parse_server_config("fs", {"command": "npx", "args": ["-y", "server", 3]})
    assert cfg.transport is TransportKind.LOCAL_PROCESS
    assert cfg.args == ["-y", "server", "3"]
    assert cfg.sse is False


def test_url_without_command_is_remote_stream():
    cfg = parse_server_config("gh", {"url": "https://example.test/mcp"})
    assert cfg.transport is TransportKind.REMOTE_STREAM
    assert cfg.url == "https://example.test/mcp"


def test_declared_types():
    http = parse_server_config("a", {"type": "http", "url": "https://a.test"})
    sse = parse_server_config("b", {"type": "sse", "url": "https://b.test/sse"})
    stdio = parse_server_config("c", {"type": "stdio", "command": "srv", "url": "ignored"})
    assert http.transport is TransportKind.REMOTE_STREAM and not http.sse
    assert sse.transport is TransportKind.REMOTE_STREAM and sse.sse
    assert stdio.transport is TransportKind.LOCAL_PROCESS


def test_unusable_entries_are_skipped():
    assert parse_server_config("a", "npx server") is None
    assert parse_server_config("b", {"type": "carrier-pigeon", "url": "x"}) is None
    assert parse_server_config("c", {"type": "stdio"}) is None
    assert parse_server_config("d", {"type": "http"}) is None
    assert parse_server_config("e", {}) is None


def test_server_names_with_tool_separator_are_skipped():
    assert parse_server_config("a__b", {"command": "server"}) is None
    assert parse_server_config("a_b", {"command": "server"}) is not None


def test_env_and_headers_are_expanded():
    env = {"TOKEN": "s3cret"}
    cfg = parse_server_config(
        "gh",
        {
            "url": "https://example.test",
            "headers": {"Authorization": "Bearer ${TOKEN}"},
            "env": {"LEVEL": "${LEVEL:-debug}"},
        },
        env,
    )
    assert cfg.headers == {"Authorization": "Bearer s3cret"}
    assert cfg.env == {"LEVEL": "debug"}


def test_stdio_parameters_overlay_process_env(monkeypatch):
    monkeypatch.setenv("TERN_TEST_INHERITED", "yes")
    cfg = parse_server_config("fs", {"command": "srv", "env": {"EXTRA": "1"}, "cwd": "/tmp"})
    params = stdio_parameters(cfg)
    assert params.command == "srv"
    assert params.env["TERN_TEST_INHERITED"] == "yes"
    assert params.env["EXTRA"] == "1"


def test_load_config_file_accepts_servers_key(tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({"servers": {"fs": {"command": "srv"}}}))
    assert list(load_config_file(path)) == ["fs"]


def test_load_config_file_handles_bad_json(tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text("{oops")
    assert load_config_file(path) == {}
    assert load_config_file(tmp_path / "missing.json") == {}


def test_project_config_overrides_user_config(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    (home / "mcp.json").write_text(json.dumps({"mcpServers": {
        "fs": {"command": "user-fs"},
        "docs": {"url": "https://docs.test"},
    }}))
    project = tmp_path / "project"
    (project / ".tern").mkdir(parents=True)
    (project / ".tern" / "mcp.json").write_text(json.dumps({"mcpServers": {
        "fs": {"command": "project-fs"},
    }}))

    configs = load_mcp_configs(project, home, env={})

    assert set(configs) == {"fs", "docs"}
    assert configs["fs"].command == "project-fs"
