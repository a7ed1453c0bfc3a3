from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

pytest.importorskip("mcp")

from projects_vcs import server
from projects_vcs.audit import AuditLogger
from projects_vcs.engine import ProjectsEngine
from projects_vcs.runtime import RuntimeEngineDefaults


def _settings(root: Path, enabled: bool = True, capabilities: frozenset[str] | None = None) -> RuntimeEngineDefaults:
    return RuntimeEngineDefaults(
        root=root,
        enabled=enabled,
        default_branch="main",
        network_timeout_seconds=60.0,
        capabilities=frozenset({"projects.read", "projects.write"}) if capabilities is None else capabilities,
    )


@pytest.fixture()
def configured(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "projects"
    monkeypatch.setattr(server, "engine_settings", _settings(root))
    monkeypatch.setattr(server, "engine", ProjectsEngine(root))
    monkeypatch.setattr(server, "audit_logger", AuditLogger())
    return root


def test_server_tool_flow(configured: Path) -> None:
    created = server.projects_create(user="alice", id="demo", description="Server project")
    assert created["status"] == "success"
    assert created["correlation_id"]

    initialised = server.projects_update(user="alice", id="demo", initialise=True)
    assert initialised["status"] == "success"
    assert initialised["initialised"] is True

    activated = server.projects_update(user="alice", id="demo", active=True)
    assert activated["active"] is True

    (configured / "demo" / "notes.txt").write_text("hello\n", encoding="utf-8")
    staged = server.projects_stage(user="alice", paths=["notes.txt"])
    assert staged["status"] == "success"

    committed = server.projects_commit(user="alice", message="Add notes")
    assert committed["status"] == "success"
    assert committed["branch"] == "main"

    commits = server.projects_commits(user="alice", limit=10)
    assert [item["title"] for item in commits["commits"]] == ["Add notes", "Create project"]

    files = server.projects_files(user="alice", project_id="demo")
    assert {item["path"] for item in files["files"]} == {"notes.txt", "project.yaml"}

    branches = server.projects_branches(user="alice")
    assert branches["count"] == 1
    assert branches["branches"][0]["current"] is True

    listing = server.projects_list(user="alice")
    assert listing["projects"] == ["demo"]
    assert listing["active"] == "demo"


def test_server_errors_have_stable_codes(configured: Path) -> None:
    missing = server.projects_get(user="alice", id="ghost")
    assert missing["status"] == "error"
    assert missing["error_code"] == "not_found"
    assert missing["correlation_id"]

    no_project = server.projects_status(user="alice")
    assert no_project["error_code"] == "validation_error"

    server.projects_create(user="alice", id="demo")
    invalid = server.projects_merge_resolve(user="alice", project_id="demo", path="x", resolution="sideways")
    assert invalid["error_code"] == "validation_error"


def test_server_rejects_empty_user(configured: Path) -> None:
    response = server.projects_list(user="  ")
    assert response["error_code"] == "validation_error"


def test_server_disabled_feature_is_not_found(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(server, "engine_settings", _settings(tmp_path, enabled=False))
    monkeypatch.setattr(server, "engine", None)

    response = server.projects_list(user="alice")

    assert response["status"] == "error"
    assert response["error_code"] == "not_found"


def test_server_capability_gate(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        server, "engine_settings", _settings(tmp_path, capabilities=frozenset({"projects.read"}))
    )
    monkeypatch.setattr(server, "engine", ProjectsEngine(tmp_path))

    allowed = server.projects_list(user="alice")
    denied = server.projects_create(user="alice", id="demo")

    assert allowed["status"] == "success"
    assert denied["error_code"] == "permission_denied"
    assert not (tmp_path / "demo").exists()


def test_server_writes_audit_events(configured: Path, tmp_path: Path, monkeypatch) -> None:
    log_path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(server, "audit_logger", AuditLogger(log_path=log_path))

    server.projects_create(user="alice", id="demo", credential_secret="hunter2-secret")
    server.projects_get(user="bob", id="ghost")

    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [(event["operation"], event["user"], event["status"]) for event in events] == [
        ("projects_create", "alice", "success"),
        ("projects_get", "bob", "error"),
    ]
    assert events[0]["request"]["credential_secret"] == "[REDACTED]"
    assert events[0]["request"]["correlation_id"] == events[0]["response"]["correlation_id"]


def test_server_logs_tool_phases(configured: Path, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="projects_vcs.server"):
        server.projects_list(user="alice")

    phases = [
        json.loads(record.getMessage().split(" ", 1)[1])["phase"]
        for record in caplog.records
        if record.getMessage().startswith("projects_tool_phase ")
    ]
    assert phases == ["validation", "operation_execution", "total"]


def test_build_fastmcp_drops_unsupported_optional_kwargs(monkeypatch) -> None:
    calls: list[dict[str, object]] = []

    class FakeFastMCP:
        def __init__(self, **kwargs: object) -> None:
            calls.append(dict(kwargs))
            if "version" in kwargs:
                raise TypeError("FastMCP.__init__() got an unexpected keyword argument 'version'")

    monkeypatch.setattr(server, "FastMCP", FakeFastMCP)
    instance = server._build_fastmcp()

    assert isinstance(instance, FakeFastMCP)
    assert calls[0]["name"] == "projects-vcs"
    assert "version" not in calls[-1]
    assert calls[-1]["json_response"] is True


def test_build_fastmcp_re_raises_unrelated_type_errors(monkeypatch) -> None:
    class FakeFastMCP:
        def __init__(self, **kwargs: object) -> None:
            raise TypeError("boom")

    monkeypatch.setattr(server, "FastMCP", FakeFastMCP)
    with pytest.raises(TypeError, match="boom"):
        server._build_fastmcp()


def test_server_main_check_config_exits_without_running_transport(
    tmp_path: Path, monkeypatch, capsys
) -> None:
    calls: list[object] = []
    monkeypatch.setattr(server.mcp, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    monkeypatch.setattr(server, "engine_settings", None)
    monkeypatch.setattr(server, "engine", None)
    monkeypatch.setattr(server, "audit_logger", AuditLogger())
    monkeypatch.setattr(sys, "argv", ["projects-vcs-mcp", "--check-config", "--root", str(tmp_path)])

    server.main()

    assert "Configuration is valid." in capsys.readouterr().out
    assert calls == []
    assert server.engine_settings is not None
    assert server.engine_settings.root == tmp_path


def test_server_main_rejects_public_binding(monkeypatch) -> None:
    monkeypatch.setattr(
        sys,
        "argv",
        ["projects-vcs-mcp", "--transport", "streamable-http", "--host", "0.0.0.0", "--check-config"],
    )
    with pytest.raises(SystemExit):
        server.main()


def test_server_remote_status_needs_write_capability(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        server, "engine_settings", _settings(tmp_path, capabilities=frozenset({"projects.read"}))
    )
    monkeypatch.setattr(server, "engine", ProjectsEngine(tmp_path))
    monkeypatch.setattr(server, "audit_logger", AuditLogger())

    denied = server.projects_status(user="alice", project_id="demo", remote=True)
    local = server.projects_status(user="alice", project_id="demo")

    assert denied["error_code"] == "permission_denied"
    assert local["error_code"] == "not_found"
    assert server.NETWORK_TOOL_ANNOTATIONS["openWorldHint"] is True
