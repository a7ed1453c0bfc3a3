from __future__ import annotations

import json
from pathlib import Path

import pytest

from projects_vcs.cli import main


def _run_cli_json(args: list[str], capsys) -> dict:
    exit_code = main(args + ["--json"])
    assert exit_code in (0, 1)
    output = capsys.readouterr().out
    return {"exit_code": exit_code, "payload": json.loads(output)}


@pytest.fixture()
def root(tmp_path: Path) -> Path:
    return tmp_path / "projects"


def _base(root: Path) -> list[str]:
    return ["--root", str(root), "--user", "alice"]


def test_cli_create_initialise_commit_flow(root: Path, capsys) -> None:
    created = _run_cli_json(["create", "demo", "--description", "CLI project", *_base(root)], capsys)
    assert created["exit_code"] == 0
    assert created["payload"]["status"] == "success"
    assert created["payload"]["id"] == "demo"
    assert created["payload"]["initialised"] is False

    initialised = _run_cli_json(["update", "demo", "--initialise", *_base(root)], capsys)
    assert initialised["exit_code"] == 0
    assert initialised["payload"]["initialised"] is True

    (root / "demo" / "notes.txt").write_text("hello\n", encoding="utf-8")
    staged = _run_cli_json(["stage", "-p", "demo", "notes.txt", *_base(root)], capsys)
    assert staged["exit_code"] == 0

    status = _run_cli_json(["status", "-p", "demo", *_base(root)], capsys)
    assert status["payload"]["staged"] == ["notes.txt"]

    committed = _run_cli_json(["commit", "-p", "demo", "-m", "Add notes", *_base(root)], capsys)
    assert committed["exit_code"] == 0
    assert committed["payload"]["branch"] == "main"

    log = _run_cli_json(["log", "-p", "demo", "-n", "5", *_base(root)], capsys)
    assert [commit["title"] for commit in log["payload"]["commits"]] == ["Add notes", "Create project"]

    content = _run_cli_json(["file-get", "-p", "demo", "notes.txt", "--tree", "HEAD", *_base(root)], capsys)
    assert content["payload"]["content"] == "hello\n"


def test_cli_errors_use_stable_payload(root: Path, capsys) -> None:
    result = _run_cli_json(["get", "ghost", *_base(root)], capsys)

    assert result["exit_code"] == 1
    assert result["payload"]["status"] == "error"
    assert result["payload"]["error_code"] == "not_found"


def test_cli_rejects_credential_remote(root: Path, capsys) -> None:
    result = _run_cli_json(
        ["create", "demo", "--remote", "origin=https://bob:pw@example.com/r.git", *_base(root)],
        capsys,
    )

    assert result["exit_code"] == 1
    assert result["payload"]["error_code"] == "validation_error"
    assert not (root / "demo").exists()


def test_cli_respects_capability_grant(root: Path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("PROJECTS_VCS_CAPABILITIES", "projects.read")

    listing = _run_cli_json(["list", *_base(root)], capsys)
    denied = _run_cli_json(["create", "demo", *_base(root)], capsys)

    assert listing["exit_code"] == 0
    assert listing["payload"]["projects"] == []
    assert denied["exit_code"] == 1
    assert denied["payload"]["error_code"] == "permission_denied"


def test_cli_disabled_feature_is_not_found(root: Path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("PROJECTS_VCS_ENABLED", "false")

    result = _run_cli_json(["list", *_base(root)], capsys)

    assert result["exit_code"] == 1
    assert result["payload"]["error_code"] == "not_found"


def test_cli_text_output(root: Path, capsys) -> None:
    exit_code = main(["create", "demo", *_base(root)])
    output = capsys.readouterr().out

    assert exit_code == 0
    assert "[SUCCESS] Project 'demo' created" in output
    assert "id: demo" in output


def test_cli_update_rejects_mixed_intents(root: Path, capsys) -> None:
    _run_cli_json(["create", "demo", *_base(root)], capsys)

    result = _run_cli_json(["update", "demo", "--active", "--summary", "x", *_base(root)], capsys)

    assert result["exit_code"] == 1
    assert result["payload"]["error_code"] == "validation_error"


def test_cli_remote_status_needs_write_capability(root: Path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("PROJECTS_VCS_CAPABILITIES", "projects.read")

    denied = _run_cli_json(["status", "--remote", "--project", "demo", *_base(root)], capsys)

    assert denied["exit_code"] == 1
    assert denied["payload"]["error_code"] == "permission_denied"
