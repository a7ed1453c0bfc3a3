from __future__ import annotations

from pathlib import Path

import git
import pytest

from projects_vcs.engine import ProjectsEngine
from projects_vcs.models import (
    CommitRequest,
    CreateProjectRequest,
    ProjectUpdateRequest,
    PushRequest,
    RemoteSpec,
)

USER = "alice"


@pytest.fixture(autouse=True)
def _isolated_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")


@pytest.fixture()
def engine(tmp_path: Path) -> ProjectsEngine:
    return ProjectsEngine(tmp_path / "projects")


@pytest.fixture()
def project(engine: ProjectsEngine) -> str:
    """An initialised project named `demo` with one commit."""
    engine.create_project(USER, CreateProjectRequest(id="demo", description="Demo project"))
    engine.update_project(USER, "demo", ProjectUpdateRequest.from_body({"initialise": True}))
    return "demo"


@pytest.fixture()
def bare_remote(tmp_path: Path) -> Path:
    path = tmp_path / "remote.git"
    repo = git.Repo.init(str(path), bare=True)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    repo.close()
    return path


@pytest.fixture()
def published(engine: ProjectsEngine, project: str, bare_remote: Path) -> str:
    """`demo` with origin pointing at the bare remote and main pushed with tracking."""
    engine.add_remote(USER, project, RemoteSpec(name="origin", url=str(bare_remote)))
    engine.push(USER, project, PushRequest(remote="origin", track=True))
    return project


def write(engine: ProjectsEngine, project_id: str, rel_path: str, content: str) -> Path:
    path = engine.registry.project_path(project_id) / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def commit_file(engine: ProjectsEngine, project_id: str, rel_path: str, content: str, message: str) -> str:
    write(engine, project_id, rel_path, content)
    engine.stage_file(USER, project_id, [rel_path])
    return engine.commit(USER, project_id, CommitRequest(message=message)).sha


def clone_project(engine: ProjectsEngine, project_id: str, remote: Path) -> str:
    engine.create_project(
        USER,
        CreateProjectRequest(id=project_id, git={"remotes": {"origin": {"url": str(remote)}}}),
    )
    return project_id


def remote_head(remote: Path, branch: str = "main") -> str:
    repo = git.Repo(str(remote))
    try:
        return repo.commit(branch).hexsha
    finally:
        repo.close()
