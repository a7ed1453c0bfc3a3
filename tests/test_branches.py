from __future__ import annotations

from pathlib import Path

import pytest

from conftest import USER, clone_project, commit_file, write
from projects_vcs.engine import ProjectsEngine
from projects_vcs.errors import ErrorCode, ProjectsError
from projects_vcs.models import BranchRequest, PushRequest
from projects_vcs.remotes import RemoteSync


def test_create_and_switch_branches(engine: ProjectsEngine, project: str) -> None:
    created = engine.set_branch(USER, project, BranchRequest(name="feature", create=True))

    assert created.name == "feature"
    assert created.current is True
    names = [branch.name for branch in engine.get_branches(USER, project)]
    assert names == ["feature", "main"]

    engine.set_branch(USER, project, BranchRequest(name="main"))
    assert engine.get_status(USER, project).branch == "main"


def test_switch_to_missing_branch_without_create(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.set_branch(USER, project, BranchRequest(name="nowhere"))
    assert exc_info.value.code == ErrorCode.NOT_FOUND


def test_invalid_branch_name_is_rejected(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.set_branch(USER, project, BranchRequest(name="bad..name", create=True))
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def test_dirty_checkout_is_refused(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "notes.txt", "main\n", "Add notes")
    engine.set_branch(USER, project, BranchRequest(name="feature", create=True))
    commit_file(engine, project, "notes.txt", "feature\n", "Change notes")
    engine.set_branch(USER, project, BranchRequest(name="main"))
    write(engine, project, "notes.txt", "local edit\n")

    with pytest.raises(ProjectsError) as exc_info:
        engine.set_branch(USER, project, BranchRequest(name="feature"))

    assert exc_info.value.code == ErrorCode.DIRTY_CHECKOUT
    assert engine.get_status(USER, project).branch == "main"


def test_delete_merged_branch(engine: ProjectsEngine, project: str) -> None:
    engine.set_branch(USER, project, BranchRequest(name="feature", create=True))
    engine.set_branch(USER, project, BranchRequest(name="main"))

    response = engine.delete_branch(USER, project, "feature")

    assert response.status == "success"
    assert [branch.name for branch in engine.get_branches(USER, project)] == ["main"]


def test_delete_unmerged_branch_requires_force(engine: ProjectsEngine, project: str) -> None:
    engine.set_branch(USER, project, BranchRequest(name="feature", create=True))
    commit_file(engine, project, "feature.txt", "x\n", "Feature work")
    engine.set_branch(USER, project, BranchRequest(name="main"))

    with pytest.raises(ProjectsError) as exc_info:
        engine.delete_branch(USER, project, "feature")
    assert exc_info.value.code == ErrorCode.CONFLICT

    engine.delete_branch(USER, project, "feature", force=True)
    assert [branch.name for branch in engine.get_branches(USER, project)] == ["main"]


def test_delete_branch_contained_in_another_branch(engine: ProjectsEngine, project: str) -> None:
    engine.set_branch(USER, project, BranchRequest(name="feature", create=True))
    commit_file(engine, project, "feature.txt", "x\n", "Feature work")
    engine.set_branch(USER, project, BranchRequest(name="keeper", create=True))
    engine.set_branch(USER, project, BranchRequest(name="main"))

    response = engine.delete_branch(USER, project, "feature")

    assert response.status == "success"
    assert [branch.name for branch in engine.get_branches(USER, project)] == ["keeper", "main"]


def test_delete_branch_contained_in_remote_tracking_ref(
    engine: ProjectsEngine, published: str
) -> None:
    engine.set_branch(USER, published, BranchRequest(name="feature", create=True))
    commit_file(engine, published, "feature.txt", "x\n", "Feature work")
    engine.push(USER, published, PushRequest(remote="origin", track=True))
    engine.set_branch(USER, published, BranchRequest(name="main"))

    engine.delete_branch(USER, published, "feature")

    assert [branch.name for branch in engine.get_branches(USER, published)] == ["main"]


def test_delete_current_branch_is_conflict(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.delete_branch(USER, project, "main")
    assert exc_info.value.code == ErrorCode.CONFLICT


def test_delete_missing_branch_is_not_found(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.delete_branch(USER, project, "ghost")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


def test_branch_status_ahead_after_local_commit(engine: ProjectsEngine, published: str) -> None:
    initial = engine.get_branch_status(USER, published, "main")
    assert (initial.ahead, initial.behind) == (0, 0)
    assert initial.remote == "origin/main"

    commit_file(engine, published, "notes.txt", "local\n", "Local work")

    after = engine.get_branch_status(USER, published, "main")
    assert (after.ahead, after.behind) == (1, 0)


def test_branch_status_against_remote_ref(engine: ProjectsEngine, published: str) -> None:
    commit_file(engine, published, "notes.txt", "local\n", "Local work")

    status = engine.get_branch_status(USER, published, "origin/main")

    assert status.local == "main"
    assert status.remote == "origin/main"
    assert (status.ahead, status.behind) == (1, 0)


def test_branch_status_without_upstream_is_not_found(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.get_branch_status(USER, project, "main")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


def test_remote_branch_checkout_creates_tracking_branch(
    engine: ProjectsEngine, published: str, bare_remote: Path
) -> None:
    engine.set_branch(USER, published, BranchRequest(name="topic", create=True))
    commit_file(engine, published, "topic.txt", "topic\n", "Topic work")
    engine.push(USER, published, PushRequest(remote="origin"))

    clone_project(engine, "mirror", bare_remote)
    RemoteSync(engine.registry.workspace("mirror")).fetch("origin")
    remote_names = [branch.name for branch in engine.get_branches(USER, "mirror", remote=True)]
    assert "origin/topic" in remote_names

    branch = engine.set_branch(USER, "mirror", BranchRequest(name="topic"))

    assert branch.name == "topic"
    assert branch.upstream == "origin/topic"
    assert engine.get_file(USER, "mirror", "_", "topic.txt") == "topic\n"
