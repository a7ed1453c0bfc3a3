from __future__ import annotations

from pathlib import Path

import pytest

from conftest import USER, clone_project, commit_file, write
from projects_vcs.engine import ProjectsEngine
from projects_vcs.errors import ErrorCode, ProjectsError
from projects_vcs.models import (
    BranchRequest,
    CommitRequest,
    CreateProjectRequest,
    ProjectUpdateRequest,
    PullRequest,
    PullResult,
    PushRequest,
    RemoteSpec,
    ResolveRequest,
)


def _diverge(engine: ProjectsEngine, project: str, remote: Path, mine: str, theirs: str) -> None:
    commit_file(engine, project, "notes.txt", "base\n", "Add notes")
    engine.push(USER, project, PushRequest())
    clone_project(engine, "other", remote)
    commit_file(engine, "other", "notes.txt", theirs, "Their change")
    engine.push(USER, "other", PushRequest())
    commit_file(engine, project, "notes.txt", mine, "My change")


@pytest.fixture()
def conflicted(engine: ProjectsEngine, published: str, bare_remote: Path) -> str:
    _diverge(engine, published, bare_remote, "mine\n", "theirs\n")
    response = engine.pull(USER, published, PullRequest())
    assert response.result == PullResult.CONFLICTS
    return published


def test_pull_with_conflicts_enters_merge_state(engine: ProjectsEngine, conflicted: str) -> None:
    status = engine.get_status(USER, conflicted)

    assert status.conflicted == ["notes.txt"]
    assert status.merge_state is not None
    assert status.merge_state.conflicted_paths == ["notes.txt"]
    assert status.merge_state.remote_ref == "origin/main"


def test_merge_gate_blocks_commit_and_branch_switch(engine: ProjectsEngine, conflicted: str) -> None:
    with pytest.raises(ProjectsError) as commit_info:
        engine.commit(USER, conflicted, CommitRequest(message="Too early"))
    with pytest.raises(ProjectsError) as branch_info:
        engine.set_branch(USER, conflicted, BranchRequest(name="side", create=True))
    with pytest.raises(ProjectsError) as stage_info:
        engine.stage_file(USER, conflicted, ["notes.txt"])
    with pytest.raises(ProjectsError) as pull_info:
        engine.pull(USER, conflicted, PullRequest())

    assert commit_info.value.code == ErrorCode.CONFLICT
    assert commit_info.value.details["conflicted_paths"] == ["notes.txt"]
    assert branch_info.value.code == ErrorCode.CONFLICT
    assert stage_info.value.code == ErrorCode.CONFLICT
    assert pull_info.value.code == ErrorCode.CONFLICT


def test_manual_resolution_then_commit_completes_merge(engine: ProjectsEngine, conflicted: str) -> None:
    state = engine.resolve_merge(
        USER,
        conflicted,
        ResolveRequest(path="notes.txt", resolution="manual", content="mine\ntheirs\n"),
    )
    assert state.conflicted_paths == []
    assert state.resolutions["notes.txt"].value == "manual"

    response = engine.commit(USER, conflicted, CommitRequest(message="Merge remote work"))

    assert response.merge_completed is True
    detail = engine.get_commit(USER, conflicted, response.sha)
    assert len(detail.parents) == 2
    assert engine.get_file(USER, conflicted, "HEAD", "notes.txt") == "mine\ntheirs\n"
    status = engine.get_status(USER, conflicted)
    assert status.merge_state is None
    assert status.conflicted == []


@pytest.mark.parametrize(("resolution", "expected"), [("ours", "mine\n"), ("theirs", "theirs\n")])
def test_side_resolution_takes_that_version(
    engine: ProjectsEngine, conflicted: str, resolution: str, expected: str
) -> None:
    engine.resolve_merge(USER, conflicted, ResolveRequest(path="notes.txt", resolution=resolution))
    engine.commit(USER, conflicted, CommitRequest(message="Merge"))

    assert engine.get_file(USER, conflicted, "HEAD", "notes.txt") == expected


def test_resolving_unconflicted_path_is_rejected(engine: ProjectsEngine, conflicted: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.resolve_merge(USER, conflicted, ResolveRequest(path="project.yaml", resolution="ours"))
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def _working_tree(engine: ProjectsEngine, project: str) -> dict[str, str]:
    return {
        entry.path: engine.get_file(USER, project, "_", entry.path)
        for entry in engine.get_files(USER, project)
        if entry.status != "deleted"
    }


@pytest.mark.parametrize(
    "resolutions",
    [
        [],
        [("manual", "mine\ntheirs\n")],
        [("theirs", None)],
        [("ours", None)],
    ],
    ids=["unresolved", "manual-content", "theirs", "ours"],
)
def test_abort_restores_pre_merge_tree(
    engine: ProjectsEngine, published: str, bare_remote: Path, resolutions: list[tuple[str, str | None]]
) -> None:
    _diverge(engine, published, bare_remote, "mine\n", "theirs\n")
    before = _working_tree(engine, published)
    assert engine.pull(USER, published, PullRequest()).result == PullResult.CONFLICTS
    pre_merge = engine.get_status(USER, published).merge_state.pre_merge_head
    for resolution, content in resolutions:
        engine.resolve_merge(
            USER, published, ResolveRequest(path="notes.txt", resolution=resolution, content=content)
        )

    engine.abort_merge(USER, published)

    status = engine.get_status(USER, published)
    assert status.merge_state is None
    assert status.conflicted == []
    assert status.staged == []
    assert status.head == pre_merge
    assert _working_tree(engine, published) == before
    assert before["notes.txt"] == "mine\n"
    merge_state_file = engine.registry.project_path(published) / ".git" / "projects-merge-state.yaml"
    assert not merge_state_file.exists()


def test_abort_restores_tree_after_unrelated_merge(
    engine: ProjectsEngine, published: str, bare_remote: Path
) -> None:
    commit_file(engine, published, "remote-only.txt", "remote\n", "Remote-only file")
    engine.push(USER, published, PushRequest())
    engine.create_project(USER, CreateProjectRequest(id="fresh", description="Fresh start"))
    engine.update_project(USER, "fresh", ProjectUpdateRequest.from_body({"initialise": True}))
    engine.add_remote(USER, "fresh", RemoteSpec(name="origin", url=str(bare_remote)))
    before = _working_tree(engine, "fresh")
    head = engine.get_status(USER, "fresh").head

    engine.pull(USER, "fresh", PullRequest(allow_unrelated_histories=True))
    engine.resolve_merge(USER, "fresh", ResolveRequest(path="project.yaml", resolution="theirs"))
    engine.abort_merge(USER, "fresh")

    status = engine.get_status(USER, "fresh")
    assert status.merge_state is None
    assert status.head == head
    assert _working_tree(engine, "fresh") == before
    assert "remote-only.txt" not in before


def test_abort_without_merge_is_conflict(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.abort_merge(USER, project)
    assert exc_info.value.code == ErrorCode.CONFLICT


def test_clean_divergent_pull_merges(engine: ProjectsEngine, published: str, bare_remote: Path) -> None:
    clone_project(engine, "other", bare_remote)
    commit_file(engine, "other", "theirs.txt", "theirs\n", "Their file")
    engine.push(USER, "other", PushRequest())
    commit_file(engine, published, "mine.txt", "mine\n", "My file")

    response = engine.pull(USER, published, PullRequest())

    assert response.result == PullResult.MERGED
    assert engine.get_status(USER, published).merge_state is None
    assert len(engine.get_commit(USER, published, response.head).parents) == 2
    assert engine.get_file(USER, published, "_", "theirs.txt") == "theirs\n"


def test_dirty_tree_blocks_pull_merge(engine: ProjectsEngine, published: str, bare_remote: Path) -> None:
    _diverge(engine, published, bare_remote, "mine\n", "theirs\n")
    write(engine, published, "notes.txt", "uncommitted\n")

    with pytest.raises(ProjectsError) as exc_info:
        engine.pull(USER, published, PullRequest())

    assert exc_info.value.code == ErrorCode.DIRTY_CHECKOUT
    assert engine.get_status(USER, published).merge_state is None


def test_unrelated_histories_require_opt_in(engine: ProjectsEngine, published: str, bare_remote: Path) -> None:
    engine.create_project(USER, CreateProjectRequest(id="fresh", description="Fresh start"))
    engine.update_project(USER, "fresh", ProjectUpdateRequest.from_body({"initialise": True}))
    engine.add_remote(USER, "fresh", RemoteSpec(name="origin", url=str(bare_remote)))

    with pytest.raises(ProjectsError) as exc_info:
        engine.pull(USER, "fresh", PullRequest())
    assert exc_info.value.code == ErrorCode.UNRELATED_HISTORIES

    response = engine.pull(USER, "fresh", PullRequest(allow_unrelated_histories=True))

    assert response.result == PullResult.CONFLICTS
    assert response.merge_state is not None
    assert response.merge_state.unrelated is True
    assert "project.yaml" in response.merge_state.conflicted_paths

    engine.resolve_merge(USER, "fresh", ResolveRequest(path="project.yaml", resolution="ours"))
    completed = engine.commit(USER, "fresh", CommitRequest(message="Join histories"))
    assert completed.merge_completed is True
    assert "Fresh start" in engine.get_file(USER, "fresh", "HEAD", "project.yaml")
